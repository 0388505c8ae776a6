"""
TREEPILOT File Tree — the in-memory project

A workspace's project is a recursive tree of folders and files kept
entirely in memory. Nodes are pydantic models tagged by ``type`` so the
tree serializes to the same JSON shape it is persisted in.

Paths are slash-delimited; empty segments are ignored and the empty
path is the root folder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Iterator, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field

from treepilot.errors import NotAFolder, PathNotFound


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class FileNode(BaseModel):
    type: Literal["file"] = "file"
    content: str = ""


class FolderNode(BaseModel):
    type: Literal["folder"] = "folder"
    children: dict[str, "Node"] = Field(default_factory=dict)

    def sorted_children(self) -> list[tuple[str, "Node"]]:
        """Children in display order (by name)."""
        return sorted(self.children.items(), key=lambda item: item[0])


Node = Annotated[Union[FileNode, FolderNode], Field(discriminator="type")]

FolderNode.model_rebuild()


def split_path(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def join_path(parts: list[str]) -> str:
    return "/".join(parts)


# ---------------------------------------------------------------------------
# Path Resolver
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    """Where a path lands: its parent folder, final key, and current node."""
    parent: FolderNode | None
    key: str
    node: FileNode | FolderNode | None

    @property
    def is_root(self) -> bool:
        return self.parent is None


def resolve_path(tree: FolderNode, path: str, create_parents: bool = False) -> Resolution:
    """
    Walk ``path`` down to its parent folder.

    In strict mode a missing intermediate folder raises PathNotFound.
    With ``create_parents`` missing intermediates are created as empty
    folders in ``tree`` itself, so only call it on a tree you own.
    Descending through a file raises NotAFolder in both modes.
    """
    parts = split_path(path)
    if not parts:
        return Resolution(parent=None, key="", node=tree)

    current: FolderNode = tree
    for depth, part in enumerate(parts[:-1]):
        child = current.children.get(part)
        if child is None:
            if not create_parents:
                raise PathNotFound(
                    f"Path does not exist: {join_path(parts[:depth + 1])}", path=path
                )
            child = FolderNode()
            current.children[part] = child
            logger.debug(f"[TREE] Created parent folder {join_path(parts[:depth + 1])}")
        if not isinstance(child, FolderNode):
            raise NotAFolder(
                f"Cannot descend into file: {join_path(parts[:depth + 1])}", path=path
            )
        current = child

    key = parts[-1]
    return Resolution(parent=current, key=key, node=current.children.get(key))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def find_node(tree: FolderNode, path: str) -> FileNode | FolderNode | None:
    """Read-only lookup. Missing paths, and paths through files, give None."""
    try:
        return resolve_path(tree, path).node
    except (PathNotFound, NotAFolder):
        return None


def iter_files(tree: FolderNode, prefix: str = "") -> Iterator[tuple[str, FileNode]]:
    """Depth-first, name-sorted walk yielding every file with its path."""
    for name, child in tree.sorted_children():
        child_path = f"{prefix}/{name}" if prefix else name
        if isinstance(child, FileNode):
            yield child_path, child
        else:
            yield from iter_files(child, child_path)


def serialize_tree(tree: FolderNode) -> str:
    """Deterministic text dump of every file, for the generator's context."""
    blocks = []
    for path, node in iter_files(tree):
        blocks.append(
            f"[START OF FILE: {path}]\n{node.content}\n[END OF FILE: {path}]\n\n"
        )

    if not blocks:
        return "The project is currently empty.\n"

    return "Here is the current file structure and content:\n\n" + "".join(blocks)


def count_nodes(tree: FolderNode) -> tuple[int, int]:
    """Return (files, folders) below the root."""
    files = folders = 0
    for child in tree.children.values():
        if isinstance(child, FileNode):
            files += 1
        else:
            folders += 1
            sub_files, sub_folders = count_nodes(child)
            files += sub_files
            folders += sub_folders
    return files, folders


# ---------------------------------------------------------------------------
# Starter project
# ---------------------------------------------------------------------------

INITIAL_CODE = """// Welcome to TreePilot!
// Your root component must be named 'App'.
// Try asking for "a colorful counter button".
// Or turn on autopilot and let it build something on its own.

// React is available globally in the preview, no import needed.
function App() {
  const [count, setCount] = React.useState(0);

  return (
    <div className="p-8 text-center h-screen flex flex-col justify-center items-center">
      <h1 className="text-4xl font-bold mb-4">TreePilot Live Preview</h1>
      <div className="flex items-center gap-4">
        <button onClick={() => setCount(c => c - 1)}>-</button>
        <span className="text-3xl font-mono w-16 text-center">{count}</span>
        <button onClick={() => setCount(c => c + 1)}>+</button>
      </div>
    </div>
  );
}"""


def initial_tree() -> FolderNode:
    return FolderNode(children={
        "src": FolderNode(children={
            "App.tsx": FileNode(content=INITIAL_CODE),
        }),
    })
