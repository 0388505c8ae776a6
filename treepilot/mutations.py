"""
TREEPILOT Mutation Engine

Applies an ordered batch of file operations to a project tree.

  - Works on one deep copy; the caller's tree is never touched.
  - Operations run in order and later ones see earlier effects.
  - Each operation stands alone: a failure is logged, recorded in the
    outcome list and skipped. Nothing is rolled back.

The operation models double as the wire format the generator emits
and direct callers (new file, new folder, uploads) send.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from treepilot.errors import InvalidDestination, NotAFolder, PathNotFound, TreeError
from treepilot.filetree import FileNode, FolderNode, resolve_path, split_path


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

class _Operation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class CreateFile(_Operation):
    operation: Literal["CREATE_FILE"] = "CREATE_FILE"
    content: str = ""


class UpdateFile(_Operation):
    operation: Literal["UPDATE_FILE"] = "UPDATE_FILE"
    content: str = ""


class DeleteFile(_Operation):
    operation: Literal["DELETE_FILE"] = "DELETE_FILE"


class CreateFolder(_Operation):
    operation: Literal["CREATE_FOLDER"] = "CREATE_FOLDER"


class DeleteFolder(_Operation):
    operation: Literal["DELETE_FOLDER"] = "DELETE_FOLDER"


class RenameFile(_Operation):
    operation: Literal["RENAME_FILE"] = "RENAME_FILE"
    new_path: str = Field(alias="newPath")


class RenameFolder(_Operation):
    operation: Literal["RENAME_FOLDER"] = "RENAME_FOLDER"
    new_path: str = Field(alias="newPath")


MutationOp = Annotated[
    Union[CreateFile, UpdateFile, DeleteFile, CreateFolder, DeleteFolder, RenameFile, RenameFolder],
    Field(discriminator="operation"),
]

_BATCH_ADAPTER: TypeAdapter[list[MutationOp]] = TypeAdapter(list[MutationOp])


def parse_operations(raw: Any) -> list[MutationOp]:
    """Validate a list of wire dicts. Raises pydantic.ValidationError."""
    return _BATCH_ADAPTER.validate_python(raw)


def describe(op: MutationOp) -> str:
    """One-line human summary, e.g. for approval tables."""
    if isinstance(op, (RenameFile, RenameFolder)):
        return f"{op.operation} {op.path} → {op.new_path}"
    return f"{op.operation} {op.path}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class OperationOutcome:
    op: MutationOp
    ok: bool = True
    error: str = ""


@dataclass
class ApplyResult:
    tree: FolderNode
    outcomes: list[OperationOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def all_ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def apply_operations(tree: FolderNode, operations: list[MutationOp]) -> ApplyResult:
    """Apply ``operations`` to a copy of ``tree``; report each op's outcome."""
    working = tree.model_copy(deep=True)
    result = ApplyResult(tree=working)

    for op in operations:
        try:
            _apply_one(working, op)
            result.outcomes.append(OperationOutcome(op=op))
        except TreeError as e:
            logger.warning(f"[ENGINE] Skipped {describe(op)}: {e}")
            result.outcomes.append(OperationOutcome(op=op, ok=False, error=str(e)))

    if result.failed:
        logger.info(
            f"[ENGINE] Applied {len(operations) - len(result.failed)}/{len(operations)} operations"
        )
    else:
        logger.debug(f"[ENGINE] Applied {len(operations)} operations")

    return result


def apply(tree: FolderNode, operations: list[MutationOp]) -> FolderNode:
    """Best-effort apply; only the new tree is returned."""
    return apply_operations(tree, operations).tree


def _apply_one(tree: FolderNode, op: MutationOp) -> None:
    if isinstance(op, (CreateFile, UpdateFile)):
        res = resolve_path(tree, op.path, create_parents=True)
        _require_target(res.parent, op.path)
        if isinstance(res.node, FolderNode):
            logger.warning(f"[ENGINE] {op.operation} replaces folder {op.path} with a file")
        res.parent.children[res.key] = FileNode(content=op.content)

    elif isinstance(op, CreateFolder):
        res = resolve_path(tree, op.path, create_parents=True)
        _require_target(res.parent, op.path)
        if res.node is None:
            res.parent.children[res.key] = FolderNode()

    elif isinstance(op, (DeleteFile, DeleteFolder)):
        try:
            res = resolve_path(tree, op.path)
        except (PathNotFound, NotAFolder):
            # already gone
            return
        _require_target(res.parent, op.path)
        res.parent.children.pop(res.key, None)

    elif isinstance(op, (RenameFile, RenameFolder)):
        _rename(tree, op.path, op.new_path)


def _rename(tree: FolderNode, path: str, new_path: str) -> None:
    source = resolve_path(tree, path)
    _require_target(source.parent, path)
    if source.node is None:
        raise PathNotFound(f"Source path not found for rename: {path}", path=path)

    src_parts = split_path(path)
    dst_parts = split_path(new_path)
    if not dst_parts:
        raise InvalidDestination(f"Invalid destination path for rename: {new_path!r}", path=new_path)
    if len(dst_parts) > len(src_parts) and dst_parts[:len(src_parts)] == src_parts:
        raise InvalidDestination(f"Cannot move {path} inside itself ({new_path})", path=new_path)

    node = source.parent.children.pop(source.key)
    try:
        dest = resolve_path(tree, new_path, create_parents=True)
    except NotAFolder as e:
        source.parent.children[source.key] = node
        raise InvalidDestination(f"Invalid destination path for rename: {new_path} ({e})", path=new_path)

    dest.parent.children[dest.key] = node


def _require_target(parent: FolderNode | None, path: str) -> None:
    if parent is None:
        raise InvalidDestination(f"The project root is not a valid target: {path!r}", path=path)


# ---------------------------------------------------------------------------
# Editor edits
# ---------------------------------------------------------------------------

def update_file_content(tree: FolderNode, path: str, content: str) -> FolderNode:
    """Replace one file's content; anything else returns an unchanged copy."""
    working = tree.model_copy(deep=True)
    try:
        res = resolve_path(working, path)
    except TreeError:
        return working
    if isinstance(res.node, FileNode) and res.parent is not None:
        res.parent.children[res.key] = FileNode(content=content)
    return working
