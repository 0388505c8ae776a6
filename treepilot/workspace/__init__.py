"""
TREEPILOT Workspaces

Owns the list of workspaces, which one is active, and each workspace's
UI state. Persistence goes through an injected key-value store so the
manager never cares where the bytes end up.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from treepilot.errors import WorkspaceError
from treepilot.filetree import FolderNode
from treepilot.state import TaskStore, Workspace, WorkspaceUiState

WORKSPACES_KEY = "workspaces"
ACTIVE_WORKSPACE_KEY = "active_workspace"
UI_STATES_KEY = "ui_states"

DEFAULT_WORKSPACE_NAME = "My First Project"
INTERRUPTED_MESSAGE = "Interrupted before the response finished."

_WORKSPACES = TypeAdapter(list[Workspace])
_UI_STATES = TypeAdapter(dict[str, WorkspaceUiState])


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """One ``<key>.json`` file per key inside ``directory``."""

    def __init__(self, directory: Path):
        self.directory = directory

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class WorkspaceManager:
    """
    The process-wide set of workspaces. Exactly one is active.
    """

    def __init__(self, store: KeyValueStore | None = None):
        self.store = store or MemoryStore()
        self.workspaces: list[Workspace] = []
        self.active_id: str | None = None
        self.ui_states: dict[str, WorkspaceUiState] = {}

    # -- persistence --------------------------------------------------------

    def load(self) -> "WorkspaceManager":
        """Load everything from the store, seeding a default workspace if empty."""
        self.workspaces = self._load_workspaces()
        self._settle_interrupted()

        if not self.workspaces:
            default = Workspace(name=DEFAULT_WORKSPACE_NAME)
            self.workspaces = [default]
            self.active_id = default.id
            self.ui_states = {default.id: WorkspaceUiState()}
            logger.info(f"[WORKSPACE] Created default workspace {default.id}")
            return self

        saved_active = self.store.get(ACTIVE_WORKSPACE_KEY)
        if saved_active and self.get(saved_active) is not None:
            self.active_id = saved_active
        else:
            newest = max(self.workspaces, key=lambda ws: ws.created_at)
            self.active_id = newest.id

        self.ui_states = self._load_ui_states()
        return self

    def save(self) -> None:
        if self.workspaces:
            self.store.set(WORKSPACES_KEY, _WORKSPACES.dump_json(self.workspaces).decode())
        else:
            self.store.delete(WORKSPACES_KEY)
        if self.active_id:
            self.store.set(ACTIVE_WORKSPACE_KEY, self.active_id)
        if self.ui_states:
            self.store.set(UI_STATES_KEY, _UI_STATES.dump_json(self.ui_states).decode())

    def _load_workspaces(self) -> list[Workspace]:
        raw = self.store.get(WORKSPACES_KEY)
        if not raw:
            return []
        try:
            return _WORKSPACES.validate_json(raw)
        except ValidationError as e:
            logger.error(f"[WORKSPACE] Failed to load workspaces, discarding them: {e}")
            self.store.delete(WORKSPACES_KEY)
            return []

    def _settle_interrupted(self) -> None:
        """A loaded task that is still running lost its stream with the process that started it."""
        for ws in self.workspaces:
            store = TaskStore(ws)
            for task in store.running():
                store.fail(task.id, INTERRUPTED_MESSAGE)
                logger.warning(f"[WORKSPACE] Task {task.id[:8]} in {ws.name!r} was interrupted, marked as error")

    def _load_ui_states(self) -> dict[str, WorkspaceUiState]:
        raw = self.store.get(UI_STATES_KEY)
        if not raw:
            return {}
        try:
            return _UI_STATES.validate_json(raw)
        except ValidationError as e:
            logger.error(f"[WORKSPACE] Failed to load UI states, discarding them: {e}")
            self.store.delete(UI_STATES_KEY)
            return {}

    # -- lookup -------------------------------------------------------------

    def get(self, workspace_id: str) -> Workspace | None:
        for ws in self.workspaces:
            if ws.id == workspace_id:
                return ws
        return None

    def require(self, workspace_id: str | None = None) -> Workspace:
        """The given workspace, or the active one when no id is passed."""
        target = workspace_id or self.active_id
        ws = self.get(target) if target else None
        if ws is None:
            raise WorkspaceError(f"Workspace not found: {target}")
        return ws

    def lookup(self, ref: str) -> Workspace:
        """Match by exact id, unique id prefix, or exact name."""
        exact = self.get(ref)
        if exact is not None:
            return exact
        matches = [ws for ws in self.workspaces if ws.id.startswith(ref) or ws.name == ref]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise WorkspaceError(f"Workspace not found: {ref}")
        raise WorkspaceError(f"Ambiguous workspace reference {ref!r} ({len(matches)} matches)")

    @property
    def active(self) -> Workspace:
        return self.require()

    def tasks(self, workspace_id: str | None = None) -> TaskStore:
        return TaskStore(self.require(workspace_id))

    def ui_state(self, workspace_id: str | None = None) -> WorkspaceUiState:
        ws = self.require(workspace_id)
        return self.ui_states.setdefault(ws.id, WorkspaceUiState())

    # -- workspace lifecycle ------------------------------------------------

    def create(self, name: str, activate: bool = True) -> Workspace:
        if not name or not name.strip():
            raise WorkspaceError("Workspace name cannot be empty.")
        ws = Workspace(name=name.strip())
        self.workspaces.append(ws)
        self.ui_states[ws.id] = WorkspaceUiState()
        if activate:
            self.active_id = ws.id
        logger.info(f"[WORKSPACE] Created {ws.name!r} ({ws.id})")
        return ws

    def delete(self, workspace_id: str) -> None:
        ws = self.require(workspace_id)
        if len(self.workspaces) <= 1:
            raise WorkspaceError("You cannot delete the last workspace.")
        self.workspaces = [w for w in self.workspaces if w.id != ws.id]
        self.ui_states.pop(ws.id, None)
        if self.active_id == ws.id:
            self.active_id = self.workspaces[0].id
        logger.info(f"[WORKSPACE] Deleted {ws.name!r} ({ws.id})")

    def switch(self, workspace_id: str) -> Workspace:
        ws = self.require(workspace_id)
        self.active_id = ws.id
        return ws

    def set_tree(self, workspace_id: str, tree: FolderNode) -> None:
        self.require(workspace_id).file_system = tree
