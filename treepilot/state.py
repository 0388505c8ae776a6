from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from treepilot.errors import InvalidTransition
from treepilot.filetree import FolderNode, initial_tree
from treepilot.mutations import MutationOp

TaskStatus = Literal["running", "pending_confirmation", "completed", "error"]
TaskKind = Literal["user", "autopilot"]

# running is the only non-terminal state that can fan out; nothing re-enters it.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "running": {"pending_confirmation", "completed", "error"},
    "pending_confirmation": {"completed"},
    "completed": set(),
    "error": set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class AssistantResponse(BaseModel):
    """Prose is rewritten while streaming; operations land once, at the end."""
    content: str = ""
    operations: list[MutationOp] = Field(default_factory=list)


class Task(BaseModel):
    """One prompt → response → (maybe) approval cycle."""
    id: str = Field(default_factory=_new_id)
    user_prompt: str
    status: TaskStatus = "running"
    assistant_response: AssistantResponse | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    kind: TaskKind = "user"

    @property
    def prose(self) -> str:
        return self.assistant_response.content if self.assistant_response else ""

    @property
    def operations(self) -> list[MutationOp]:
        return self.assistant_response.operations if self.assistant_response else []

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]


class LogEntry(BaseModel):
    level: Literal["log", "debug", "info", "warn", "error"] = "log"
    message: str
    timestamp: datetime = Field(default_factory=_now)


class WorkspaceUiState(BaseModel):
    """The per-workspace view state that is persisted and shown to the model."""
    active_editor_path: str | None = "src/App.tsx"
    ai_prompt: str = ""
    is_autopilot_on: bool = False


class WorkspaceRuntimeConfig(BaseModel):
    """Everything outside the tree that a task is allowed to see."""
    ui_state: dict[str, Any] = Field(default_factory=dict)
    installed_extensions: list[str] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list)


class Workspace(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    file_system: FolderNode = Field(default_factory=initial_tree)
    tasks: list[Task] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)

    def newest_first(self) -> list[Task]:
        return list(reversed(self.tasks))


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def transition(task: Task, status: TaskStatus, **changes: Any) -> Task:
    """Return a copy of ``task`` moved to ``status``. Illegal moves raise."""
    if status not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransition(f"Task {task.id}: {task.status} → {status} is not allowed")
    return task.model_copy(update={"status": status, **changes})


def with_prose(task: Task, prose: str) -> Task:
    if task.status != "running":
        raise InvalidTransition(f"Task {task.id} is {task.status}; prose is only updated while running")
    operations = task.operations
    return task.model_copy(
        update={"assistant_response": AssistantResponse(content=prose, operations=operations)}
    )


def resolved(task: Task, prose: str, operations: list[MutationOp]) -> Task:
    """Terminal outcome of a successful stream."""
    status: TaskStatus = "pending_confirmation" if operations else "completed"
    return transition(
        task,
        status,
        assistant_response=AssistantResponse(content=prose, operations=list(operations)),
    )


def failed(task: Task, message: str) -> Task:
    return transition(task, "error", error=message)


class TaskStore:
    """
    Ordered task list of one workspace.

    The store only swaps whole Task values; every change goes through
    one of the transition functions above.
    """

    def __init__(self, workspace: Workspace):
        self.workspace = workspace

    @property
    def tasks(self) -> list[Task]:
        return self.workspace.tasks

    def append(self, task: Task) -> Task:
        self.workspace.tasks.append(task)
        return task

    def get(self, task_id: str) -> Task | None:
        for task in self.workspace.tasks:
            if task.id == task_id:
                return task
        return None

    def replace(self, task: Task) -> Task:
        for i, existing in enumerate(self.workspace.tasks):
            if existing.id == task.id:
                self.workspace.tasks[i] = task
                return task
        raise KeyError(task.id)

    def set_prose(self, task_id: str, prose: str) -> Task:
        return self.replace(with_prose(self._require(task_id), prose))

    def resolve(self, task_id: str, prose: str, operations: list[MutationOp]) -> Task:
        return self.replace(resolved(self._require(task_id), prose, operations))

    def fail(self, task_id: str, message: str) -> Task:
        return self.replace(failed(self._require(task_id), message))

    def complete(self, task_id: str) -> Task:
        return self.replace(transition(self._require(task_id), "completed"))

    def running(self, kind: TaskKind | None = None) -> list[Task]:
        return [
            t for t in self.workspace.tasks
            if t.status == "running" and (kind is None or t.kind == kind)
        ]

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task
