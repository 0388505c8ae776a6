"""
TREEPILOT Controller — The Task Orchestrator

It is NOT smart. It is deterministic.

Responsibilities:
  - Create tasks (user prompts and autopilot ticks)
  - Feed the generator the full context of the workspace
  - Republish streamed prose into the task as it arrives
  - Resolve the task once the stream ends
  - Apply or discard proposed operations on approve / reject

It never edits the tree on its own. Only approve() and direct
operations reach the mutation engine.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

from loguru import logger

from treepilot.agents import GenerationContext
from treepilot.config_loader import TreePilotConfig
from treepilot.errors import GeneratorFailure, MalformedResponse
from treepilot.event_bus import EventBus
from treepilot.mutations import (
    ApplyResult,
    MutationOp,
    apply_operations,
    parse_operations,
    update_file_content,
)
from treepilot.state import Task, TaskKind, TaskStore, WorkspaceRuntimeConfig
from treepilot.stream import StreamIngestor
from treepilot.workspace import WorkspaceManager

Generator = Callable[[GenerationContext], AsyncIterator[str]]

FIX_PROMPT = (
    "My application has an error. Here is the console output:\n"
    "---\n"
    "{message}\n"
    "---\n"
    "Please analyze the current code and fix this error."
)


class TaskOrchestrator:
    """
    Drives every task of every workspace through its lifecycle.

    running → pending_confirmation → completed
            → completed
            → error
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        generator: Generator,
        config: TreePilotConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.workspaces = workspaces
        self.generator = generator
        self.config = config or TreePilotConfig()
        self.bus = bus or EventBus()
        self._inflight: dict[str, asyncio.Task[Task]] = {}

    # -----------------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------------

    def start(
        self,
        prompt: str,
        kind: TaskKind = "user",
        runtime: WorkspaceRuntimeConfig | None = None,
        workspace_id: str | None = None,
    ) -> Task:
        """Append a running task and stream its response in the background."""
        task, _ = self._launch(prompt, kind, runtime, workspace_id)
        return task

    async def create(
        self,
        prompt: str,
        kind: TaskKind = "user",
        runtime: WorkspaceRuntimeConfig | None = None,
        workspace_id: str | None = None,
    ) -> Task:
        """Run a task until its stream ends and return its resolved state."""
        _, handle = self._launch(prompt, kind, runtime, workspace_id)
        return await handle

    def fix_error(
        self,
        message: str,
        runtime: WorkspaceRuntimeConfig | None = None,
        workspace_id: str | None = None,
    ) -> Task:
        """Start a user task asking the generator to fix ``message``."""
        return self.start(FIX_PROMPT.format(message=message), "user", runtime, workspace_id)

    def _launch(
        self,
        prompt: str,
        kind: TaskKind,
        runtime: WorkspaceRuntimeConfig | None,
        workspace_id: str | None,
    ) -> tuple[Task, asyncio.Task[Task]]:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty.")

        loop = asyncio.get_running_loop()
        ws = self.workspaces.require(workspace_id)
        runtime = runtime or self.default_runtime(ws.id)
        history = list(ws.tasks)

        task = TaskStore(ws).append(Task(user_prompt=prompt, kind=kind))
        logger.info(f"[ORCH] Task {task.id[:8]} started ({kind}) in {ws.name!r}")
        self.bus.emit("task_created", ws.id, task.id, {"kind": kind, "prompt": prompt})

        context = GenerationContext(
            prompt=prompt,
            file_system=ws.file_system,
            task_history=history,
            ui_state=runtime.ui_state,
            installed_extensions=runtime.installed_extensions,
            logs=runtime.logs,
        )

        handle = loop.create_task(self._drive(ws.id, task.id, context))
        self._inflight[task.id] = handle
        handle.add_done_callback(lambda _: self._inflight.pop(task.id, None))
        return task, handle

    def default_runtime(self, workspace_id: str | None = None) -> WorkspaceRuntimeConfig:
        return WorkspaceRuntimeConfig(
            ui_state=self.workspaces.ui_state(workspace_id).model_dump(),
            installed_extensions=list(self.config.installed_extensions),
        )

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    async def _drive(self, workspace_id: str, task_id: str, context: GenerationContext) -> Task:
        ws = self.workspaces.require(workspace_id)
        store = TaskStore(ws)
        ingestor = StreamIngestor(self.config.response.separator)

        def on_prose(prose: str) -> None:
            store.set_prose(task_id, prose)
            self.bus.emit("task_progress", ws.id, task_id, {"prose": prose})

        try:
            parsed = await ingestor.consume(self.generator(context), on_prose)
        except (GeneratorFailure, MalformedResponse) as e:
            logger.error(f"[ORCH] Task {task_id[:8]} failed: {e}")
            return self._fail(store, ws.id, task_id, str(e))
        except Exception as e:
            logger.exception(f"[ORCH] Task {task_id[:8]} crashed")
            return self._fail(store, ws.id, task_id, str(e) or "An unknown error occurred.")

        task = store.resolve(task_id, parsed.prose, parsed.operations)
        if task.status == "pending_confirmation":
            logger.info(f"[ORCH] Task {task_id[:8]} proposes {len(task.operations)} operations")
            self.bus.emit("task_pending", ws.id, task_id, {"operations": len(task.operations)})
        else:
            logger.info(f"[ORCH] Task {task_id[:8]} completed without operations")
            self.bus.emit("task_completed", ws.id, task_id, {"approved": False})
        return task

    def _fail(self, store: TaskStore, workspace_id: str, task_id: str, message: str) -> Task:
        task = store.fail(task_id, message)
        self.bus.emit("task_failed", workspace_id, task_id, {"error": message})
        return task

    # -----------------------------------------------------------------------
    # Approval
    # -----------------------------------------------------------------------

    def approve(self, task_id: str, workspace_id: str | None = None) -> ApplyResult | None:
        """Apply a pending task's operations to the current tree."""
        ws = self.workspaces.require(workspace_id)
        store = TaskStore(ws)
        task = store.get(task_id)
        if task is None or task.status != "pending_confirmation":
            logger.debug(f"[ORCH] approve({task_id[:8]}) ignored")
            return None

        result = apply_operations(ws.file_system, task.operations)
        self.workspaces.set_tree(ws.id, result.tree)
        store.complete(task_id)

        logger.info(
            f"[ORCH] Task {task_id[:8]} approved — "
            f"{len(result.outcomes) - len(result.failed)}/{len(result.outcomes)} operations applied"
        )
        self.bus.emit("tree_updated", ws.id, task_id, {"failed": len(result.failed)})
        self.bus.emit("task_completed", ws.id, task_id, {"approved": True})
        return result

    def reject(self, task_id: str, workspace_id: str | None = None) -> Task | None:
        """Close a pending task without touching the tree."""
        ws = self.workspaces.require(workspace_id)
        store = TaskStore(ws)
        task = store.get(task_id)
        if task is None or task.status != "pending_confirmation":
            logger.debug(f"[ORCH] reject({task_id[:8]}) ignored")
            return None

        task = store.complete(task_id)
        logger.info(f"[ORCH] Task {task_id[:8]} rejected")
        self.bus.emit("task_completed", ws.id, task_id, {"approved": False})
        return task

    # -----------------------------------------------------------------------
    # Direct edits
    # -----------------------------------------------------------------------

    def apply_direct(
        self,
        operations: list[MutationOp] | list[dict[str, Any]],
        workspace_id: str | None = None,
    ) -> ApplyResult:
        """Apply operations that did not come from a task (new file, uploads, ...)."""
        ops = parse_operations([op if isinstance(op, dict) else op.to_wire() for op in operations])

        ws = self.workspaces.require(workspace_id)
        result = apply_operations(ws.file_system, ops)
        self.workspaces.set_tree(ws.id, result.tree)
        self.bus.emit("tree_updated", ws.id, None, {"failed": len(result.failed)})
        return result

    def edit_file(self, path: str, content: str, workspace_id: str | None = None) -> None:
        ws = self.workspaces.require(workspace_id)
        self.workspaces.set_tree(ws.id, update_file_content(ws.file_system, path, content))
        self.bus.emit("tree_updated", ws.id, None, {"path": path})

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    def running(self, kind: TaskKind | None = None, workspace_id: str | None = None) -> list[Task]:
        return TaskStore(self.workspaces.require(workspace_id)).running(kind)

    async def wait_idle(self) -> None:
        """Wait for every in-flight stream to resolve."""
        while True:
            pending = [h for h in self._inflight.values() if not h.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
