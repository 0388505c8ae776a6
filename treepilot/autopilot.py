"""
TREEPILOT Autopilot

A cooperative timer that keeps proposing work while the active
workspace has autopilot switched on.

One rule: never two autopilot tasks running in the same workspace.
A tick that finds one still streaming does nothing at all. User tasks
are not counted.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from treepilot.config_loader import AutopilotConfig
from treepilot.controller import TaskOrchestrator
from treepilot.state import Task, WorkspaceRuntimeConfig


class AutopilotScheduler:

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        config: AutopilotConfig | None = None,
    ):
        self.orchestrator = orchestrator
        self.config = config or AutopilotConfig()
        self.ticks_fired = 0
        self.ticks_suppressed = 0
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self.orchestrator.workspaces.ui_state().is_autopilot_on

    def tick(self, runtime: WorkspaceRuntimeConfig | None = None) -> Task | None:
        """Start one autopilot task for the active workspace, unless one is running."""
        workspace = self.orchestrator.workspaces.active
        if self.orchestrator.running("autopilot", workspace.id):
            self.ticks_suppressed += 1
            logger.debug(f"[AUTOPILOT] Tick suppressed, a task is still running in {workspace.name!r}")
            return None

        task = self.orchestrator.start(
            self.config.prompt,
            kind="autopilot",
            runtime=runtime,
            workspace_id=workspace.id,
        )
        self.ticks_fired += 1
        logger.info(f"[AUTOPILOT] Tick {self.ticks_fired} → task {task.id[:8]}")
        return task

    async def run(
        self,
        max_ticks: int | None = None,
        runtime: WorkspaceRuntimeConfig | None = None,
    ) -> None:
        """
        Tick every ``interval_seconds`` while autopilot stays enabled.

        Returns when autopilot is switched off, stop() is called, or
        ``max_ticks`` tasks have been started.
        """
        self._stopped = False
        logger.info(f"[AUTOPILOT] Engaged, interval {self.config.interval_seconds}s")

        while not self._stopped and self.enabled:
            await asyncio.sleep(self.config.interval_seconds)
            if self._stopped or not self.enabled:
                break
            self.tick(runtime)
            if max_ticks is not None and self.ticks_fired >= max_ticks:
                break

        logger.info(
            f"[AUTOPILOT] Disengaged — {self.ticks_fired} fired, {self.ticks_suppressed} suppressed"
        )

    def stop(self) -> None:
        self._stopped = True
