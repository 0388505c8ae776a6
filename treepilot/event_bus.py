import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class TaskEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    workspace_id: str
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for observing task and tree changes."""

    def __init__(self):
        self._subscribers: List[Callable[[TaskEvent], None]] = []

    def subscribe(self, callback: Callable[[TaskEvent], None]) -> Callable[[], None]:
        """Register a callback for every emitted event. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(
        self,
        event_type: str,
        workspace_id: str,
        task_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TaskEvent:
        """Construct and broadcast a TaskEvent to all subscribers."""
        event = TaskEvent(
            event_type=event_type,
            workspace_id=workspace_id,
            task_id=task_id,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"[BUS] Subscriber failed on {event_type}")

        return event
