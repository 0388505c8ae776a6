"""
TREEPILOT Agents

An agent is:
  - A system prompt
  - A message template built from a GenerationContext
  - A streamed text response

Agents are stateless between runs. State lives in the workspace.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from treepilot.filetree import FolderNode
from treepilot.router import Router
from treepilot.state import LogEntry, Task


class GenerationContext(BaseModel):
    """Everything the generator is shown for a single task."""
    prompt: str
    file_system: FolderNode
    task_history: list[Task] = Field(default_factory=list)  # oldest first
    ui_state: dict[str, Any] = Field(default_factory=dict)
    installed_extensions: list[str] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list)  # newest first


class BaseAgent(ABC):
    """
    Base class for streaming agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str
      - build_messages()
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    def stream(self, context: GenerationContext) -> AsyncIterator[str]:
        """Build messages and stream the model's reply as text fragments."""
        return self.router.stream(role=self.role, messages=self.build_messages(context))

    @abstractmethod
    def build_messages(self, context: GenerationContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
