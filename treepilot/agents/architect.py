"""
🏗️ Architect — The Builder

Reads the whole project, the recent conversation and what the user is
looking at, then answers in prose followed by a batch of file
operations for the user to approve.

In autopilot mode nobody asked for anything: it picks the single most
useful next step on its own.
"""

from __future__ import annotations

import json

from treepilot.agents import BaseAgent, GenerationContext
from treepilot.filetree import serialize_tree
from treepilot.router import Router
from treepilot.state import LogEntry, Task
from treepilot.stream import SEPARATOR

FIRST_MESSAGE = "This is the first message in the conversation."


def serialize_task_history(tasks: list[Task], limit: int = 10) -> str:
    """
    Summarize the most recent answered tasks, oldest first.

    ``tasks`` is in insertion order. Only tasks that got a response or an
    error are included.
    """
    relevant = [t for t in tasks if t.user_prompt and (t.assistant_response or t.error)]
    relevant = relevant[-limit:] if limit > 0 else []
    if not relevant:
        return FIRST_MESSAGE

    entries = []
    for task in relevant:
        lines = [f"User: {task.user_prompt}"]
        if task.assistant_response:
            lines.append(f"Assistant: {task.assistant_response.content}")
            if task.status == "pending_confirmation" and task.assistant_response.operations:
                lines.append("(System note: My proposed changes are currently pending user approval.)")
        if task.status == "error" and task.error:
            lines.append(
                f'(System note: I encountered an error. Error message: "{task.error}". '
                "I must not repeat this mistake.)"
            )
        entries.append("\n".join(lines))

    return (
        "For context, here is the conversation history for this session. "
        "Pay close attention to system notes about errors or pending actions:\n"
        + "\n\n".join(entries)
        + "\n\n---\n"
    )


def serialize_logs(logs: list[LogEntry], limit: int = 20) -> str:
    if not logs:
        return "No recent console logs."
    return "\n".join(
        f"[{log.level.upper()} at {log.timestamp.isoformat()}] {log.message}"
        for log in logs[:limit]
    )


class ArchitectAgent(BaseAgent):
    role = "architect"

    system_prompt = f"""You are the Architect, the software engineer built into TreePilot.

You receive the complete project, the conversation so far and a snapshot of
what the user is currently looking at. You answer with a short explanation and
the exact file operations that implement it. The user reviews and approves the
operations before they are applied.

AUTOPILOT:
When the prompt starts with "Proactive AI Step" nobody asked for anything.
Use the real-time context (open file, console logs, history) to choose the
single most valuable next action: fix a logged error you have not just failed
to fix, improve the open file, or continue the last feature. Explain what you
did and why.

RULES:
- Organize the project into folders (components, hooks, utils, ...). No flat src/.
- The preview only renders src/App.tsx and does not resolve imports, so code
  placed in other files must also be inlined into src/App.tsx.
- React is global in the preview; do not import it.
- Never repeat a mistake mentioned in a system note.

RESPONSE FORMAT (machine-parsed, follow exactly):
1. Your reply in Markdown.
2. A line containing exactly: {SEPARATOR}
3. One JSON object: {{"operations": [ ... ]}}
   Each operation has "operation" (CREATE_FILE, UPDATE_FILE, DELETE_FILE,
   CREATE_FOLDER, DELETE_FOLDER, RENAME_FILE, RENAME_FOLDER), "path",
   "content" for file writes and "newPath" for renames. Paths are relative
   and use "/". Do not wrap the JSON in Markdown fences.
If no files need to change, omit the separator and the JSON."""

    def __init__(self, router: Router, history_limit: int = 10, log_limit: int = 20):
        super().__init__(router)
        self.history_limit = history_limit
        self.log_limit = log_limit

    def build_messages(self, context: GenerationContext) -> list[dict[str, str]]:
        history = serialize_task_history(context.task_history, self.history_limit)
        if history == FIRST_MESSAGE:
            history += "\n\n"
        files = serialize_tree(context.file_system)

        realtime = (
            "\n---\n"
            "**REAL-TIME CONTEXT:**\n"
            f"- Current UI State: {json.dumps(context.ui_state, sort_keys=True, default=str)}\n"
            "- Recent Console Logs:\n"
            f"{serialize_logs(context.logs, self.log_limit)}\n"
            "---\n"
        )

        extensions = ""
        if context.installed_extensions:
            extensions = (
                f"\n\n(Context: User has these extensions installed: "
                f"[{', '.join(context.installed_extensions)}]. Acknowledge and use them where appropriate.)"
            )

        user_content = f"{history}{files}{realtime}\nUser prompt: {context.prompt}{extensions}"
        return [self._system_msg(), self._user_msg(user_content)]
