from collections import deque

from treepilot.state import LogEntry


class ConsoleLog:
    """Keeps the most recent preview console messages, newest first."""

    def __init__(self, limit=20):
        self.limit = limit
        self._buffer = deque(maxlen=limit)

    def log(self, message, level="log"):
        entry = LogEntry(level=level, message=message)
        self._buffer.appendleft(entry)
        return entry

    def recent(self):
        return list(self._buffer)

    def latest_error(self):
        for entry in self._buffer:
            if entry.level == "error":
                return entry
        return None

    def clear(self):
        self._buffer.clear()

    def __len__(self):
        return len(self._buffer)
