"""
TREEPILOT Stream Ingestor

Turns the generator's fragment stream into (prose, operations).

Response contract:

    <markdown prose>
    ---JSON_OPERATIONS---
    {"operations": [ ... ]}

While streaming, the prose view is a naive split on the separator, so a
half-received separator can show up in it for a fragment or two. The
final split at end of stream is exact.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from loguru import logger
from pydantic import ValidationError

from treepilot.errors import GeneratorFailure, MalformedResponse
from treepilot.mutations import MutationOp, parse_operations

SEPARATOR = "---JSON_OPERATIONS---"

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$")


@dataclass
class ParsedResponse:
    prose: str
    operations: list[MutationOp] = field(default_factory=list)


class StreamIngestor:
    """Accumulates fragments of one response. Not reusable across responses."""

    def __init__(self, separator: str = SEPARATOR):
        self.separator = separator
        self._fragments: list[str] = []
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    @property
    def prose(self) -> str:
        return self._text.split(self.separator, 1)[0]

    def feed(self, fragment: str) -> str:
        """Add one fragment and return the current prose view."""
        if fragment:
            self._fragments.append(fragment)
            self._text += fragment
        return self.prose

    def finish(self) -> ParsedResponse:
        return parse_response(self._text, self.separator)

    async def consume(
        self,
        stream: AsyncIterator[str],
        on_prose: Callable[[str], None] | None = None,
    ) -> ParsedResponse:
        """
        Drain ``stream``, reporting prose after every fragment.

        Anything the stream raises is re-raised as GeneratorFailure. Errors
        raised by ``on_prose`` propagate unchanged.
        """
        iterator = stream.__aiter__()
        while True:
            try:
                fragment = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except GeneratorFailure:
                raise
            except Exception as e:
                raise GeneratorFailure(f"Response stream failed: {e}") from e

            prose = self.feed(fragment or "")
            if on_prose:
                on_prose(prose)

        logger.debug(f"[STREAM] Received {len(self._fragments)} fragments, {len(self._text)} chars")
        return self.finish()


def parse_response(text: str, separator: str = SEPARATOR) -> ParsedResponse:
    """Split a complete response into prose and a validated operation batch."""
    index = text.find(separator)
    if index == -1:
        return ParsedResponse(prose=text.strip())

    prose = text[:index].strip()
    raw = text[index + len(separator):].strip()
    if not raw:
        return ParsedResponse(prose=prose)

    match = _FENCE_RE.match(raw)
    if match:
        raw = match.group(1).strip()

    if not (raw.startswith("{") and raw.endswith("}")):
        logger.warning(f"[STREAM] Text after separator is not a JSON object, ignoring: {raw[:200]!r}")
        return ParsedResponse(prose=prose)

    return ParsedResponse(prose=prose, operations=_parse_operations_block(raw))


def _parse_operations_block(raw: str) -> list[MutationOp]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Failed to parse file operations from AI. {e}") from e

    if not isinstance(payload, dict):
        raise MalformedResponse("Failed to parse file operations from AI. Expected a JSON object.")

    entries = payload.get("operations")
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise MalformedResponse(
            f"Failed to parse file operations from AI. 'operations' must be a list, got {type(entries).__name__}."
        )

    try:
        return parse_operations(entries)
    except ValidationError as e:
        raise MalformedResponse(f"Failed to parse file operations from AI. {_summarize(e)}") from e


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)
