"""
TREEPILOT Router — Vendor-Agnostic Streaming

Routes agent calls through LiteLLM so agents never know which vendor is
backing them. Opening a stream is retried; once fragments are flowing,
any failure ends the response.
"""

from __future__ import annotations

import time
from typing import Any, AsyncIterator

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from treepilot.config_loader import TreePilotConfig
from treepilot.errors import GeneratorFailure


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("o1") or normalized.startswith("o3") or normalized.startswith("o4")


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "stream": True,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    return kwargs


def _chunk_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class StreamStats(BaseModel):
    model: str
    fragments: int = 0
    characters: int = 0
    latency_ms: int = 0


class Router:
    """
    Agents call `router.stream(role, messages)` and iterate text fragments.
    """

    def __init__(self, config: TreePilotConfig):
        self.config = config
        self._role_model_map = {
            "architect": config.routing.architect,
        }
        self.last_stats: StreamStats | None = None

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        """Resolve agent role to a specific model string.

        Raises:
            ValueError: If the role has no configured model.
        """
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self._role_model_map)}")
        return model

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _open(self, kwargs: dict[str, Any]) -> Any:
        return await litellm.acompletion(**kwargs)

    async def stream(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion as text fragments.

        Args:
            role (str): Agent role name.
            messages (list[dict[str, str]]): Standard chat messages.
            temperature (float | None): Defaults to limits.temperature.
                Dropped automatically for models that don't support it.
            max_tokens (int | None): Defaults to limits.max_tokens.

        Raises:
            GeneratorFailure: If the stream cannot be opened or breaks.
        """
        model = self.resolve_model(role)
        kwargs = _build_kwargs(
            model,
            messages,
            self.config.limits.temperature if temperature is None else temperature,
            self.config.limits.max_tokens if max_tokens is None else max_tokens,
        )
        stats = StreamStats(model=model)
        self.last_stats = stats
        start = time.monotonic()

        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        try:
            response = await self._open(kwargs)
        except Exception as e:
            raise GeneratorFailure(f"Could not reach {model}: {e}") from e

        try:
            async for chunk in response:
                text = _chunk_text(chunk)
                if not text:
                    continue
                stats.fragments += 1
                stats.characters += len(text)
                yield text
        except Exception as e:
            raise GeneratorFailure(f"Stream from {model} failed: {e}") from e
        finally:
            stats.latency_ms = int((time.monotonic() - start) * 1000)

        logger.debug(
            f"[ROUTER] {role} complete — "
            f"{stats.fragments} fragments, {stats.characters} chars, {stats.latency_ms}ms"
        )
