"""
Configuration loader for TREEPILOT.
Merges defaults with per-project .treepilot/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    architect: str = "gemini/gemini-2.5-flash"


class LimitsConfig(BaseModel):
    max_history_tasks: int = 10
    max_log_lines: int = 20
    max_tokens: int = 8192
    temperature: float = 0.4


class AutopilotConfig(BaseModel):
    interval_seconds: float = Field(default=3.0, gt=0)
    prompt: str = "Proactive AI Step: Analyze the context and perform the most logical improvement."


class StorageConfig(BaseModel):
    state_dir: str = ".treepilot/state"


class ResponseConfig(BaseModel):
    separator: str = "---JSON_OPERATIONS---"


class TreePilotConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    autopilot: AutopilotConfig = Field(default_factory=AutopilotConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    installed_extensions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_path: Path | None = None) -> TreePilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (treepilot/config.yaml)
      2. Project-level overrides (<project>/.treepilot/config.yaml)
      3. TREEPILOT_MODEL, if set, for the architect route
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if project_path:
        project_config = project_path / ".treepilot" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    model = os.environ.get("TREEPILOT_MODEL")
    if model:
        base = _deep_merge(base, {"routing": {"architect": model}})

    return TreePilotConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
    }
