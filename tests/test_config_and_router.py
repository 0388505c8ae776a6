from types import SimpleNamespace

import pytest

from treepilot.config_loader import TreePilotConfig, load_config
from treepilot.errors import GeneratorFailure
from treepilot.router import Router, _build_kwargs


def test_defaults_load(monkeypatch):
    monkeypatch.delenv("TREEPILOT_MODEL", raising=False)
    config = load_config()
    assert config.routing.architect == "gemini/gemini-2.5-flash"
    assert config.response.separator == "---JSON_OPERATIONS---"
    assert config.autopilot.interval_seconds == 3.0


def test_project_overrides_merge(tmp_path, monkeypatch):
    monkeypatch.delenv("TREEPILOT_MODEL", raising=False)
    (tmp_path / ".treepilot").mkdir()
    (tmp_path / ".treepilot" / "config.yaml").write_text(
        "limits:\n  max_history_tasks: 3\ninstalled_extensions:\n  - tailwind\n"
    )
    config = load_config(tmp_path)
    assert config.limits.max_history_tasks == 3
    assert config.limits.max_log_lines == 20
    assert config.installed_extensions == ["tailwind"]


def test_model_env_override(monkeypatch):
    monkeypatch.setenv("TREEPILOT_MODEL", "openai/gpt-4o")
    assert load_config().routing.architect == "openai/gpt-4o"


def test_build_kwargs_drops_temperature_for_reasoning_models():
    messages = [{"role": "user", "content": "hi"}]
    assert "temperature" in _build_kwargs("gemini/gemini-2.5-flash", messages, 0.4, 100)
    assert "temperature" not in _build_kwargs("openai/o3-mini", messages, 0.4, 100)
    assert _build_kwargs("gpt-5", messages, 0.4, 100)["stream"] is True


def test_unknown_role():
    with pytest.raises(ValueError):
        Router(TreePilotConfig()).resolve_model("auditor")


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


@pytest.mark.asyncio
async def test_stream_yields_text_fragments(monkeypatch):
    async def fake_stream():
        for text in ["Hel", None, "lo"]:
            yield _chunk(text)

    async def fake_acompletion(**kwargs):
        assert kwargs["stream"] is True
        return fake_stream()

    monkeypatch.setattr("treepilot.router.litellm.acompletion", fake_acompletion)
    router = Router(TreePilotConfig())
    fragments = [f async for f in router.stream("architect", [{"role": "user", "content": "hi"}])]

    assert fragments == ["Hel", "lo"]
    assert router.last_stats.fragments == 2


@pytest.mark.asyncio
async def test_broken_stream_becomes_generator_failure(monkeypatch):
    async def fake_stream():
        yield _chunk("partial")
        raise ConnectionError("reset by peer")

    async def fake_acompletion(**kwargs):
        return fake_stream()

    monkeypatch.setattr("treepilot.router.litellm.acompletion", fake_acompletion)
    router = Router(TreePilotConfig())

    with pytest.raises(GeneratorFailure):
        async for _ in router.stream("architect", []):
            pass
