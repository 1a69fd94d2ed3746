from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from termpilot import paths
from termpilot.config import AgentConfig, Provider, config_path, load_config, save_config
from termpilot.usage import TokensSummary, UsageRecord, UsageStore, format_usage_summary


def test_platform_dirs_use_xdg_homes() -> None:
    expected_config = Path(os.environ["XDG_CONFIG_HOME"]) / "termpilot"
    expected_state = Path(os.environ["XDG_STATE_HOME"]) / "termpilot"

    assert paths.config_dir() == expected_config
    assert paths.state_dir() == expected_state
    assert paths.log_dir().is_relative_to(expected_state)


def test_dir_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TERMPILOT_CONFIG_DIR", str(tmp_path / "cfg"))
    monkeypatch.setenv("TERMPILOT_STATE_DIR", str(tmp_path / "state"))

    assert paths.config_dir() == tmp_path / "cfg"
    assert paths.state_dir() == tmp_path / "state"
    assert (tmp_path / "cfg").is_dir()


def test_first_load_writes_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.provider is Provider.GEMINI
    assert config.resolved_base_url.startswith("https://generativelanguage.googleapis.com/")
    assert json.loads(config_path().read_text())["provider"] == "gemini"


def test_env_overrides_file(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "config.json"
    save_config(AgentConfig(provider=Provider.OPENAI, model="gpt-4o", max_tokens=100), path)
    monkeypatch.setenv("TERMPILOT_MODEL", "gpt-4.1")
    monkeypatch.setenv("TERMPILOT_MAX_TOKENS", "not-a-number")
    monkeypatch.setenv("TERMPILOT_COMMAND_TIMEOUT", "12.5")

    config = load_config(path)

    assert config.provider is Provider.OPENAI
    assert config.model == "gpt-4.1"
    assert config.max_tokens == 100
    assert config.command_timeout == 12.5


def test_unreadable_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{broken")

    assert load_config(path, use_env=False) == AgentConfig()


def test_unknown_keys_and_provider_are_tolerated() -> None:
    config = AgentConfig.from_dict({"provider": "Mistral", "model": "m", "colour": "blue", "base_url": None})

    assert config.provider is Provider.CUSTOM
    assert config.model == "m"
    assert config.base_url == ""


@pytest.mark.parametrize(
    ("provider", "model", "needs_key"),
    [
        (Provider.OPENAI, "gpt-4o-mini", True),
        (Provider.DEEPSEEK, "deepseek-chat", True),
        (Provider.OLLAMA, "llama3.2", False),
    ],
)
def test_presets(provider: Provider, model: str, needs_key: bool) -> None:
    config = AgentConfig(provider=provider)

    assert config.resolved_model == model
    assert config.requires_api_key is needs_key


def test_secret_is_masked() -> None:
    config = AgentConfig(api_key="sk-abcdefghijkl")

    assert config.to_dict(mask_secret=True)["api_key"] == "sk-a...ijkl"
    assert AgentConfig(api_key="short").to_dict(mask_secret=True)["api_key"] == "*****"
    assert config.to_dict()["api_key"] == "sk-abcdefghijkl"


def test_tokens_summary_from_openai() -> None:
    usage = TokensSummary.from_openai(
        {"prompt_tokens": 10, "completion_tokens": 4, "prompt_tokens_details": {"cached_tokens": 6}}
    )

    assert usage == TokensSummary(prompt_tokens=10, completion_tokens=4, cached_tokens=6, total_tokens=14)
    assert TokensSummary.from_openai(None) == TokensSummary()


def test_usage_store_accumulates_per_provider(tmp_path: Path) -> None:
    store = UsageStore(tmp_path / "usage.json")

    store.record("openai", TokensSummary(1, 2, 0, 3))
    store.record("openai", TokensSummary(4, 5, 1, 9))
    store.record("ollama", TokensSummary(1, 1, 0, 2))

    assert store.get("openai") == UsageRecord(5, 7, 1, 12, 2)
    assert store.get("ollama") == UsageRecord(1, 1, 0, 2, 1)
    assert store.get("gemini") is None


def test_usage_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    path.write_text("[1, 2")
    store = UsageStore(path)

    assert store.load() == {}
    store.record("openai", TokensSummary(1, 1, 0, 2))
    assert json.loads(path.read_text())["openai"]["request_count"] == 1


def test_usage_store_keeps_null_records(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    path.write_text(json.dumps({"gemini": None}))

    assert UsageStore(path).load() == {"gemini": None}


def test_format_usage_summary() -> None:
    assert format_usage_summary(None) == "Usage: no data recorded."
    assert format_usage_summary(TokensSummary(10, 5, 0, 15)) == "Usage: input=10, output=5, total=15"
    assert (
        format_usage_summary(UsageRecord(10, 5, 2, 15, 3), label="openai")
        == "openai: input=10, output=5, cached=2, total=15, requests=3"
    )
