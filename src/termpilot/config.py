"""Provider presets and agent configuration.

Settings come from ``config.json`` in the user config directory, then `.env`
and ``TERMPILOT_*`` environment variables override individual fields.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from dotenv import load_dotenv

from termpilot.paths import config_dir

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
DEFAULT_AZURE_API_VERSION = "2024-12-01-preview"


class Provider(str, enum.Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    DEEPSEEK = "deepseek"
    AZURE = "azure"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str | Provider | None) -> Provider:
        """Map a stored provider id to the enum, falling back to ``custom``."""
        if isinstance(value, Provider):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.CUSTOM


@dataclass(frozen=True)
class ProviderPreset:
    base_url: str
    default_model: str


PROVIDER_PRESETS: Mapping[Provider, ProviderPreset] = MappingProxyType(
    {
        Provider.OPENAI: ProviderPreset("https://api.openai.com/v1/", "gpt-4o-mini"),
        Provider.GEMINI: ProviderPreset("https://generativelanguage.googleapis.com/v1beta/openai/", "gemini-2.0-flash"),
        Provider.OLLAMA: ProviderPreset("http://localhost:11434/v1/", "llama3.2"),
        Provider.DEEPSEEK: ProviderPreset("https://api.deepseek.com/v1/", "deepseek-chat"),
        Provider.AZURE: ProviderPreset("", "gpt-4o-mini"),
        Provider.CUSTOM: ProviderPreset("", ""),
    }
)

# Providers that run locally and accept unauthenticated requests.
KEYLESS_PROVIDERS = frozenset({Provider.OLLAMA})


def preset_for(provider: Provider) -> ProviderPreset:
    return PROVIDER_PRESETS.get(provider, PROVIDER_PRESETS[Provider.CUSTOM])


@dataclass
class AgentConfig:
    """Everything the transport, loop and multiplexer read from configuration."""

    provider: Provider = Provider.GEMINI
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    deployment: str = ""
    api_version: str = DEFAULT_AZURE_API_VERSION
    max_context_lines: int = 100
    max_tokens: int = 4096
    temperature: float = 0.7
    command_timeout: float = 30.0
    request_timeout: float = 120.0

    def __post_init__(self) -> None:
        self.provider = Provider.parse(self.provider)

    @property
    def resolved_base_url(self) -> str:
        return (self.base_url or preset_for(self.provider).base_url).strip()

    @property
    def resolved_model(self) -> str:
        return (self.model or preset_for(self.provider).default_model).strip()

    @property
    def requires_api_key(self) -> bool:
        return self.provider not in KEYLESS_PROVIDERS

    def to_dict(self, *, mask_secret: bool = False) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["provider"] = self.provider.value
        if mask_secret and self.api_key:
            data["api_key"] = _mask(self.api_key)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


def _mask(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "TERMPILOT_PROVIDER": ("provider", str),
    "TERMPILOT_BASE_URL": ("base_url", str),
    "TERMPILOT_API_KEY": ("api_key", str),
    "TERMPILOT_MODEL": ("model", str),
    "TERMPILOT_AZURE_DEPLOYMENT": ("deployment", str),
    "TERMPILOT_AZURE_API_VERSION": ("api_version", str),
    "TERMPILOT_MAX_CONTEXT_LINES": ("max_context_lines", int),
    "TERMPILOT_MAX_TOKENS": ("max_tokens", int),
    "TERMPILOT_TEMPERATURE": ("temperature", float),
    "TERMPILOT_COMMAND_TIMEOUT": ("command_timeout", float),
}


def config_path() -> Path:
    return config_dir() / CONFIG_FILE_NAME


def load_config(path: Path | None = None, *, use_env: bool = True) -> AgentConfig:
    """Load the config file (writing defaults on first use) and apply env overrides."""

    path = path or config_path()
    data: dict[str, Any] = {}
    if not path.exists():
        save_config(AgentConfig(), path)
    else:
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                data = loaded
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)

    if use_env:
        load_dotenv()
        for env_name, (field_name, caster) in _ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            try:
                data[field_name] = caster(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", env_name, raw)

    return AgentConfig.from_dict(data)


def save_config(config: AgentConfig, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    return path
