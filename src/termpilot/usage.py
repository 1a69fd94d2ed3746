"""Token usage accounting and per-provider persistence."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

from termpilot.log_utils import log_event
from termpilot.paths import state_dir

logger = logging.getLogger(__name__)

USAGE_FILE_NAME = "usage.json"


@dataclass
class TokensSummary:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokensSummary") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.cached_tokens += other.cached_tokens
        self.total_tokens += other.total_tokens

    def copy(self) -> "TokensSummary":
        return TokensSummary(**asdict(self))

    @classmethod
    def from_openai(cls, usage: Mapping[str, Any] | None) -> "TokensSummary":
        """Translate an OpenAI ``usage`` object; missing fields count as zero."""

        if not isinstance(usage, Mapping):
            return cls()

        def _int(value: Any) -> int:
            return int(value) if isinstance(value, (int, float)) else 0

        details = usage.get("prompt_tokens_details")
        cached = _int(details.get("cached_tokens")) if isinstance(details, Mapping) else 0
        prompt = _int(usage.get("prompt_tokens"))
        completion = _int(usage.get("completion_tokens"))
        total = _int(usage.get("total_tokens")) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, cached_tokens=cached, total_tokens=total)


@dataclass(frozen=True)
class UsageRecord:
    """Persisted lifetime totals for one provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0

    def plus(self, summary: TokensSummary) -> "UsageRecord":
        return UsageRecord(
            prompt_tokens=self.prompt_tokens + summary.prompt_tokens,
            completion_tokens=self.completion_tokens + summary.completion_tokens,
            cached_tokens=self.cached_tokens + summary.cached_tokens,
            total_tokens=self.total_tokens + summary.total_tokens,
            request_count=self.request_count + 1,
        )

    @classmethod
    def from_dict(cls, data: Any) -> "UsageRecord | None":
        if not isinstance(data, Mapping):
            return None
        known = {"prompt_tokens", "completion_tokens", "cached_tokens", "total_tokens", "request_count"}
        return cls(**{k: int(v) for k, v in data.items() if k in known and isinstance(v, (int, float))})


class UsageStore:
    """JSON file of ``{provider: UsageRecord | null}``.

    Each record is replaced as a whole on write. Updates take a process-wide
    lock so overlapping sessions cannot lose each other's increments.
    """

    _lock = threading.Lock()

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or state_dir() / USAGE_FILE_NAME

    def load(self) -> dict[str, UsageRecord | None]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable usage file %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): UsageRecord.from_dict(v) for k, v in raw.items()}

    def get(self, provider: str) -> UsageRecord | None:
        return self.load().get(provider)

    def record(self, provider: str, summary: TokensSummary) -> UsageRecord:
        """Add one completed run's usage to the provider's lifetime record."""

        with self._lock:
            records = self.load()
            updated = (records.get(provider) or UsageRecord()).plus(summary)
            records[provider] = updated
            payload = {name: asdict(rec) if rec is not None else None for name, rec in records.items()}
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        log_event(logger, "usage.persist", provider=provider, total_tokens=updated.total_tokens)
        return updated


def format_usage_summary(usage: TokensSummary | UsageRecord | None, *, label: str = "Usage") -> str:
    """One-line human summary, e.g. ``Usage: input=10, output=5, total=15``."""

    if usage is None:
        return f"{label}: no data recorded."

    parts = [
        f"input={usage.prompt_tokens}",
        f"output={usage.completion_tokens}",
    ]
    if usage.cached_tokens:
        parts.append(f"cached={usage.cached_tokens}")
    parts.append(f"total={usage.total_tokens}")
    if isinstance(usage, UsageRecord):
        parts.append(f"requests={usage.request_count}")
    return f"{label}: " + ", ".join(parts)
