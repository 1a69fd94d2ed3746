from __future__ import annotations

import json
import logging
from pathlib import Path

from termpilot import log_utils
from termpilot.log_utils import (
    ContextFilter,
    ContextFormatter,
    JsonFormatter,
    build_log_config,
    configure_logging,
    log_chunks_enabled,
    log_context,
    log_event,
)


def _record(message: str = "agent.tool", **fields) -> logging.LogRecord:
    record = logging.LogRecord("termpilot.test", logging.INFO, __file__, 1, message, None, None)
    record.event_fields = fields
    ContextFilter().filter(record)
    return record


def test_build_log_config_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TERMPILOT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("TERMPILOT_LOG_LEVEL", "debug")
    monkeypatch.setenv("TERMPILOT_LOG_JSON", "yes")
    monkeypatch.setenv("TERMPILOT_LOG_MAX_BYTES", "oops")

    config = build_log_config()

    assert config.log_file == tmp_path / "logs" / "termpilot.log"
    assert config.level == logging.DEBUG
    assert config.json is True
    assert config.stderr is False
    assert config.max_bytes == 5_000_000
    assert config.logger_levels["httpx"] == logging.WARNING


def test_context_fields_nest_and_reset() -> None:
    with log_context(run_id="r1"):
        with log_context(tool_call_id="c1", ignored=None):
            inner = _record(tool="read_file", ok=True)
        outer = _record()
    after = _record()

    assert inner.context_fields == {"run_id": "r1", "tool_call_id": "c1"}
    assert outer.context_fields == {"run_id": "r1"}
    assert after.context_fields == {}


def test_text_formatter_appends_sorted_fields() -> None:
    with log_context(run_id="abc"):
        record = _record(tool="run_shell_command", command="ls -la", duration_ms=12)

    line = ContextFormatter("%(levelname)s %(message)s").format(record)

    assert line == 'INFO agent.tool run_id=abc command="ls -la" duration_ms=12 tool=run_shell_command'


def test_json_formatter() -> None:
    with log_context(run_id="abc"):
        record = _record(ok=False)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "agent.tool"
    assert payload["context"] == {"run_id": "abc"}
    assert payload["fields"] == {"ok": False}


def test_log_event_attaches_fields(caplog) -> None:
    logger = logging.getLogger("termpilot.test")

    with caplog.at_level(logging.INFO, logger="termpilot.test"):
        log_event(logger, "usage.persist", provider="openai", total_tokens=5)

    assert caplog.records[-1].getMessage() == "usage.persist"
    assert caplog.records[-1].event_fields == {"provider": "openai", "total_tokens": 5}


def test_configure_logging_writes_text_lines_to_the_file(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(log_utils, "_active", None)
    monkeypatch.setenv("TERMPILOT_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("TERMPILOT_LOG_CHUNKS", "1")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging(build_log_config())
        with log_context(run_id="r9"):
            log_event(logging.getLogger("termpilot.test"), "agent.turn", turn=1, note="")
        for handler in root.handlers:
            handler.flush()

        assert log_chunks_enabled()
        assert logging.getLogger("httpcore").level == logging.WARNING
        line = (tmp_path / "termpilot.log").read_text(encoding="utf-8").strip()
        assert line.endswith('termpilot.test agent.turn run_id=r9 note="" turn=1')
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
