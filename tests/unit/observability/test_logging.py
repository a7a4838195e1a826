"""
Unit tests for structured logging setup.

Covers JSON line output, redaction of secret-looking fields, correlation
fields bound through ``run_log_context``, and level filtering.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from dagforge.observability.logging import (
    LoggingConfig,
    configure_logging,
    redact_processor,
    run_log_context,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_dagforge_handler", False):
            root.removeHandler(handler)
            handler.close()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"dagforge.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_json_logging_redacts_secrets_and_carries_run_context(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "run.jsonl"
    config = configure_logging("INFO", log_format="json", log_file=log_path)
    logger = structlog.get_logger(_logger_name())

    with run_log_context(run_id="run-123", dag_id="etl", task_id=None):
        logger.info(
            "task_started",
            api_token="tok-FAKE",
            nested={"password": "hunter2", "safe": "ok"},
            note="retrying with password=hunter2",
        )
    logger.info("outside_context")

    assert config == LoggingConfig(level="INFO", log_format="json", log_file=log_path)
    first, second = _read_json_lines(log_path)
    assert first["event"] == "task_started"
    assert first["run_id"] == "run-123"
    assert first["dag_id"] == "etl"
    assert "task_id" not in first
    assert first["level"] == "info"
    assert first["api_token"] == "***REDACTED***"
    assert first["nested"] == {"password": "***REDACTED***", "safe": "ok"}
    assert first["note"] == "retrying with password=***REDACTED***"
    assert "hunter2" not in log_path.read_text(encoding="utf-8")
    assert "run_id" not in second


def test_level_filtering_drops_lower_records(tmp_path: Path) -> None:
    log_path = tmp_path / "warn.jsonl"
    configure_logging("WARNING", log_file=log_path)
    logger = structlog.get_logger(_logger_name())

    logger.info("quiet")
    logger.warning("loud", attempt=2)

    records = _read_json_lines(log_path)
    assert [record["event"] for record in records] == ["loud"]
    assert records[0]["attempt"] == 2


def test_text_format_renders_console_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "text.log"
    configure_logging("DEBUG", log_format="TEXT", log_file=log_path)

    structlog.get_logger(_logger_name()).debug("dispatch_batch", task_ids=["a", "b"])

    line = log_path.read_text(encoding="utf-8")
    assert "dispatch_batch" in line
    assert "task_ids" in line
    with pytest.raises(json.JSONDecodeError):
        json.loads(line)


def test_reconfiguring_replaces_previous_handlers(tmp_path: Path) -> None:
    configure_logging(log_file=tmp_path / "first.jsonl")
    configure_logging(log_file=tmp_path / "second.jsonl")

    owned = [
        handler
        for handler in logging.getLogger().handlers
        if getattr(handler, "_dagforge_handler", False)
    ]
    assert len(owned) == 2


@pytest.mark.parametrize(
    ("kwargs", "fragment"),
    [
        ({"level": "LOUD"}, "unknown log level"),
        ({"level": True}, "log level"),
        ({"log_format": "xml"}, "log_format"),
    ],
)
def test_invalid_settings_are_rejected(kwargs: dict[str, object], fragment: str) -> None:
    with pytest.raises(ValueError, match=fragment):
        configure_logging(**kwargs)  # type: ignore[arg-type]


def test_redact_processor_keeps_reserved_keys() -> None:
    event_dict = {
        "event": "sent Bearer abc.def",
        "level": "info",
        "secret_value": "x",
        "items": ["token=abc", 3],
    }

    redacted = redact_processor(None, "info", event_dict)

    assert redacted["level"] == "info"
    assert redacted["event"] == "sent Bearer ***REDACTED***"
    assert redacted["secret_value"] == "***REDACTED***"
    assert redacted["items"] == ["token=***REDACTED***", 3]
