"""Structured logging setup: structlog processors rendered as JSON lines or console text."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import structlog

LogFormat = Literal["json", "text"]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOGGER_NAME: Final[str] = "dagforge"
_LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)
_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Keys that structlog itself owns; never redacted.
_RESERVED_KEYS: Final[frozenset[str]] = frozenset(
    {"event", "level", "timestamp", "logger", "exception"}
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_file: Path | str | None = None
    logger_name: str = _DEFAULT_LOGGER_NAME


def configure_logging(
    level: int | str = "INFO",
    *,
    log_format: str = "json",
    log_file: Path | str | None = None,
) -> LoggingConfig:
    """
    Configure structlog and the stdlib root handler for the process.

    ``json`` renders one canonical JSON object per line; ``text`` uses the
    structlog console renderer. Records go to stderr, and additionally to
    ``log_file`` when given. Calling again replaces the previous handlers.
    """
    config = LoggingConfig(
        level=level,
        log_format=_validate_format(log_format),
        log_file=log_file,
    )
    numeric_level = _parse_log_level(config.level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_processor,
    ]
    renderer: Any
    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file is not None:
        path = Path(config.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_dagforge_handler", False):
            root.removeHandler(existing)
            existing.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._dagforge_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    return config


@contextmanager
def run_log_context(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (``run_id``, ``dag_id``...) to every log record in scope."""
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_processor(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and inline credentials."""
    for key in list(event_dict):
        if key in _RESERVED_KEYS:
            if key == "event" and isinstance(event_dict[key], str):
                event_dict[key] = _redact_string(event_dict[key])
            continue
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list | tuple):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    return _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)


def _validate_format(log_format: str) -> LogFormat:
    normalized = log_format.strip().lower() if isinstance(log_format, str) else ""
    if normalized not in _LOG_FORMATS:
        raise ValueError(f"log_format must be one of {', '.join(_LOG_FORMATS)}, got {log_format!r}")
    return "json" if normalized == "json" else "text"


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("log level must be an int or level name")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        resolved = logging.getLevelName(value.strip().upper())
        if isinstance(resolved, int):
            return resolved
    raise ValueError(f"unknown log level: {value!r}")


__all__ = [
    "LogFormat",
    "LoggingConfig",
    "configure_logging",
    "redact_processor",
    "run_log_context",
]
