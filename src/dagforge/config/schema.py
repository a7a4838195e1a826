"""
dagforge configuration schema and validation.

- Authoritative defaults for every section (``meta``, ``scheduler``, ``retry``,
  ``executor``, ``paths``, ``observability``).
- Strict validation returning structured issues (field path + message).
- Deterministic deep-merge and redacted dumps.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, NotRequired, TypedDict

from dagforge.constants import CONFIG_SCHEMA_VERSION, DEFAULT_STATE_DB

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_POOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,63}$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passphrase", "credential", "credentials", "apikey"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "private_key", "client_secret")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("paths", "state_db"),)
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")
EXECUTOR_BACKENDS: Final[tuple[str, ...]] = ("inline", "thread")


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_active_tasks: int
    max_dispatch_per_tick: int
    tick_interval_seconds: float
    pools: dict[str, int]


class RetryConfig(TypedDict):
    retries: int
    delay_seconds: float
    backoff_multiplier: float
    max_delay_seconds: NotRequired[float]


class ExecutorConfig(TypedDict):
    backend: str
    max_workers: int


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    event_buffer_size: int


class DagforgeConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    retry: RetryConfig
    executor: ExecutorConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[DagforgeConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "scheduler": {
        "max_active_tasks": 16,
        "max_dispatch_per_tick": 16,
        "tick_interval_seconds": 0.05,
        "pools": {},
    },
    "retry": {
        "retries": 0,
        "delay_seconds": 0.0,
        "backoff_multiplier": 1.0,
    },
    "executor": {"backend": "thread", "max_workers": 4},
    "paths": {"state_db": DEFAULT_STATE_DB.as_posix()},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "event_buffer_size": 512,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> DagforgeConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade dagforge.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the dagforge runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a deterministic redacted representation for logs and ``dagforge config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "scheduler": _validate_scheduler,
        "retry": _validate_retry,
        "executor": _validate_executor,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_scheduler(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_active_tasks", "max_dispatch_per_tick", "tick_interval_seconds", "pools"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("max_active_tasks", "max_dispatch_per_tick"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed

    if "tick_interval_seconds" in payload:
        interval = _as_float(
            payload["tick_interval_seconds"], _join(path, "tick_interval_seconds"), issues
        )
        if interval is not None:
            if interval <= 0:
                issues.add(_join(path, "tick_interval_seconds"), "must be > 0")
            else:
                out["tick_interval_seconds"] = interval

    if "pools" in payload:
        pools_path = _join(path, "pools")
        pools = _as_object(payload["pools"], pools_path, issues)
        if pools is not None:
            parsed_pools: dict[str, int] = {}
            for name in sorted(pools):
                pool_path = _join(pools_path, name)
                if not _POOL_NAME_PATTERN.fullmatch(name):
                    issues.add(pool_path, "invalid pool name")
                    continue
                limit = _as_int(pools[name], pool_path, issues, minimum=1)
                if limit is not None:
                    parsed_pools[name] = limit
            out["pools"] = parsed_pools
    return out


def _validate_retry(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {"retries", "delay_seconds", "backoff_multiplier"}
    _reject_unknown_keys(payload, required | {"max_delay_seconds"}, path, issues)
    _require_keys(payload, required, path, issues)

    out: dict[str, Any] = {}
    if "retries" in payload:
        retries = _as_int(payload["retries"], _join(path, "retries"), issues, minimum=0)
        if retries is not None:
            out["retries"] = retries
    for key, minimum in (
        ("delay_seconds", 0.0),
        ("backoff_multiplier", 1.0),
        ("max_delay_seconds", 0.0),
    ):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=minimum)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_executor(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"backend", "max_workers"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "backend" in payload:
        backend = _as_enum(
            payload["backend"], _join(path, "backend"), issues, allowed_values=EXECUTOR_BACKENDS
        )
        if backend is not None:
            out["backend"] = backend
    if "max_workers" in payload:
        workers = _as_int(payload["max_workers"], _join(path, "max_workers"), issues, minimum=1)
        if workers is not None:
            out["max_workers"] = workers
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"state_db"}, path, issues)
    _require_keys(payload, {"state_db"}, path, issues)

    out: dict[str, Any] = {}
    if "state_db" in payload:
        parsed = _as_path_text(payload["state_db"], _join(path, "state_db"), issues)
        if parsed is not None:
            out["state_db"] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "event_buffer_size"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if level is not None:
            out["log_level"] = level
    if "log_format" in payload:
        log_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if log_format is not None:
            out["log_format"] = log_format
    if "event_buffer_size" in payload:
        size = _as_int(
            payload["event_buffer_size"], _join(path, "event_buffer_size"), issues, minimum=1
        )
        if size is not None:
            out["event_buffer_size"] = size
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DagforgeConfig",
    "EXECUTOR_BACKENDS",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
