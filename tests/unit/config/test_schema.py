"""Unit tests for strict config schema validation, merging, and redaction."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from dagforge.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

pytestmark = pytest.mark.unit

REPO_ROOT = Path(__file__).resolve().parents[3]


def _load_toml(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    assert isinstance(data, dict)
    return data


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_shipped_dagforge_toml_validates_successfully() -> None:
    config = merge_config(default_config(), _load_toml(REPO_ROOT / "dagforge.toml"))

    result = validate_config(config)

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert result.config["scheduler"]["pools"] == {"default": 8}


def test_defaults_are_valid_and_detached() -> None:
    first = default_config()
    first["scheduler"]["max_active_tasks"] = 1

    assert default_config()["scheduler"]["max_active_tasks"] == 16
    assert assert_valid_config(default_config())["executor"]["backend"] == "thread"


def test_unknown_keys_and_missing_sections_are_reported() -> None:
    config = merge_config(default_config(), {"scheduler": {"turbo": True}})
    del config["paths"]

    assert _issue_paths(config) == ["paths", "scheduler.turbo"]


def test_embedded_secrets_are_forbidden() -> None:
    config = merge_config(default_config(), {"executor": {"api_key": "abc"}})

    result = validate_config(config)

    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("executor.api_key", "embedded secret values are forbidden")
    ]


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"scheduler": {"max_active_tasks": 0}}, "scheduler.max_active_tasks"),
        ({"scheduler": {"max_active_tasks": True}}, "scheduler.max_active_tasks"),
        ({"scheduler": {"tick_interval_seconds": 0}}, "scheduler.tick_interval_seconds"),
        ({"scheduler": {"pools": {"bad name": 1}}}, "scheduler.pools.bad name"),
        ({"scheduler": {"pools": {"db": 0}}}, "scheduler.pools.db"),
        ({"retry": {"backoff_multiplier": 0.5}}, "retry.backoff_multiplier"),
        ({"retry": {"delay_seconds": float("inf")}}, "retry.delay_seconds"),
        ({"executor": {"backend": "celery"}}, "executor.backend"),
        ({"executor": {"max_workers": "4"}}, "executor.max_workers"),
        ({"paths": {"state_db": "  "}}, "paths.state_db"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"observability": {"log_format": "xml"}}, "observability.log_format"),
        ({"meta": {"schema_version": 2}}, "meta.schema_version"),
    ],
)
def test_invalid_values_report_structured_paths(overlay: dict[str, object], path: str) -> None:
    assert _issue_paths(merge_config(default_config(), overlay)) == [path]


def test_newer_schema_version_suggests_runtime_upgrade() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 9}})

    with pytest.raises(ConfigValidationError) as error:
        assert_valid_config(config)

    assert "upgrade the dagforge runtime" in str(error.value)
    assert error.value.issues[0].path == "meta.schema_version"


def test_non_object_root_is_rejected() -> None:
    result = validate_config(["not", "a", "mapping"])

    assert not result.is_valid
    assert result.issues[0].path == "<root>"


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"scheduler": {"max_active_tasks": 4, "pools": {"db": 1}}}
    overlay = {"scheduler": {"pools": {"api": 2}}}

    merged = merge_config(base, overlay)

    assert merged == {"scheduler": {"max_active_tasks": 4, "pools": {"db": 1, "api": 2}}}
    assert base["scheduler"]["pools"] == {"db": 1}


def test_redaction_is_recursive_and_non_destructive() -> None:
    config = {"executor": {"backend": "thread", "nested": {"clientSecret": "x"}}, "token": "y"}

    redacted = redact_config(config)

    assert redacted == {
        "executor": {"backend": "thread", "nested": {"clientSecret": "<redacted>"}},
        "token": "<redacted>",
    }
    assert config["token"] == "y"
    assert redact_config("nope") == {}
