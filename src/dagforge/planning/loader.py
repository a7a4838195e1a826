"""
YAML graph definition files.

Layout::

    schema_version: 1
    dag_id: etl
    defaults:
      retry: {retries: 2, delay_seconds: 1.0}
    tasks:
      - id: extract
        callable: mypkg.jobs:extract       # module:attribute
        kind: python                       # python | sensor | branch
        op_kwargs: {limit: 10}
        retry: {retries: 3}
        pool: io
      - id: load
        callable: mypkg.jobs:load
        upstream: [transform]              # a group id resolves to its leaves
        inputs: {rows: transform.clean}    # task id, or {task_id, key}
    groups:
      - id: transform
        upstream: [extract]
        tasks: [...]                       # same task layout; nested ``groups`` allowed
    edges:
      - [extract, audit]

Callables resolving to an object with ``execute`` are used as-is; other
callables are wrapped according to ``kind``.
"""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from pathlib import Path
from typing import Final, cast

import yaml

from dagforge.constants import GRAPH_FILE_SCHEMA_VERSION, RETURN_VALUE_KEY
from dagforge.domain.models import JoinRule, MetadataRef, RetryPolicy
from dagforge.execution.executor import Executable
from dagforge.execution.operators import BranchTask, PythonTask, SensorTask
from dagforge.planning.builder import GraphBuilder
from dagforge.planning.task_graph import GraphError, TaskGraph

_TOP_LEVEL_FIELDS: Final[frozenset[str]] = frozenset(
    {"schema_version", "dag_id", "description", "defaults", "tasks", "groups", "edges"}
)
_TASK_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "id",
        "callable",
        "kind",
        "op_kwargs",
        "upstream",
        "retry",
        "join_rule",
        "priority",
        "pool",
        "inputs",
        "description",
        "poke_interval_seconds",
        "timeout_seconds",
    }
)
_GROUP_FIELDS: Final[frozenset[str]] = frozenset({"id", "upstream", "tasks", "groups"})
_DEFAULT_FIELDS: Final[frozenset[str]] = frozenset({"retry", "pool", "priority", "join_rule"})
_TASK_KINDS: Final[tuple[str, ...]] = ("python", "sensor", "branch")


class GraphDefinitionError(ValueError):
    """Raised when a graph definition file cannot be parsed or built."""


def load_graph_file(path: str | Path, *, default_retry: RetryPolicy | None = None) -> TaskGraph:
    """Parse ``path`` and build the graph. Graph construction errors are wrapped."""
    source = Path(path).expanduser()
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise GraphDefinitionError(f"{source}: graph file not found") from exc
    except OSError as exc:
        raise GraphDefinitionError(f"{source}: cannot read graph file ({exc})") from exc
    except yaml.YAMLError as exc:
        raise GraphDefinitionError(f"{source}: invalid YAML ({exc})") from exc

    return load_graph_definition(loaded, source=str(source), default_retry=default_retry)


def load_graph_definition(
    document: object,
    *,
    source: str = "<memory>",
    default_retry: RetryPolicy | None = None,
) -> TaskGraph:
    """Build a graph from an already-parsed definition mapping."""
    root = _as_mapping(document, source)
    _reject_unknown(root, _TOP_LEVEL_FIELDS, source)

    version = root.get("schema_version", GRAPH_FILE_SCHEMA_VERSION)
    if version != GRAPH_FILE_SCHEMA_VERSION:
        raise GraphDefinitionError(
            f"{source}.schema_version: unsupported version {version!r}; "
            f"expected {GRAPH_FILE_SCHEMA_VERSION}"
        )
    dag_id = _as_str(root.get("dag_id", Path(source).stem or "dag"), f"{source}.dag_id")
    defaults = _as_mapping(root.get("defaults", {}), f"{source}.defaults")
    _reject_unknown(defaults, _DEFAULT_FIELDS, f"{source}.defaults")
    if default_retry is not None:
        defaults.setdefault("retry", default_retry)

    builder = GraphBuilder(dag_id)
    try:
        _populate(builder, root, defaults, location=source)
        for index, raw_edge in enumerate(_as_list(root.get("edges", []), f"{source}.edges")):
            edge = _as_list(raw_edge, f"{source}.edges[{index}]")
            if len(edge) != 2:
                raise GraphDefinitionError(
                    f"{source}.edges[{index}]: expected [parent, child], got {edge!r}"
                )
            builder.add_edge(
                _as_str(edge[0], f"{source}.edges[{index}][0]"),
                _as_str(edge[1], f"{source}.edges[{index}][1]"),
            )
        return builder.build()
    except GraphDefinitionError:
        raise
    except (GraphError, ValueError, TypeError) as exc:
        raise GraphDefinitionError(f"{source}: {exc}") from exc


def resolve_callable(reference: str) -> object:
    """Import ``module:attribute`` (dotted attribute paths allowed)."""
    module_name, separator, attribute_path = reference.partition(":")
    if not separator or not module_name or not attribute_path:
        raise GraphDefinitionError(
            f"callable reference must look like 'module:attribute', got {reference!r}"
        )
    try:
        target: object = importlib.import_module(module_name)
    except ImportError as exc:
        raise GraphDefinitionError(f"cannot import module {module_name!r}: {exc}") from exc
    except Exception as exc:
        raise GraphDefinitionError(
            f"importing module {module_name!r} failed: {type(exc).__name__}: {exc}"
        ) from exc
    for part in attribute_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise GraphDefinitionError(
                f"module {module_name!r} has no attribute {attribute_path!r}"
            ) from exc
    return target


def _populate(
    builder: GraphBuilder,
    section: Mapping[str, object],
    defaults: Mapping[str, object],
    *,
    location: str,
) -> None:
    for index, raw_task in enumerate(_as_list(section.get("tasks", []), f"{location}.tasks")):
        _add_task(builder, raw_task, defaults, location=f"{location}.tasks[{index}]")

    for index, raw_group in enumerate(_as_list(section.get("groups", []), f"{location}.groups")):
        group_location = f"{location}.groups[{index}]"
        group = _as_mapping(raw_group, group_location)
        _reject_unknown(group, _GROUP_FIELDS, group_location)
        group_id = _as_str(group.get("id"), f"{group_location}.id")
        inner = GraphBuilder(f"{builder.dag_id}.{group_id}")
        _populate(inner, group, defaults, location=group_location)
        builder.add_group(
            group_id,
            inner,
            upstream=_as_str_list(group.get("upstream", []), f"{group_location}.upstream"),
        )


def _add_task(
    builder: GraphBuilder,
    raw: object,
    defaults: Mapping[str, object],
    *,
    location: str,
) -> None:
    task = _as_mapping(raw, location)
    _reject_unknown(task, _TASK_FIELDS, location)

    task_id = _as_str(task.get("id"), f"{location}.id")
    reference = _as_str(task.get("callable"), f"{location}.callable")
    kind = _as_str(task.get("kind", "python"), f"{location}.kind")
    if kind not in _TASK_KINDS:
        raise GraphDefinitionError(
            f"{location}.kind: must be one of {', '.join(_TASK_KINDS)}, got {kind!r}"
        )
    op_kwargs = _as_mapping(task.get("op_kwargs", {}), f"{location}.op_kwargs")
    executable = _build_executable(resolve_callable(reference), kind, op_kwargs, task, location)

    retry_raw = task.get("retry", defaults.get("retry"))
    if retry_raw is None:
        retry = RetryPolicy()
    elif isinstance(retry_raw, RetryPolicy):
        retry = retry_raw
    else:
        retry = RetryPolicy.from_dict(_as_mapping(retry_raw, f"{location}.retry"))
    pool = task.get("pool", defaults.get("pool"))
    priority = task.get("priority", defaults.get("priority", 0))
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise GraphDefinitionError(f"{location}.priority: expected integer")

    builder.add_task(
        task_id,
        executable,
        upstream=_as_str_list(task.get("upstream", []), f"{location}.upstream"),
        retry=retry,
        join_rule=JoinRule(
            _as_str(task.get("join_rule", defaults.get("join_rule", "all_success")), location)
        ),
        priority=priority,
        pool=None if pool is None else _as_str(pool, f"{location}.pool"),
        inputs=_parse_inputs(task.get("inputs", {}), f"{location}.inputs"),
        description=str(task.get("description", "")),
    )


def _build_executable(
    target: object,
    kind: str,
    op_kwargs: Mapping[str, object],
    task: Mapping[str, object],
    location: str,
) -> Executable:
    if isinstance(target, Executable) and not isinstance(target, type):
        return target
    if not callable(target):
        raise GraphDefinitionError(f"{location}.callable: resolved object is not callable")
    if kind == "branch":
        return BranchTask(target, op_kwargs=op_kwargs)
    if kind == "sensor":
        return SensorTask(
            target,
            poke_interval_seconds=float(cast("float", task.get("poke_interval_seconds", 1.0))),
            timeout_seconds=float(cast("float", task.get("timeout_seconds", 60.0))),
        )
    return PythonTask(target, op_kwargs=op_kwargs)


def _parse_inputs(value: object, location: str) -> dict[str, MetadataRef]:
    mapping = _as_mapping(value, location)
    inputs: dict[str, MetadataRef] = {}
    for name, raw_ref in mapping.items():
        if isinstance(raw_ref, str):
            inputs[name] = MetadataRef(task_id=raw_ref)
            continue
        ref = _as_mapping(raw_ref, f"{location}.{name}")
        _reject_unknown(ref, frozenset({"task_id", "key"}), f"{location}.{name}")
        inputs[name] = MetadataRef(
            task_id=_as_str(ref.get("task_id"), f"{location}.{name}.task_id"),
            key=_as_str(ref.get("key", RETURN_VALUE_KEY), f"{location}.{name}.key"),
        )
    return inputs


def _reject_unknown(value: Mapping[str, object], allowed: frozenset[str], location: str) -> None:
    unknown = sorted(set(value) - allowed)
    if unknown:
        raise GraphDefinitionError(
            f"{location}: unexpected fields: {unknown}; allowed fields: {sorted(allowed)}"
        )


def _as_mapping(value: object, location: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise GraphDefinitionError(f"{location}: expected mapping, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise GraphDefinitionError(f"{location}: keys must be strings, got {key!r}")
        parsed[key] = item
    return parsed


def _as_list(value: object, location: str) -> list[object]:
    if not isinstance(value, list):
        raise GraphDefinitionError(f"{location}: expected sequence, got {type(value).__name__}")
    return list(value)


def _as_str(value: object, location: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise GraphDefinitionError(f"{location}: expected non-empty string")
    return value.strip()


def _as_str_list(value: object, location: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (_as_str(value, location),)
    return tuple(
        _as_str(item, f"{location}[{index}]")
        for index, item in enumerate(_as_list(value, location))
    )


__all__ = [
    "GraphDefinitionError",
    "load_graph_definition",
    "load_graph_file",
    "resolve_callable",
]
