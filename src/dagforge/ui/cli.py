"""
dagforge command line interface.

Commands
- ``validate FILE``: load a graph definition and print its shape.
- ``run FILE``: execute a graph once and persist the run to the state DB.
- ``status [RUN_ID]``: show a persisted run (latest when omitted).
- ``config``: print the effective, redacted configuration.

Handlers return process exit codes: ``0`` success, ``1`` run failed or not
found, ``2`` config or graph definition error.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import yaml

from dagforge.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from dagforge.control_plane.coordinator import RunCoordinator, RunResult
from dagforge.control_plane.scheduler import Scheduler, SchedulerLimits
from dagforge.domain.models import RetryPolicy, Run
from dagforge.execution.executor import create_backend
from dagforge.observability import EventBus, configure_logging
from dagforge.persistence import (
    InMemoryMetadataStore,
    InMemoryRunRepository,
    RunNotFoundError,
    SqliteEventRepository,
    SqliteMetadataStore,
    SqliteRunRepository,
    StateDB,
)
from dagforge.planning.loader import GraphDefinitionError, load_graph_file
from dagforge.ui.render import CLIRenderer, create_renderer

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from dagforge.planning.task_graph import TaskGraph

EXIT_SUCCESS: Final[int] = 0
EXIT_RUN_FAILED: Final[int] = 1
EXIT_USAGE: Final[int] = 2


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_RUN_FAILED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="dagforge",
        description=(
            "dagforge: run task graphs with dependency-aware scheduling.\n\n"
            "Common workflows:\n"
            "  dagforge validate etl.yaml     Check a graph definition\n"
            "  dagforge run etl.yaml          Execute the graph once\n"
            "  dagforge status                Show the latest run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to dagforge TOML config (default: ./dagforge.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Override a config value by dotted key, e.g. executor.max_workers=8 (repeatable).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Load a graph definition and report its structure",
        description=(
            "Build the graph without running it. Cycles, unknown dependencies and\n"
            "unresolvable callables are reported with exit code 2.\n\n"
            "Examples:\n"
            "  dagforge validate etl.yaml\n"
            "  dagforge validate etl.yaml --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    validate_parser.add_argument("graph_file", help="YAML graph definition")
    validate_parser.set_defaults(handler=_cmd_validate)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute a graph once",
        description=(
            "Execute every task of the graph, honouring dependencies, retries and\n"
            "the configured concurrency budget. Ctrl-C cancels the run.\n\n"
            "Examples:\n"
            "  dagforge run etl.yaml\n"
            "  dagforge run etl.yaml --no-persist --json\n"
            "  dagforge run etl.yaml --set scheduler.max_active_tasks=2\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("graph_file", help="YAML graph definition")
    run_parser.add_argument("--run-id", default=None, help="Explicit run id (default: generated)")
    run_parser.add_argument(
        "--no-persist",
        action="store_true",
        default=False,
        help="Keep run state in memory instead of the state DB",
    )
    run_parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    run_parser.set_defaults(handler=_cmd_run)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show a persisted run; defaults to the latest run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("run_id", nargs="?", default=None, help="Run id")
    status_parser.add_argument(
        "--events", action="store_true", default=False, help="Also list persisted events"
    )
    status_parser.set_defaults(handler=_cmd_status)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration (secrets redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    graph = _load_graph(args, config)
    describe = graph.describe()

    if args.json:
        _emit_json(
            {
                "command": "validate",
                "valid": True,
                "graph": describe,
                "topological_order": list(graph.topological_order),
            }
        )
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.ok(f"{args.graph_file}: graph {graph.dag_id!r} is valid")
    renderer.kv("Tasks", describe["task_count"])
    renderer.kv("Edges", describe["edge_count"])
    renderer.kv("Roots", ", ".join(graph.roots()))
    renderer.kv("Leaves", ", ".join(graph.leaves()))
    if renderer.verbose:
        renderer.section("Topological order:")
        renderer.items(list(graph.topological_order))
    renderer.next_steps([f"dagforge run {args.graph_file}"])
    return EXIT_SUCCESS


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    observability = config["observability"]
    configure_logging(
        observability["log_level"],
        log_format=observability["log_format"],
        log_file=args.log_file,
    )
    graph = _load_graph(args, config)

    persist = not args.no_persist
    state_db_path = Path(config["paths"]["state_db"])
    coordinator, backend = _build_coordinator(config, state_db_path if persist else None)

    previous_handler = signal.getsignal(signal.SIGINT)

    def _request_cancel(_signum: int, _frame: object) -> None:
        coordinator.cancel()

    signal.signal(signal.SIGINT, _request_cancel)
    try:
        result = coordinator.run(graph, run_id=args.run_id)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        backend.shutdown(wait=True)

    exit_code = EXIT_SUCCESS if result.succeeded else EXIT_RUN_FAILED
    if args.json:
        _emit_json(
            {
                "command": "run",
                "result": result.to_dict(),
                "state_db": state_db_path.as_posix() if persist else None,
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    _render_result(renderer, result, graph)
    if persist:
        renderer.next_steps([f"dagforge status {result.run_id}"])
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    state_db_path = Path(config["paths"]["state_db"])
    if not state_db_path.exists():
        raise CLIError(f"no state DB at {state_db_path.as_posix()}; nothing has run yet")

    db = StateDB(state_db_path)
    repository = SqliteRunRepository(db)
    run = _resolve_status_run(repository, args.run_id)
    events = SqliteEventRepository(db).list_for_run(run.id) if args.events else []

    if args.json:
        payload: dict[str, object] = {"command": "status", "run": run.to_dict()}
        if args.events:
            payload["events"] = [event.to_dict() for event in events]
        _emit_json(payload)
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Run", run.id)
    renderer.kv("DAG", run.dag_id)
    renderer.kv("Status", run.status.value)
    renderer.kv("Started", run.started_at.isoformat() if run.started_at else "(not started)")
    renderer.kv("Finished", run.finished_at.isoformat() if run.finished_at else "(in progress)")
    if run.root_cause_task_id is not None:
        renderer.kv("Root cause", f"{run.root_cause_task_id}: {run.root_cause_error}")
    renderer.task_table(
        {task_id: state.status.value for task_id, state in run.task_states.items()},
        {task_id: state.attempt for task_id, state in run.task_states.items()},
    )
    if events:
        renderer.section("Events:")
        renderer.items(
            [
                f"{event.timestamp.isoformat()} {event.event_type.value} "
                f"{json.dumps(event.payload, sort_keys=True)}"
                for event in events
            ]
        )
    return EXIT_SUCCESS


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    dumped = dump_effective_config(config)

    if args.json:
        _emit_json({"command": "config", "config": json.loads(dumped)})
        return EXIT_SUCCESS

    _get_renderer(args).text(dumped)
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides = _parse_overrides(getattr(args, "overrides", None))
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc


def _parse_overrides(raw: Sequence[str] | None) -> dict[str, object]:
    """Parse ``KEY=VALUE`` pairs; values are read as YAML scalars."""

    overrides: dict[str, object] = {}
    for item in raw or ():
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise CLIError(f"invalid --set {item!r}; expected KEY=VALUE", exit_code=EXIT_USAGE)
        try:
            overrides[key.strip()] = yaml.safe_load(value) if value.strip() else ""
        except yaml.YAMLError as exc:
            raise CLIError(f"invalid --set value for {key!r}: {exc}", exit_code=EXIT_USAGE) from exc
    return overrides


def _load_graph(args: argparse.Namespace, config: Mapping[str, Any]) -> TaskGraph:
    try:
        return load_graph_file(
            args.graph_file, default_retry=RetryPolicy.from_dict(config["retry"])
        )
    except GraphDefinitionError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc


def _build_coordinator(
    config: Mapping[str, Any], state_db_path: Path | None
) -> tuple[RunCoordinator, Any]:
    scheduler_cfg = config["scheduler"]
    executor_cfg = config["executor"]
    limits = SchedulerLimits(
        max_active_tasks=scheduler_cfg["max_active_tasks"],
        max_dispatch_per_tick=scheduler_cfg["max_dispatch_per_tick"],
        pool_limits=dict(scheduler_cfg["pools"]),
    )
    backend = create_backend(executor_cfg["backend"], max_workers=executor_cfg["max_workers"])
    event_bus = EventBus(buffer_size=config["observability"]["event_buffer_size"])

    if state_db_path is None:
        metadata_store: Any = InMemoryMetadataStore()
        repository: Any = InMemoryRunRepository()
    else:
        db = StateDB(state_db_path)
        metadata_store = SqliteMetadataStore(db)
        repository = SqliteRunRepository(db)
        event_bus.set_persistence_callback(SqliteEventRepository(db).append)

    coordinator = RunCoordinator(
        scheduler=Scheduler(limits=limits),
        backend=backend,
        metadata_store=metadata_store,
        repository=repository,
        event_bus=event_bus,
        tick_interval_seconds=scheduler_cfg["tick_interval_seconds"],
    )
    return coordinator, backend


def _resolve_status_run(repository: SqliteRunRepository, run_id: str | None) -> Run:
    if run_id is None:
        latest = repository.list_runs(limit=1)
        if not latest:
            raise CLIError("no runs recorded in the state DB")
        return latest[0]
    try:
        return repository.load_run(run_id)
    except RunNotFoundError as exc:
        raise CLIError(str(exc)) from exc


def _render_result(renderer: CLIRenderer, result: RunResult, graph: TaskGraph) -> None:
    renderer.kv("Run", result.run_id)
    renderer.kv("DAG", result.dag_id)
    renderer.kv("Status", result.status.value)
    if result.root_cause is not None:
        renderer.kv("Root cause", f"{result.root_cause.task_id}: {result.root_cause.error}")
    if result.affected:
        renderer.kv("Affected", ", ".join(result.affected))
    renderer.task_table(
        {task_id: status.value for task_id, status in result.task_statuses.items()},
        result.attempts,
        order=graph.topological_order,
    )
    if renderer.verbose:
        renderer.section("Dispatch batches:")
        renderer.items([", ".join(batch) for batch in result.dispatch_batches])


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
