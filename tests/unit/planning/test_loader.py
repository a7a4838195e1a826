"""Unit tests for YAML graph definitions."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from dagforge.domain.models import JoinRule, RetryPolicy
from dagforge.execution.operators import BranchTask, PythonTask, SensorTask
from dagforge.planning.loader import (
    GraphDefinitionError,
    load_graph_definition,
    load_graph_file,
    resolve_callable,
)
from tests import helpers

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "graph.yaml"
    path.write_text(dedent(body), encoding="utf-8")
    return path


def test_full_definition_builds_expected_graph(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
        schema_version: 1
        dag_id: etl
        defaults:
          retry: {retries: 2, delay_seconds: 0.5}
          pool: io
        tasks:
          - id: extract
            callable: tests.helpers:extract
            op_kwargs: {limit: 5}
          - id: choose
            callable: tests.helpers:pick_fast_path
            kind: branch
            upstream: [extract]
          - id: fast
            callable: tests.helpers:double
            upstream: [choose]
            inputs: {rows: extract}
          - id: slow
            callable: tests.helpers:double
            upstream: [choose]
            retry: {retries: 0}
            priority: 5
          - id: report
            callable: tests.helpers:always_ready
            kind: sensor
            join_rule: none_failed
            poke_interval_seconds: 0
            timeout_seconds: 2
        groups:
          - id: publish
            upstream: [report]
            tasks:
              - id: upload
                callable: tests.helpers:extract
        edges:
          - [fast, report]
          - [slow, report]
        """,
    )

    graph = load_graph_file(path)

    assert graph.dag_id == "etl"
    assert graph.task_ids == ("extract", "choose", "fast", "slow", "report", "publish.upload")
    assert isinstance(graph.task("extract").executable, PythonTask)
    assert isinstance(graph.task("choose").executable, BranchTask)
    assert isinstance(graph.task("report").executable, SensorTask)
    assert graph.task("extract").retry == RetryPolicy(retries=2, delay_seconds=0.5)
    assert graph.task("slow").retry.retries == 0
    assert graph.task("slow").priority == 5
    assert graph.task("fast").pool == "io"
    assert graph.task("fast").inputs["rows"].task_id == "extract"
    assert graph.task("report").join_rule is JoinRule.NONE_FAILED
    assert graph.upstream_of("report") == ("fast", "slow")
    assert graph.upstream_of("publish.upload") == ("report",)


def test_dag_id_defaults_to_file_stem(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
        tasks:
          - id: only
            callable: tests.helpers:extract
        """,
    )

    assert load_graph_file(path).dag_id == "graph"


def test_default_retry_applies_when_file_is_silent() -> None:
    document = {"tasks": [{"id": "a", "callable": "tests.helpers:extract"}]}

    graph = load_graph_definition(document, default_retry=RetryPolicy(retries=4))

    assert graph.task("a").retry.retries == 4


def test_file_defaults_override_default_retry() -> None:
    document = {
        "defaults": {"retry": {"retries": 1}},
        "tasks": [{"id": "a", "callable": "tests.helpers:extract"}],
    }

    graph = load_graph_definition(document, default_retry=RetryPolicy(retries=4))

    assert graph.task("a").retry.retries == 1


def test_structured_input_reference_with_key() -> None:
    document = {
        "tasks": [
            {"id": "a", "callable": "tests.helpers:extract"},
            {
                "id": "b",
                "callable": "tests.helpers:double",
                "upstream": "a",
                "inputs": {"rows": {"task_id": "a", "key": "rows"}},
            },
        ]
    }

    graph = load_graph_definition(document)

    ref = graph.task("b").inputs["rows"]
    assert (ref.task_id, ref.key) == ("a", "rows")


@pytest.mark.parametrize(
    ("document", "fragment"),
    [
        ({"tasks": [{"id": "a"}]}, "callable"),
        ({"tasks": [{"id": "a", "callable": "no_colon"}]}, "module:attribute"),
        ({"tasks": [{"id": "a", "callable": "tests.helpers:missing"}]}, "no attribute"),
        ({"tasks": [{"id": "a", "callable": "not_a_module_xyz:fn"}]}, "cannot import"),
        ({"tasks": [{"id": "a", "callable": "tests.helpers:extract", "kind": "bash"}]}, "kind"),
        ({"tasks": [{"id": "a", "callable": "tests.helpers:extract", "oops": 1}]}, "oops"),
        ({"schema_version": 9, "tasks": []}, "unsupported version"),
        ({"tasks": {"id": "a"}}, "expected sequence"),
        ({"edges": [["a"]], "tasks": []}, "expected [parent, child]"),
    ],
)
def test_invalid_definitions_raise_definition_error(
    document: dict[str, object], fragment: str
) -> None:
    with pytest.raises(GraphDefinitionError) as error:
        load_graph_definition(document)

    assert fragment in str(error.value)


def test_graph_errors_are_wrapped_with_source() -> None:
    document = {
        "tasks": [
            {"id": "a", "callable": "tests.helpers:extract", "upstream": ["b"]},
            {"id": "b", "callable": "tests.helpers:extract", "upstream": ["a"]},
        ]
    }

    with pytest.raises(GraphDefinitionError) as error:
        load_graph_definition(document, source="cyclic.yaml")

    assert str(error.value).startswith("cyclic.yaml:")
    assert "cycle" in str(error.value)


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(GraphDefinitionError, match="not found"):
        load_graph_file(tmp_path / "absent.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("tasks: [unclosed\n", encoding="utf-8")
    with pytest.raises(GraphDefinitionError, match="invalid YAML"):
        load_graph_file(bad)


def test_resolve_callable_walks_dotted_attributes() -> None:
    assert resolve_callable("tests.helpers:extract") is helpers.extract
    assert resolve_callable("tests.helpers:Noop.execute") is helpers.Noop.execute


def test_executable_instances_are_used_as_is(monkeypatch: pytest.MonkeyPatch) -> None:
    instance = helpers.Returns(7)
    monkeypatch.setattr(helpers, "PREBUILT", instance, raising=False)

    graph = load_graph_definition({"tasks": [{"id": "a", "callable": "tests.helpers:PREBUILT"}]})

    assert graph.task("a").executable is instance


def test_module_failing_at_import_is_a_definition_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmp_path / "dagforge_broken_tasks.py").write_text(
        'raise RuntimeError("missing DATABASE_URL")\n', encoding="utf-8"
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    with pytest.raises(GraphDefinitionError, match="RuntimeError: missing DATABASE_URL"):
        resolve_callable("dagforge_broken_tasks:run")
    with pytest.raises(GraphDefinitionError, match="cannot import module"):
        resolve_callable("dagforge_no_such_module:run")
