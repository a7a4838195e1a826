"""
Output rendering for the dagforge CLI.

Plain ``print`` output, deterministic ordering, no terminal styling. JSON
output is produced by the command handlers, not here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


class CLIRenderer:
    """Thin CLI output renderer."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def blank(self) -> None:
        print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table. Empty ``rows`` print nothing."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def task_table(
        self,
        statuses: Mapping[str, str],
        attempts: Mapping[str, int],
        *,
        order: Sequence[str] | None = None,
        title: str = "Tasks:",
    ) -> None:
        """Render per-task status rows, in ``order`` when given."""

        task_ids = list(order) if order is not None else sorted(statuses)
        rows = [
            [task_id, statuses.get(task_id, "?"), str(attempts.get(task_id, 0))]
            for task_id in task_ids
        ]
        self.table(["task", "status", "attempts"], rows, title=title)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            print(f"  $ {step}")

    def ok(self, label: str) -> None:
        print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        print(f"  FAIL  {label}")


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
