"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core import OutcomeKind, outcome_label

if TYPE_CHECKING:
    from .core import OperationResult, Report, RepositoryHandle


OUTCOME_ICONS = {
    OutcomeKind.UP_TO_DATE: "[green]✓[/]",
    OutcomeKind.FETCHED_CHANGES: "[blue]⬇[/]",
    OutcomeKind.PULLED_CLEANLY: "[green]⬇ ✓[/]",
    OutcomeKind.WOULD_CONFLICT: "[bold red]⚠[/]",
    OutcomeKind.DIRTY_WORKING_TREE: "[yellow]✎[/]",
    OutcomeKind.ERROR: "[red]✗[/]",
}

OUTCOME_STYLES = {
    OutcomeKind.UP_TO_DATE: "green",
    OutcomeKind.FETCHED_CHANGES: "blue",
    OutcomeKind.PULLED_CLEANLY: "green",
    OutcomeKind.WOULD_CONFLICT: "bold red",
    OutcomeKind.DIRTY_WORKING_TREE: "yellow",
    OutcomeKind.ERROR: "red",
}


def compute_unique_display_names(paths: list[Path]) -> dict[Path, str]:
    """Compute unique display names for paths with duplicate names.

    When several paths share a final component, parent directory components
    are added until each name becomes unique.
    """
    name_groups: dict[str, list[Path]] = defaultdict(list)
    for path in paths:
        name_groups[path.name].append(path)

    result: dict[Path, str] = {}
    for name, group in name_groups.items():
        if len(group) == 1:
            result[group[0]] = name
        else:
            for path, unique_name in zip(group, _make_paths_unique(group)):
                result[path] = unique_name
    return result


def _make_paths_unique(paths: list[Path]) -> list[str]:
    """Generate the shortest unique trailing part of each path."""
    path_parts_list = [list(reversed(p.parts)) for p in paths]

    result = []
    for i, parts in enumerate(path_parts_list):
        for depth in range(1, len(parts) + 1):
            candidate = "/".join(reversed(parts[:depth]))
            clashes = any(
                "/".join(reversed(other[: min(depth, len(other))])) == candidate
                for j, other in enumerate(path_parts_list)
                if i != j
            )
            if not clashes:
                result.append(candidate)
                break
        else:
            result.append("/".join(reversed(parts)))
    return result


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, data: object) -> None:
        self.console.print(
            json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True
        )

    def print_report(self, report: Report, title: str | None = None):
        """Print a batch report."""
        if self.use_json:
            self._print_json(report.to_dict())
        elif report.silent:
            self._print_report_lines(report)
        else:
            self._print_report_table(report, title)

    def _print_report_lines(self, report: Report):
        """Plain lines, printed only when something needs attention."""
        if not report.any_actionable:
            return
        for line in report.lines:
            self.console.print(line, markup=False, highlight=False, soft_wrap=True)

    def _print_report_table(self, report: Report, title: str | None):
        operation = report.operation.value
        if not report.entries:
            self.console.print(f"[dim]No repositories to {operation}[/]")
            return

        display_names = compute_unique_display_names([r.path for r in report.entries])

        table = Table(title=title or f"{operation.title()} Results")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Outcome", justify="center")
        table.add_column("Message")

        for result in report.entries:
            table.add_row(
                escape(display_names.get(result.path, result.name)),
                OUTCOME_ICONS[result.outcome],
                self._get_message_display(result),
            )

        self.console.print(table)
        self.console.print()
        self._print_summary(report)

    def _get_message_display(self, result: OperationResult) -> str:
        style = OUTCOME_STYLES[result.outcome]
        label = outcome_label(result.outcome, result.operation)
        message = result.error if result.error else result.message
        if message and message != "Up to date":
            return f"[{style}]{label}[/] [dim]{escape(message[:60])}[/]"
        return f"[{style}]{label}[/]"

    def _print_summary(self, report: Report):
        parts = [f"[bold]Total:[/] {report.total}"]
        for outcome in OutcomeKind:
            count = report.count(outcome)
            if count > 0:
                style = OUTCOME_STYLES[outcome]
                label = outcome_label(outcome, report.operation).capitalize()
                parts.append(f"[{style}]{label}:[/] {count}")
        self.console.print(" | ".join(parts))

    def print_repo_list(self, repos: list[RepositoryHandle]):
        """Print the resolved repositories."""
        if self.use_json:
            self._print_json(
                {"count": len(repos), "repositories": [r.to_dict() for r in repos]}
            )
            return

        self.console.print(f"[bold]Found {len(repos)} repositories[/]\n")
        for repo in repos:
            self.console.print(f"  [cyan]{escape(str(repo.path))}[/]")

    def print_directory_list(self, label: str, directories: list[str]):
        """Print an included/excluded directory list."""
        if self.use_json:
            self._print_json({label.lower().replace(" ", "_"): directories})
            return

        self.console.print(f"[bold]{label}:[/]")
        if not directories:
            self.console.print("  [dim](none)[/]")
        for directory in directories:
            self.console.print(f"  {directory}", markup=False, highlight=False)

    def print_config(self, config: dict):
        """Print the stored configuration."""
        if self.use_json:
            self._print_json(config)
            return

        for key, value in config.items():
            if isinstance(value, list):
                self.print_directory_list(key, value)
            else:
                display = escape(str(value)) if value else "[dim](not set)[/]"
                self.console.print(f"[bold]{key}:[/] {display}")

    def print_ok(self):
        if self.use_json:
            self._print_json({"ok": True})
        else:
            self.console.print("[green]OK[/]")
