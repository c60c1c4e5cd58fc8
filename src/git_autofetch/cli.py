"""Command line interface."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .config import (
    EXCLUDED_DIRECTORIES,
    INCLUDED_DIRECTORIES,
    PROJECTS_DIRECTORY,
    ConfigStore,
    JsonConfigStore,
    ProjectDirectoryList,
    excluded_directories,
    get_projects_directory,
    included_directories,
    resolve_config_file,
    set_projects_directory,
)
from .core import AutofetchManager, GitRunner, OperationKind, Report
from .errors import AutofetchError
from .formatters import OutputFormatter
from .schema import get_tool_schema

T = TypeVar("T")

app = typer.Typer(
    name="git-autofetch",
    help="Fetch all Git repositories in a projects directory, and pull when there are no conflicts.",
    no_args_is_help=False,
)
include_app = typer.Typer(
    help="Manage included directories (when set, only these are operated on).",
    no_args_is_help=True,
)
exclude_app = typer.Typer(
    help="Manage directories excluded from the projects directory scan.",
    no_args_is_help=True,
)
app.add_typer(include_app, name="include")
app.add_typer(exclude_app, name="exclude")


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Send package logs to stderr through rich."""
    logger = logging.getLogger("git_autofetch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return logger


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-autofetch {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging",
    ),
):
    """git-autofetch: fetch all repositories, pull when it is safe."""
    setup_logging(verbose)

    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def get_store() -> ConfigStore:
    return JsonConfigStore(resolve_config_file())


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def run_or_exit(console: Console, action: Callable[[], T]) -> T:
    """Run an action, turning user-facing errors into exit code 1."""
    try:
        return action()
    except AutofetchError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)


def run_batch(
    operation: OperationKind,
    *,
    json_output: bool,
    sequential: bool,
    workers: int | None,
    silent: bool = False,
    dry_run: bool = False,
) -> Report:
    console, formatter = get_console_and_formatter(json_output)
    manager = AutofetchManager(
        get_store(),
        GitRunner(),
        workers,
        sequential=sequential,
    )

    def execute() -> Report:
        return manager.execute(operation, silent=silent, dry_run=dry_run)

    if json_output or silent:
        report = run_or_exit(console, execute)
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(_progress_message(operation), total=None)
            report = run_or_exit(console, execute)

    formatter.print_report(report)
    if manager.scan_warnings and not json_output and not silent:
        console.print(
            f"\n[yellow]{len(manager.scan_warnings)} directories could not be read "
            "(see warnings above)[/]"
        )
    return report


def _progress_message(operation: OperationKind) -> str:
    match operation:
        case OperationKind.FETCH:
            return "Fetching all repositories..."
        case OperationKind.PULL:
            return "Fetching and pulling repositories..."
        case _:
            return "Checking repositories..."


@app.command("set-projects-directory")
def set_projects_directory_cmd(
    path: Path = typer.Argument(
        ...,
        help="Root folder of your Git projects",
    ),
):
    """Set the directory that is scanned for repositories."""
    console, formatter = get_console_and_formatter(False)
    store = get_store()
    run_or_exit(console, lambda: set_projects_directory(store, path))
    formatter.print_ok()


@app.command()
def fetch(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        "-s",
        help="Run sequentially instead of parallel",
    ),
    workers: int = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Maximum parallel git processes",
    ),
):
    """Fetch all repositories without touching working trees."""
    run_batch(
        OperationKind.FETCH,
        json_output=json_output,
        sequential=sequential,
        workers=workers,
    )


@app.command()
def pull(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        "-s",
        help="Run sequentially instead of parallel",
    ),
    workers: int = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Maximum parallel git processes",
    ),
    silent: bool = typer.Option(
        False,
        "--silent",
        "-q",
        help="Only print repositories that need attention",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would be pulled without actually pulling",
    ),
):
    """Fetch all repositories and pull those that are behind.

    Only clean repositories with upstream changes are pulled. Repositories
    whose local and upstream changes overlap are reported and left alone.
    """
    run_batch(
        OperationKind.PULL,
        json_output=json_output,
        sequential=sequential,
        workers=workers,
        silent=silent,
        dry_run=dry_run,
    )


@app.command()
def status(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        "-s",
        help="Run sequentially instead of parallel",
    ),
    workers: int = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Maximum parallel git processes",
    ),
):
    """Show the status of all repositories without fetching."""
    run_batch(
        OperationKind.STATUS,
        json_output=json_output,
        sequential=sequential,
        workers=workers,
    )


@app.command("list")
def list_repos(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """List the repositories that would be operated on."""
    console, formatter = get_console_and_formatter(json_output)
    manager = AutofetchManager(get_store())
    repos = run_or_exit(console, manager.discover_repositories)
    formatter.print_repo_list(repos)


@app.command("config")
def show_config(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """Show the stored configuration."""
    console, formatter = get_console_and_formatter(json_output)
    store = get_store()

    def load() -> dict:
        return {
            PROJECTS_DIRECTORY: get_projects_directory(store),
            INCLUDED_DIRECTORIES: included_directories(store).show(),
            EXCLUDED_DIRECTORIES: excluded_directories(store).show(),
        }

    formatter.print_config(run_or_exit(console, load))


def _register_list_commands(
    sub_app: typer.Typer,
    factory: Callable[[ConfigStore], ProjectDirectoryList],
    label: str,
):
    """Add add/remove/show/clear commands for one directory list."""

    @sub_app.command("add", help=f"Add a directory to the {label.lower()}.")
    def add(path: Path = typer.Argument(..., help="Directory to add")):
        console, formatter = get_console_and_formatter(False)
        directories = run_or_exit(console, lambda: factory(get_store()).add(path))
        formatter.print_directory_list(label, directories)

    @sub_app.command("remove", help=f"Remove a directory from the {label.lower()}.")
    def remove(path: Path = typer.Argument(..., help="Directory to remove")):
        console, formatter = get_console_and_formatter(False)
        directories = run_or_exit(console, lambda: factory(get_store()).remove(path))
        formatter.print_directory_list(label, directories)

    @sub_app.command("show", help=f"Show the {label.lower()}.")
    def show(
        json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    ):
        console, formatter = get_console_and_formatter(json_output)
        directories = run_or_exit(console, lambda: factory(get_store()).show())
        formatter.print_directory_list(label, directories)

    @sub_app.command("clear", help=f"Remove all {label.lower()}.")
    def clear():
        console, formatter = get_console_and_formatter(False)
        run_or_exit(console, lambda: factory(get_store()).clear())
        formatter.print_ok()


_register_list_commands(include_app, included_directories, "Included Project Directories")
_register_list_commands(exclude_app, excluded_directories, "Excluded Project Directories")
