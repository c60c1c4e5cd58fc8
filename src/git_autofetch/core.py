"""
git-autofetch: keep every Git repository under a projects directory up to date.

Discovers repositories, runs fetch / pull / status across all of them in
parallel, classifies each outcome and aggregates the results into a report.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Protocol, TypeVar

from .config import (
    ConfigStore,
    excluded_directories,
    get_projects_directory,
    included_directories,
    normalize_path,
)
from .errors import ConfigurationMissing, OperationError, ProjectsDirectoryNotFound, ScanIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_WORKERS = 32
DEFAULT_MAX_DEPTH = 16
DEFAULT_TIMEOUT = 300.0

# =============================================================================
# Domain Models
# =============================================================================


class OperationKind(StrEnum):
    """Batch operation run against every repository."""

    FETCH = "fetch"
    PULL = "pull"
    STATUS = "status"


class OutcomeKind(StrEnum):
    """Classified result of one repository's operation."""

    UP_TO_DATE = "up_to_date"
    FETCHED_CHANGES = "fetched_changes"
    PULLED_CLEANLY = "pulled_cleanly"
    WOULD_CONFLICT = "would_conflict"
    DIRTY_WORKING_TREE = "dirty_working_tree"
    ERROR = "error"


ACTIONABLE_OUTCOMES = frozenset(
    {
        OutcomeKind.FETCHED_CHANGES,
        OutcomeKind.PULLED_CLEANLY,
        OutcomeKind.WOULD_CONFLICT,
        OutcomeKind.ERROR,
    }
)
NO_OP_OUTCOMES = frozenset({OutcomeKind.UP_TO_DATE})


@dataclass(frozen=True)
class RepositoryHandle:
    """A directory with Git metadata at its top level."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    def to_dict(self) -> dict:
        return {"path": str(self.path), "name": self.name}


@dataclass(frozen=True)
class CommandOutput:
    """Exit status and captured output of one git invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation on one repository."""

    repository: RepositoryHandle
    operation: OperationKind
    outcome: OutcomeKind
    raw_output: str = ""
    error: str | None = None
    message: str = ""
    ahead: int = 0
    behind: int = 0
    position: int = 0

    @property
    def path(self) -> Path:
        return self.repository.path

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def is_actionable(self) -> bool:
        return self.outcome in ACTIONABLE_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "name": self.name,
            "operation": self.operation.value,
            "outcome": self.outcome.value,
            "message": self.message,
            "error": self.error,
            "ahead": self.ahead,
            "behind": self.behind,
        }


@dataclass(frozen=True)
class Report:
    """Ordered, rendered summary of a batch."""

    operation: OperationKind
    entries: list[OperationResult]
    lines: list[str]
    any_actionable: bool
    counts: dict[OutcomeKind, int] = field(default_factory=dict)
    total: int = 0
    silent: bool = False

    def count(self, outcome: OutcomeKind) -> int:
        return self.counts.get(outcome, 0)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "any_actionable": self.any_actionable,
            "results": [r.to_dict() for r in self.entries],
            "summary": {
                "total": self.total,
                **{outcome.value: self.count(outcome) for outcome in OutcomeKind},
            },
        }


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


class VcsRunner(Protocol):
    """The one seam through which git is invoked."""

    def run_vcs_command(self, directory: Path, *args: str) -> CommandOutput: ...


class GitRunner:
    """Run git as a subprocess inside a repository."""

    def __init__(self, executable: str = "git", timeout: float = DEFAULT_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        # No credential prompts; English messages for the classifier patterns
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["LC_ALL"] = "C"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env

    def run_vcs_command(self, directory: Path, *args: str) -> CommandOutput:
        logger.debug("Running git %s in %s", " ".join(args), directory)
        try:
            result = subprocess.run(
                [self.executable, *args],
                cwd=directory,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired:
            return CommandOutput(-1, stderr=f"git {args[0]} timed out after {self.timeout:g}s")
        except OSError as e:
            return CommandOutput(-1, stderr=str(e))
        return CommandOutput(result.returncode, result.stdout, result.stderr)


# =============================================================================
# Result Classifier
# =============================================================================

FETCH_ARGS = ("fetch", "--all", "--prune")
STATUS_ARGS = ("status", "--porcelain=v2", "--branch", "--untracked-files=no")
PULL_ARGS = ("pull", "--no-rebase", "--no-edit")

# Non-zero exits that mean there is simply nothing to do.
NOTHING_TO_DO_PATTERNS = (
    "There is no tracking information for the current branch",
    "No remote repository specified",
)
CONFLICT_PATTERNS = (
    "CONFLICT",
    "Automatic merge failed",
    "would be overwritten by merge",
    "Not possible to fast-forward",
    "divergent branches",
)
ALREADY_UP_TO_DATE_PATTERNS = (
    "Already up to date",
    "Already up-to-date",
)


def _matches(text: str, patterns: Iterable[str]) -> bool:
    return any(pattern in text for pattern in patterns)


@dataclass
class BranchStatus:
    """Parsed output of 'git status --porcelain=v2 --branch'."""

    branch: str = ""
    upstream: str = ""
    ahead: int = 0
    behind: int = 0
    has_ahead_behind: bool = False
    changed_count: int = 0

    @property
    def detached(self) -> bool:
        return self.branch == "(detached)"

    @property
    def upstream_gone(self) -> bool:
        # git omits branch.ab when the upstream ref no longer exists
        return bool(self.upstream) and not self.has_ahead_behind

    @property
    def is_dirty(self) -> bool:
        return self.changed_count > 0


def parse_status_porcelain(text: str) -> BranchStatus:
    """Parse branch headers and tracked change entries."""
    status = BranchStatus()
    for line in text.splitlines():
        if line.startswith("# branch.head "):
            status.branch = line[len("# branch.head ") :]
        elif line.startswith("# branch.upstream "):
            status.upstream = line[len("# branch.upstream ") :]
        elif line.startswith("# branch.ab "):
            # Format: # branch.ab +<ahead> -<behind>
            parts = line.split()
            if len(parts) == 4:
                status.ahead = abs(int(parts[2]))
                status.behind = abs(int(parts[3]))
                status.has_ahead_behind = True
        elif line[:2] in ("1 ", "2 ", "u "):
            status.changed_count += 1
    return status


def classify(output: CommandOutput, operation: OperationKind) -> OutcomeKind:
    """Map a git invocation's exit status and output to an outcome.

    For fetch and status the output is that of the status command run after
    any fetch, since fetch itself says nothing about the working tree.
    """
    text = output.text
    if not output.ok:
        if _matches(text, NOTHING_TO_DO_PATTERNS):
            return OutcomeKind.UP_TO_DATE
        if operation == OperationKind.PULL and _matches(text, CONFLICT_PATTERNS):
            return OutcomeKind.WOULD_CONFLICT
        return OutcomeKind.ERROR

    match operation:
        case OperationKind.PULL:
            if _matches(text, CONFLICT_PATTERNS):
                return OutcomeKind.WOULD_CONFLICT
            if _matches(text, ALREADY_UP_TO_DATE_PATTERNS):
                return OutcomeKind.UP_TO_DATE
            return OutcomeKind.PULLED_CLEANLY
        case _:
            status = parse_status_porcelain(output.stdout)
            if status.is_dirty:
                return OutcomeKind.DIRTY_WORKING_TREE
            if status.detached or status.upstream_gone:
                return OutcomeKind.ERROR
            if status.behind > 0:
                return OutcomeKind.FETCHED_CHANGES
            return OutcomeKind.UP_TO_DATE


def describe_status(status: BranchStatus) -> str:
    """Short human description of a parsed status."""
    if status.detached:
        return "Detached HEAD"
    if status.upstream_gone:
        return f"Upstream {status.upstream} no longer exists"
    parts = []
    if status.is_dirty:
        parts.append(f"{status.changed_count} uncommitted change(s)")
    if not status.upstream:
        parts.append("no upstream branch")
    if status.behind:
        parts.append(f"behind {status.behind}")
    if status.ahead:
        parts.append(f"ahead {status.ahead}")
    return ", ".join(parts) if parts else "Up to date"


def _first_line(text: str) -> str:
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line
    return ""


# =============================================================================
# Repository Scanner
# =============================================================================


def is_repository(path: Path) -> bool:
    """Check for Git metadata at the top level of a directory."""
    return os.path.isdir(os.path.join(path, ".git"))


class RepositoryScanner:
    """Walk a directory tree and yield the Git repositories in it.

    Descent stops at a repository boundary, so repositories nested inside
    another working tree are never yielded on their own.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, follow_symlinks: bool = True):
        self.max_depth = max_depth
        self.follow_symlinks = follow_symlinks
        self.warnings: list[ScanIOError] = []

    def _warn(self, path: Path, error: OSError) -> None:
        warning = ScanIOError(path, error.strerror or str(error))
        self.warnings.append(warning)
        logger.warning("%s", warning)

    def _is_dir(self, entry: os.DirEntry) -> bool:
        try:
            return entry.is_dir(follow_symlinks=self.follow_symlinks)
        except OSError:
            return False

    def scan(self, root: Path) -> Iterator[RepositoryHandle]:
        """Lazily yield repositories under root in sorted depth-first order.

        Every call walks the filesystem again.
        """
        self.warnings = []
        visited: set[str] = set()
        stack: list[tuple[Path, int]] = [(Path(root), 0)]

        while stack:
            directory, depth = stack.pop()

            canonical = os.path.realpath(directory)
            if canonical in visited:
                logger.debug("Skipping already visited %s", directory)
                continue
            visited.add(canonical)

            if is_repository(directory):
                yield RepositoryHandle(directory)
                continue

            if depth >= self.max_depth:
                logger.debug("Max depth reached at %s", directory)
                continue

            try:
                with os.scandir(directory) as entries:
                    children = sorted(
                        (entry for entry in entries if self._is_dir(entry)),
                        key=lambda entry: entry.name,
                    )
            except OSError as e:
                self._warn(directory, e)
                continue

            # Reversed so the stack pops children in name order
            for entry in reversed(children):
                stack.append((directory / entry.name, depth + 1))


# =============================================================================
# Directory Resolver
# =============================================================================


def is_excluded(path: Path, excluded: Iterable[Path]) -> bool:
    """True if path equals or is nested under any excluded path.

    Paths are compared both as given and with symlinks resolved.
    """
    real = Path(os.path.realpath(path))
    return any(
        path.is_relative_to(ex) or real.is_relative_to(os.path.realpath(ex)) for ex in excluded
    )


class DirectoryResolver:
    """Produce the ordered set of repository paths to operate on."""

    def __init__(self, store: ConfigStore, scanner: RepositoryScanner | None = None):
        self.store = store
        self.scanner = scanner or RepositoryScanner()

    def resolve(self) -> list[Path]:
        """Resolve the operating set from the current config.

        A non-empty included list is returned as is and excludes are ignored.
        Otherwise the projects directory is scanned and excluded paths removed.
        """
        included = included_directories(self.store).show()
        if included:
            logger.debug("Using %d included directories", len(included))
            return [Path(p) for p in included]

        projects_dir = get_projects_directory(self.store)
        if not projects_dir:
            raise ConfigurationMissing()

        root = Path(normalize_path(projects_dir))
        if not root.is_dir():
            raise ProjectsDirectoryNotFound(root)

        excluded = [Path(p) for p in excluded_directories(self.store).show()]
        resolved = []
        for handle in self.scanner.scan(root):
            if is_excluded(handle.path, excluded):
                logger.debug("Excluding %s", handle.path)
                continue
            resolved.append(handle.path)

        logger.debug("Resolved %d repositories under %s", len(resolved), root)
        return list(dict.fromkeys(resolved))

    def repositories(self) -> list[RepositoryHandle]:
        return [RepositoryHandle(path) for path in self.resolve()]


# =============================================================================
# Operation Dispatcher
# =============================================================================


class OperationDispatcher:
    """Run one operation across many repositories in parallel.

    A failing repository yields an error result and never affects the others.
    """

    def __init__(
        self,
        runner: VcsRunner | None = None,
        max_workers: int | None = None,
        *,
        sequential: bool = False,
    ):
        self.runner = runner or GitRunner()
        self.max_workers = max_workers
        self.sequential = sequential

    def run(
        self,
        operation: OperationKind,
        repositories: Iterable[RepositoryHandle],
        *,
        dry_run: bool = False,
    ) -> list[OperationResult]:
        match operation:
            case OperationKind.FETCH:
                return self.fetch_all(repositories)
            case OperationKind.STATUS:
                return self.status_all(repositories)
            case OperationKind.PULL:
                return self.pull_all(repositories, dry_run=dry_run)
        raise ValueError(f"Unknown operation: {operation}")

    def fetch_all(self, repositories: Iterable[RepositoryHandle]) -> list[OperationResult]:
        """Fetch every repository, then classify from its working tree status."""
        return self._execute_parallel(
            lambda item: self._guarded(item, OperationKind.FETCH, self._fetch),
            list(enumerate(repositories)),
        )

    def status_all(self, repositories: Iterable[RepositoryHandle]) -> list[OperationResult]:
        """Classify every repository from local state without touching the network."""
        return self._execute_parallel(
            lambda item: self._guarded(item, OperationKind.STATUS, self._status),
            list(enumerate(repositories)),
        )

    def pull_all(
        self,
        repositories: Iterable[RepositoryHandle],
        *,
        dry_run: bool = False,
    ) -> list[OperationResult]:
        """Fetch everything, then merge only repositories with upstream changes.

        Dirty and up to date repositories are never merged. If the fetch found
        nothing actionable the merge step is skipped entirely.
        """
        fetched = [
            replace(r, operation=OperationKind.PULL) for r in self.fetch_all(repositories)
        ]
        if not aggregate(fetched).any_actionable:
            logger.info("Nothing to pull")
            return fetched

        candidates = [r for r in fetched if r.outcome == OutcomeKind.FETCHED_CHANGES]
        logger.info("Pulling %d of %d repositories", len(candidates), len(fetched))

        if dry_run:
            merged = [replace(r, message=f"Would pull ({r.message})") for r in candidates]
        else:
            merged = self._execute_parallel(self._guarded_merge, candidates)

        by_position = {r.position: r for r in fetched}
        by_position.update({r.position: r for r in merged})
        return [by_position[position] for position in sorted(by_position)]

    def _workers(self, count: int) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return max(1, min(count, DEFAULT_MAX_WORKERS))

    def _execute_parallel(
        self,
        task: Callable[[T], OperationResult],
        items: list[T],
    ) -> list[OperationResult]:
        """Run task on items in parallel or sequentially, in position order."""
        results = []

        if self.sequential or len(items) <= 1:
            for item in items:
                results.append(task(item))
        else:
            with ThreadPoolExecutor(max_workers=self._workers(len(items))) as executor:
                futures = [executor.submit(task, item) for item in items]
                for future in as_completed(futures):
                    results.append(future.result())

        results.sort(key=lambda r: r.position)
        return results

    def _git(self, repository: RepositoryHandle, *args: str) -> CommandOutput:
        return self.runner.run_vcs_command(repository.path, *args)

    def _guarded(
        self,
        item: tuple[int, RepositoryHandle],
        operation: OperationKind,
        step: Callable[[RepositoryHandle, int, OperationKind], OperationResult],
    ) -> OperationResult:
        position, repository = item
        try:
            return step(repository, position, operation)
        except OperationError as e:
            logger.error("%s: %s", repository.path, e)
            return _error_result(repository, operation, position, e.detail, e.detail)
        except Exception as e:
            logger.error("Unexpected error processing %s: %s", repository.path, e)
            return _error_result(repository, operation, position, "", f"Unexpected error: {e}")

    def _fetch(
        self, repository: RepositoryHandle, position: int, operation: OperationKind
    ) -> OperationResult:
        fetched = self._git(repository, *FETCH_ARGS)
        if not fetched.ok:
            if classify(fetched, operation) == OutcomeKind.ERROR:
                raise OperationError(FETCH_ARGS, fetched.exit_code, _first_line(fetched.text))
            return OperationResult(
                repository=repository,
                operation=operation,
                outcome=OutcomeKind.UP_TO_DATE,
                raw_output=fetched.text,
                message="Nothing to fetch",
                position=position,
            )

        result = self._status(repository, position, operation)
        raw = "\n".join(part for part in (fetched.text, result.raw_output) if part)
        return replace(result, raw_output=raw)

    def _status(
        self, repository: RepositoryHandle, position: int, operation: OperationKind
    ) -> OperationResult:
        output = self._git(repository, *STATUS_ARGS)
        if not output.ok:
            raise OperationError(STATUS_ARGS, output.exit_code, _first_line(output.text))

        status = parse_status_porcelain(output.stdout)
        outcome = classify(output, operation)
        message = describe_status(status)
        return OperationResult(
            repository=repository,
            operation=operation,
            outcome=outcome,
            raw_output=output.text,
            error=message if outcome == OutcomeKind.ERROR else None,
            message=message,
            ahead=status.ahead,
            behind=status.behind,
            position=position,
        )

    def _guarded_merge(self, fetched: OperationResult) -> OperationResult:
        try:
            return self._merge(fetched)
        except Exception as e:
            logger.error("Unexpected error pulling %s: %s", fetched.path, e)
            return _error_result(
                fetched.repository, OperationKind.PULL, fetched.position, "", f"Unexpected error: {e}"
            )

    def _merge(self, fetched: OperationResult) -> OperationResult:
        repository = fetched.repository

        if fetched.ahead > 0 and self.has_file_conflicts(repository):
            return replace(
                fetched,
                outcome=OutcomeKind.WOULD_CONFLICT,
                message=(
                    f"Diverged (ahead {fetched.ahead}, behind {fetched.behind}) "
                    "and local and upstream commits touch the same files"
                ),
            )

        output = self._git(repository, *PULL_ARGS)
        outcome = classify(output, OperationKind.PULL)
        raw = "\n".join(part for part in (fetched.raw_output, output.text) if part)

        match outcome:
            case OutcomeKind.WOULD_CONFLICT:
                self._abort_merge(repository)
                message = "Pull stopped on a conflict; left unmerged"
            case OutcomeKind.PULLED_CLEANLY:
                message = f"Pulled {fetched.behind} commit(s)" if fetched.behind else "Pulled"
            case OutcomeKind.UP_TO_DATE:
                message = "Already up to date"
            case _:
                detail = _first_line(output.text)
                logger.error("%s: git pull failed: %s", repository.path, detail)
                return replace(
                    fetched, outcome=outcome, raw_output=raw, error=detail, message=detail
                )

        return replace(fetched, outcome=outcome, raw_output=raw, message=message)

    def has_file_conflicts(self, repository: RepositoryHandle) -> bool:
        """Check if local and upstream commits touch the same files.

        Returns True if there ARE overlapping files or the check fails.
        """
        base = self._git(repository, "merge-base", "HEAD", "@{u}")
        if not base.ok or not base.stdout.strip():
            return True
        merge_base = base.stdout.strip()

        remote = self._git(repository, "diff", "--name-only", merge_base, "@{u}")
        local = self._git(repository, "diff", "--name-only", merge_base, "HEAD")
        if not remote.ok or not local.ok:
            return True

        remote_files = set(remote.stdout.split())
        local_files = set(local.stdout.split())
        return bool(remote_files & local_files)

    def _abort_merge(self, repository: RepositoryHandle) -> None:
        in_merge = self._git(repository, "rev-parse", "-q", "--verify", "MERGE_HEAD")
        if in_merge.ok:
            aborted = self._git(repository, "merge", "--abort")
            if not aborted.ok:
                logger.error(
                    "%s: could not abort merge: %s", repository.path, _first_line(aborted.text)
                )


def _error_result(
    repository: RepositoryHandle,
    operation: OperationKind,
    position: int,
    raw_output: str,
    detail: str,
) -> OperationResult:
    return OperationResult(
        repository=repository,
        operation=operation,
        outcome=OutcomeKind.ERROR,
        raw_output=raw_output,
        error=detail or "Failed",
        message=detail or "Failed",
        position=position,
    )


# =============================================================================
# Report Aggregator
# =============================================================================

OUTCOME_LABELS = {
    OutcomeKind.UP_TO_DATE: "up to date",
    OutcomeKind.FETCHED_CHANGES: "changes fetched",
    OutcomeKind.PULLED_CLEANLY: "pulled",
    OutcomeKind.WOULD_CONFLICT: "would conflict",
    OutcomeKind.DIRTY_WORKING_TREE: "dirty working tree",
    OutcomeKind.ERROR: "error",
}


def outcome_label(outcome: OutcomeKind, operation: OperationKind) -> str:
    # status never fetches; behind counts come from the last fetch
    if operation == OperationKind.STATUS and outcome == OutcomeKind.FETCHED_CHANGES:
        return "behind upstream"
    return OUTCOME_LABELS[outcome]


def render_line(result: OperationResult) -> str:
    line = f"{result.path}: {outcome_label(result.outcome, result.operation)}"
    if result.message and result.message != "Up to date":
        line += f" - {result.message}"
    return line


def aggregate(results: Iterable[OperationResult], silent: bool = False) -> Report:
    """Merge per-repository results into a report in resolution order.

    Silent mode drops no-op results from the rendered output; they still
    count towards the totals.
    """
    ordered = sorted(results, key=lambda r: r.position)
    entries = [r for r in ordered if not (silent and r.outcome in NO_OP_OUTCOMES)]
    operation = ordered[0].operation if ordered else OperationKind.STATUS

    return Report(
        operation=operation,
        entries=entries,
        lines=[render_line(r) for r in entries],
        any_actionable=any(r.is_actionable for r in ordered),
        counts=dict(Counter(r.outcome for r in ordered)),
        total=len(ordered),
        silent=silent,
    )


# =============================================================================
# Autofetch Manager
# =============================================================================


class AutofetchManager:
    """Resolve the configured repositories and run batches against them.

    Config is read once at the start of each batch.
    """

    def __init__(
        self,
        store: ConfigStore,
        runner: VcsRunner | None = None,
        max_workers: int | None = None,
        *,
        sequential: bool = False,
        scanner: RepositoryScanner | None = None,
    ):
        self.resolver = DirectoryResolver(store, scanner)
        self.dispatcher = OperationDispatcher(runner, max_workers, sequential=sequential)

    @property
    def scan_warnings(self) -> list[ScanIOError]:
        return self.resolver.scanner.warnings

    def discover_repositories(self) -> list[RepositoryHandle]:
        return self.resolver.repositories()

    def execute(
        self,
        operation: OperationKind,
        *,
        silent: bool = False,
        dry_run: bool = False,
    ) -> Report:
        repositories = self.discover_repositories()
        logger.info("Running %s on %d repositories", operation.value, len(repositories))
        results = self.dispatcher.run(operation, repositories, dry_run=dry_run)
        report = aggregate(results, silent=silent)
        return replace(report, operation=operation)

    def fetch(self, silent: bool = False) -> Report:
        return self.execute(OperationKind.FETCH, silent=silent)

    def pull(self, silent: bool = False, dry_run: bool = False) -> Report:
        return self.execute(OperationKind.PULL, silent=silent, dry_run=dry_run)

    def status(self) -> Report:
        return self.execute(OperationKind.STATUS)
