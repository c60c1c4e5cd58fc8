"""Shared fixtures: fake git runner, in-memory config and repository trees."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from git_autofetch.config import InMemoryConfigStore
from git_autofetch.core import CommandOutput


def porcelain(
    branch: str = "main",
    upstream: str | None = "origin/main",
    ahead: int = 0,
    behind: int = 0,
    changed: int = 0,
    gone: bool = False,
) -> str:
    """Build 'git status --porcelain=v2 --branch' output."""
    lines = ["# branch.oid 1234567890abcdef1234567890abcdef12345678", f"# branch.head {branch}"]
    if upstream:
        lines.append(f"# branch.upstream {upstream}")
        if not gone:
            lines.append(f"# branch.ab +{ahead} -{behind}")
    for i in range(changed):
        lines.append(f"1 .M N... 100644 100644 100644 abc abc file{i}.txt")
    return "\n".join(lines) + "\n"


class FakeGitRunner:
    """Canned git outputs keyed by repository path and git verb."""

    def __init__(self):
        self.responses: dict[tuple[Path, str], list[CommandOutput]] = {}
        self.calls: list[tuple[Path, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def on(self, path: Path, verb: str, *outputs: CommandOutput) -> FakeGitRunner:
        """Queue outputs; the last one repeats once the queue is drained."""
        self.responses[(Path(path), verb)] = list(outputs)
        return self

    def verbs_for(self, path: Path) -> list[str]:
        return [args[0] for p, args in self.calls if p == Path(path)]

    def run_vcs_command(self, directory: Path, *args: str) -> CommandOutput:
        with self._lock:
            self.calls.append((Path(directory), args))
            queue = self.responses.get((Path(directory), args[0]))
            if queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return self._default(args)

    @staticmethod
    def _default(args: tuple[str, ...]) -> CommandOutput:
        match args[0]:
            case "status":
                return CommandOutput(0, porcelain())
            case "pull":
                return CommandOutput(0, "Already up to date.\n")
            case "rev-parse":
                # Not in the middle of a merge
                return CommandOutput(1)
            case _:
                return CommandOutput(0)


@pytest.fixture
def fake_git() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture
def store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


def make_repo(path: Path) -> Path:
    (path / ".git").mkdir(parents=True)
    return path


@pytest.fixture
def projects_tree(tmp_path: Path) -> Path:
    """A projects directory with three repositories and some plain folders."""
    root = tmp_path / "GitHub"
    make_repo(root / "project1")
    (root / "project1" / "gitFile1.txt").write_text("contents")
    make_repo(root / "project2")
    make_repo(root / "directory1" / "project3")
    (root / "other1" / "subfolder1").mkdir(parents=True)
    (root / "other2" / "subfolder2").mkdir(parents=True)
    (root / "file1.txt").write_text("file content here")
    (root / "file2.txt").write_text("file content here")
    return root
