"""Tests for running operations across repositories."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest
from conftest import FakeGitRunner, porcelain

from git_autofetch.config import INCLUDED_DIRECTORIES, PROJECTS_DIRECTORY, InMemoryConfigStore
from git_autofetch.core import (
    FETCH_ARGS,
    AutofetchManager,
    CommandOutput,
    GitRunner,
    OperationDispatcher,
    OperationKind,
    OutcomeKind,
    RepositoryHandle,
)
from git_autofetch.errors import ConfigurationMissing

TIMEOUT = CommandOutput(
    128, stderr="fatal: unable to access 'https://example.com/p.git/': Connection timed out"
)
CLEAN_PULL = CommandOutput(
    0, "Updating 1a2b3c4..5d6e7f8\nFast-forward\n a.txt | 2 +-\n 1 file changed\n"
)
CONFLICTED_PULL = CommandOutput(
    1,
    "Auto-merging a.txt\nCONFLICT (content): Merge conflict in a.txt\n"
    "Automatic merge failed; fix conflicts and then commit the result.\n",
)


def handles(*names: str) -> list[RepositoryHandle]:
    return [RepositoryHandle(Path("/projects") / name) for name in names]


def status_of(**kwargs) -> CommandOutput:
    return CommandOutput(0, porcelain(**kwargs))


class RaisingRunner(FakeGitRunner):
    """Raises for one repository to simulate an unexpected failure."""

    def __init__(self, broken: Path):
        super().__init__()
        self.broken = broken

    def run_vcs_command(self, directory: Path, *args: str) -> CommandOutput:
        if Path(directory) == self.broken:
            raise RuntimeError("boom")
        return super().run_vcs_command(directory, *args)


class TestFetchAll:
    """Test the fetch operation."""

    def test_one_result_per_repository_in_order(self, fake_git: FakeGitRunner) -> None:
        repos = handles(*(f"repo{i:02d}" for i in range(20)))

        results = OperationDispatcher(fake_git).fetch_all(repos)

        assert [r.repository for r in results] == repos
        assert [r.position for r in results] == list(range(20))
        assert all(r.operation == OperationKind.FETCH for r in results)

    def test_up_to_date(self, fake_git: FakeGitRunner) -> None:
        (result,) = OperationDispatcher(fake_git).fetch_all(handles("a"))

        assert result.outcome == OutcomeKind.UP_TO_DATE
        assert fake_git.verbs_for(result.path) == ["fetch", "status"]

    def test_behind_is_fetched_changes(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=3))

        (result,) = OperationDispatcher(fake_git).fetch_all([repo])

        assert result.outcome == OutcomeKind.FETCHED_CHANGES
        assert result.behind == 3
        assert result.message == "behind 3"

    def test_fetch_never_merges(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=3))

        OperationDispatcher(fake_git).fetch_all([repo])

        assert "pull" not in fake_git.verbs_for(repo.path)

    def test_network_failure_is_isolated(self, fake_git: FakeGitRunner) -> None:
        first, second, third = handles("one", "two", "three")
        fake_git.on(second.path, "fetch", TIMEOUT)

        results = OperationDispatcher(fake_git).fetch_all([first, second, third])

        assert [r.outcome for r in results] == [
            OutcomeKind.UP_TO_DATE,
            OutcomeKind.ERROR,
            OutcomeKind.UP_TO_DATE,
        ]
        assert "unable to access" in results[1].error
        assert "status" not in fake_git.verbs_for(second.path)

    def test_unexpected_exception_is_isolated(self) -> None:
        first, second = handles("one", "two")
        runner = RaisingRunner(first.path)

        results = OperationDispatcher(runner).fetch_all([first, second])

        assert results[0].outcome == OutcomeKind.ERROR
        assert results[0].error == "Unexpected error: boom"
        assert results[1].outcome == OutcomeKind.UP_TO_DATE

    def test_no_remote_is_nothing_to_fetch(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(
            repo.path, "fetch", CommandOutput(128, stderr="fatal: No remote repository specified.")
        )

        (result,) = OperationDispatcher(fake_git).fetch_all([repo])

        assert result.outcome == OutcomeKind.UP_TO_DATE
        assert result.message == "Nothing to fetch"

    def test_status_failure_is_error(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", CommandOutput(128, stderr="fatal: not a git repository"))

        (result,) = OperationDispatcher(fake_git).fetch_all([repo])

        assert result.outcome == OutcomeKind.ERROR
        assert result.error == "fatal: not a git repository"

    def test_raw_output_includes_fetch_text(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(
            repo.path, "fetch", CommandOutput(0, stderr="From github.com:me/a\n   abc..def  main")
        )

        (result,) = OperationDispatcher(fake_git).fetch_all([repo])

        assert result.raw_output.startswith("From github.com:me/a")

    def test_sequential_matches_parallel(self, fake_git: FakeGitRunner) -> None:
        repos = handles("a", "b", "c")
        fake_git.on(repos[1].path, "status", status_of(behind=1))

        parallel = OperationDispatcher(fake_git).fetch_all(repos)
        sequential = OperationDispatcher(fake_git, sequential=True).fetch_all(repos)

        assert [r.outcome for r in parallel] == [r.outcome for r in sequential]

    def test_empty_input(self, fake_git: FakeGitRunner) -> None:
        assert OperationDispatcher(fake_git).fetch_all([]) == []
        assert fake_git.calls == []


class TestStatusAll:
    def test_never_fetches(self, fake_git: FakeGitRunner) -> None:
        repos = handles("a", "b")

        results = OperationDispatcher(fake_git).status_all(repos)

        assert all(r.operation == OperationKind.STATUS for r in results)
        assert all(args[0] == "status" for _, args in fake_git.calls)

    def test_dirty(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(changed=2))

        (result,) = OperationDispatcher(fake_git).status_all([repo])

        assert result.outcome == OutcomeKind.DIRTY_WORKING_TREE
        assert result.message == "2 uncommitted change(s)"

    def test_detached_head_is_error(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(branch="(detached)", upstream=None))

        (result,) = OperationDispatcher(fake_git).status_all([repo])

        assert result.outcome == OutcomeKind.ERROR
        assert result.error == "Detached HEAD"


class TestPullAll:
    """Test fetch then conditional merge."""

    def test_behind_repository_is_pulled(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=2))
        fake_git.on(repo.path, "pull", CLEAN_PULL)

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.PULLED_CLEANLY
        assert result.operation == OperationKind.PULL
        assert result.message == "Pulled 2 commit(s)"
        assert fake_git.verbs_for(repo.path) == ["fetch", "status", "pull"]

    def test_dirty_and_up_to_date_are_never_merged(self, fake_git: FakeGitRunner) -> None:
        behind, dirty, current = handles("behind", "dirty", "current")
        fake_git.on(behind.path, "status", status_of(behind=1))
        fake_git.on(behind.path, "pull", CLEAN_PULL)
        fake_git.on(dirty.path, "status", status_of(behind=4, changed=1))

        results = OperationDispatcher(fake_git).pull_all([behind, dirty, current])

        assert [r.outcome for r in results] == [
            OutcomeKind.PULLED_CLEANLY,
            OutcomeKind.DIRTY_WORKING_TREE,
            OutcomeKind.UP_TO_DATE,
        ]
        assert "pull" not in fake_git.verbs_for(dirty.path)
        assert "pull" not in fake_git.verbs_for(current.path)

    def test_nothing_actionable_skips_merge_step(self, fake_git: FakeGitRunner) -> None:
        clean, dirty = handles("clean", "dirty")
        fake_git.on(dirty.path, "status", status_of(changed=1))

        results = OperationDispatcher(fake_git).pull_all([clean, dirty])

        assert [r.outcome for r in results] == [
            OutcomeKind.UP_TO_DATE,
            OutcomeKind.DIRTY_WORKING_TREE,
        ]
        assert all(r.operation == OperationKind.PULL for r in results)
        assert all(args[0] in ("fetch", "status") for _, args in fake_git.calls)

    def test_fetch_error_is_not_merged(self, fake_git: FakeGitRunner) -> None:
        broken, behind = handles("broken", "behind")
        fake_git.on(broken.path, "fetch", TIMEOUT)
        fake_git.on(behind.path, "status", status_of(behind=1))
        fake_git.on(behind.path, "pull", CLEAN_PULL)

        results = OperationDispatcher(fake_git).pull_all([broken, behind])

        assert [r.outcome for r in results] == [OutcomeKind.ERROR, OutcomeKind.PULLED_CLEANLY]
        assert fake_git.verbs_for(broken.path) == ["fetch"]

    def test_diverged_with_overlapping_files_would_conflict(
        self, fake_git: FakeGitRunner
    ) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(ahead=1, behind=2))
        fake_git.on(repo.path, "merge-base", CommandOutput(0, "abc123\n"))
        fake_git.on(
            repo.path, "diff", CommandOutput(0, "shared.txt\n"), CommandOutput(0, "shared.txt\nb.txt\n")
        )

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.WOULD_CONFLICT
        assert "ahead 1, behind 2" in result.message
        assert "pull" not in fake_git.verbs_for(repo.path)

    def test_diverged_with_disjoint_files_is_pulled(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(ahead=1, behind=1))
        fake_git.on(repo.path, "merge-base", CommandOutput(0, "abc123\n"))
        fake_git.on(repo.path, "diff", CommandOutput(0, "remote.txt\n"), CommandOutput(0, "local.txt\n"))
        fake_git.on(repo.path, "pull", CommandOutput(0, "Merge made by the 'ort' strategy.\n"))

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.PULLED_CLEANLY
        assert "pull" in fake_git.verbs_for(repo.path)

    def test_failed_overlap_check_would_conflict(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(ahead=1, behind=1))
        fake_git.on(repo.path, "merge-base", CommandOutput(1))

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.WOULD_CONFLICT

    def test_merge_conflict_is_aborted(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=1))
        fake_git.on(repo.path, "pull", CONFLICTED_PULL)
        fake_git.on(repo.path, "rev-parse", CommandOutput(0, "def456\n"))

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.WOULD_CONFLICT
        assert ("merge", "--abort") in [args for _, args in fake_git.calls]

    def test_refused_pull_does_not_abort(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=1))
        fake_git.on(
            repo.path,
            "pull",
            CommandOutput(
                1,
                stderr="error: Your local changes to the following files would be overwritten by merge:",
            ),
        )

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.WOULD_CONFLICT
        assert "merge" not in fake_git.verbs_for(repo.path)

    def test_pull_failure_is_error(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=1))
        fake_git.on(repo.path, "pull", TIMEOUT)

        (result,) = OperationDispatcher(fake_git).pull_all([repo])

        assert result.outcome == OutcomeKind.ERROR
        assert "unable to access" in result.error

    def test_dry_run_does_not_merge(self, fake_git: FakeGitRunner) -> None:
        (repo,) = handles("a")
        fake_git.on(repo.path, "status", status_of(behind=2))

        (result,) = OperationDispatcher(fake_git).pull_all([repo], dry_run=True)

        assert result.outcome == OutcomeKind.FETCHED_CHANGES
        assert result.message == "Would pull (behind 2)"
        assert "pull" not in fake_git.verbs_for(repo.path)

    def test_results_keep_input_order(self, fake_git: FakeGitRunner) -> None:
        repos = handles("z", "a", "m")
        for repo in repos:
            fake_git.on(repo.path, "status", status_of(behind=1))
            fake_git.on(repo.path, "pull", CLEAN_PULL)

        results = OperationDispatcher(fake_git, max_workers=2).pull_all(repos)

        assert [r.repository for r in results] == repos


class TestWorkers:
    @pytest.mark.parametrize(
        ("max_workers", "count", "expected"),
        [(None, 3, 3), (None, 100, 32), (None, 0, 1), (4, 100, 4), (0, 10, 1)],
    )
    def test_worker_count(self, max_workers, count, expected) -> None:
        dispatcher = OperationDispatcher(FakeGitRunner(), max_workers)

        assert dispatcher._workers(count) == expected


class TestAutofetchManager:
    """End to end batches over a real directory tree with fake git."""

    def test_fetch_report(self, projects_tree: Path, fake_git: FakeGitRunner) -> None:
        store = InMemoryConfigStore({PROJECTS_DIRECTORY: str(projects_tree)})
        behind = projects_tree / "project2"
        fake_git.on(behind, "status", status_of(behind=1))

        report = AutofetchManager(store, fake_git).fetch()

        assert report.operation == OperationKind.FETCH
        assert report.total == 3
        assert report.any_actionable
        assert report.count(OutcomeKind.FETCHED_CHANGES) == 1
        assert [r.name for r in report.entries] == ["project3", "project1", "project2"]

    def test_pull_silent_hides_no_ops(self, projects_tree: Path, fake_git: FakeGitRunner) -> None:
        store = InMemoryConfigStore({PROJECTS_DIRECTORY: str(projects_tree)})
        behind = projects_tree / "project1"
        fake_git.on(behind, "status", status_of(behind=1))
        fake_git.on(behind, "pull", CLEAN_PULL)

        report = AutofetchManager(store, fake_git).pull(silent=True)

        assert report.operation == OperationKind.PULL
        assert report.lines == [f"{behind}: pulled - Pulled 1 commit(s)"]
        assert report.total == 3

    def test_status_with_included_directories(self, fake_git: FakeGitRunner) -> None:
        store = InMemoryConfigStore({INCLUDED_DIRECTORIES: ["/a", "/b"]})

        report = AutofetchManager(store, fake_git).status()

        assert [str(r.path) for r in report.entries] == ["/a", "/b"]
        assert not report.any_actionable

    def test_unconfigured_raises(self, fake_git: FakeGitRunner) -> None:
        with pytest.raises(ConfigurationMissing):
            AutofetchManager(InMemoryConfigStore(), fake_git).fetch()

        assert fake_git.calls == []

    def test_discover_repositories(self, projects_tree: Path) -> None:
        store = InMemoryConfigStore({PROJECTS_DIRECTORY: str(projects_tree)})

        repos = AutofetchManager(store, FakeGitRunner()).discover_repositories()

        assert len(repos) == 3


class TestGitRunner:
    """Test the subprocess runner against real and patched processes."""

    def test_missing_executable_is_error_result(self, tmp_path: Path) -> None:
        repo = RepositoryHandle(tmp_path)
        runner = GitRunner(executable="definitely-not-git-autofetch")

        output = runner.run_vcs_command(tmp_path, *FETCH_ARGS)
        (result,) = OperationDispatcher(runner).fetch_all([repo])

        assert output.exit_code == -1
        assert result.outcome == OutcomeKind.ERROR
        assert result.error

    def test_timeout_is_error_result(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        def hanging_run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", hanging_run)
        runner = GitRunner(timeout=0.01)

        output = runner.run_vcs_command(tmp_path, *FETCH_ARGS)
        (result,) = OperationDispatcher(runner).fetch_all([RepositoryHandle(tmp_path)])

        assert output == CommandOutput(-1, stderr="git fetch timed out after 0.01s")
        assert result.outcome == OutcomeKind.ERROR
        assert "timed out" in result.error

    def test_non_interactive_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seen = {}

        def recording_run(cmd, **kwargs):
            seen.update(kwargs)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setenv("GIT_SSH_COMMAND", "ssh -i ~/.ssh/deploy")
        monkeypatch.setattr(subprocess, "run", recording_run)

        GitRunner().run_vcs_command(tmp_path, "status")

        assert seen["cwd"] == tmp_path
        assert seen["env"]["GIT_TERMINAL_PROMPT"] == "0"
        assert seen["env"]["LC_ALL"] == "C"
        assert seen["env"]["GIT_SSH_COMMAND"] == "ssh -i ~/.ssh/deploy"

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    def test_status_of_real_repository(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        subprocess.run(["git", "init", "-q", str(repo)], check=True)
        (repo / "notes.txt").write_text("draft")
        dispatcher = OperationDispatcher(GitRunner())

        (untracked,) = dispatcher.status_all([RepositoryHandle(repo)])
        subprocess.run(["git", "add", "notes.txt"], cwd=repo, check=True)
        (staged,) = dispatcher.status_all([RepositoryHandle(repo)])

        assert untracked.outcome == OutcomeKind.UP_TO_DATE
        assert untracked.message == "no upstream branch"
        assert staged.outcome == OutcomeKind.DIRTY_WORKING_TREE
        assert staged.message == "1 uncommitted change(s), no upstream branch"
