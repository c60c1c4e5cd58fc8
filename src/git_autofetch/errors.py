"""Error taxonomy for git-autofetch.

Only resolution-time errors abort an invocation. Everything that happens while
operating on a single repository is captured as data on its result.
"""

from __future__ import annotations

from pathlib import Path


class AutofetchError(Exception):
    """Base class for errors reported to the user."""


class ConfigurationMissing(AutofetchError):
    """Neither a projects directory nor included directories are configured."""

    def __init__(self) -> None:
        super().__init__(
            "No projects directory configured. "
            "Run 'git-autofetch set-projects-directory <PATH>' or add included directories."
        )


class ProjectsDirectoryNotFound(AutofetchError):
    """The configured projects directory does not exist."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Projects directory does not exist: {path}")


class ConfigStoreError(AutofetchError):
    """The config file could not be read or written."""


class DirectoryListConflict(AutofetchError):
    """A path was added to one directory list while present in the other."""

    def __init__(self, path: str, other_list: str) -> None:
        self.path = path
        self.other_list = other_list
        super().__init__(
            f"{path} is already in the {other_list} directories; remove it there first"
        )


class ScanIOError(AutofetchError):
    """A directory could not be read during a scan.

    Recorded as a warning; the scan continues.
    """

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path}: {reason}")


class OperationError(AutofetchError):
    """A git command failed for one repository."""

    def __init__(self, command: tuple[str, ...], exit_code: int, detail: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.detail = detail
        super().__init__(f"git {' '.join(command)} failed (exit {exit_code}): {detail}")
