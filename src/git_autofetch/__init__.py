"""git-autofetch: fetch all your repositories, pull when there are no conflicts."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .cli import app
from .config import (
    ConfigStore,
    InMemoryConfigStore,
    JsonConfigStore,
    ProjectDirectoryList,
    excluded_directories,
    included_directories,
    resolve_config_file,
    set_projects_directory,
)
from .core import (
    AutofetchManager,
    CommandOutput,
    DirectoryResolver,
    GitRunner,
    OperationDispatcher,
    OperationKind,
    OperationResult,
    OutcomeKind,
    Report,
    RepositoryHandle,
    RepositoryScanner,
    aggregate,
    classify,
)
from .errors import (
    AutofetchError,
    ConfigStoreError,
    ConfigurationMissing,
    DirectoryListConflict,
    OperationError,
    ProjectsDirectoryNotFound,
    ScanIOError,
)
from .formatters import OutputFormatter
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "CommandOutput",
    "OperationKind",
    "OperationResult",
    "OutcomeKind",
    "Report",
    "RepositoryHandle",
    # Config
    "ConfigStore",
    "InMemoryConfigStore",
    "JsonConfigStore",
    "ProjectDirectoryList",
    "excluded_directories",
    "included_directories",
    "resolve_config_file",
    "set_projects_directory",
    # Operations
    "AutofetchManager",
    "DirectoryResolver",
    "GitRunner",
    "OperationDispatcher",
    "RepositoryScanner",
    "aggregate",
    "classify",
    # Errors
    "AutofetchError",
    "ConfigStoreError",
    "ConfigurationMissing",
    "DirectoryListConflict",
    "OperationError",
    "ProjectsDirectoryNotFound",
    "ScanIOError",
    # Output
    "OutputFormatter",
    "get_tool_schema",
]
