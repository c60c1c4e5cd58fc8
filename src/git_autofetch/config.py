"""Config store and the included/excluded directory lists."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from .errors import ConfigStoreError, DirectoryListConflict, ProjectsDirectoryNotFound

logger = logging.getLogger(__name__)

PROJECTS_DIRECTORY = "projectsDirectory"
INCLUDED_DIRECTORIES = "includedDirectories"
EXCLUDED_DIRECTORIES = "excludedDirectories"


class ConfigStore(Protocol):
    """Durable key-value settings."""

    def read_config(self, key: str, default: Any = None) -> Any: ...

    def write_config(self, key: str, value: Any) -> bool: ...


class InMemoryConfigStore:
    """Config store kept in a dict. Used for tests and embedding."""

    def __init__(self, values: dict[str, Any] | None = None):
        self.values: dict[str, Any] = dict(values or {})

    def read_config(self, key: str, default: Any = None) -> Any:
        value = self.values.get(key, default)
        # Hand out copies so callers never mutate stored lists in place
        return list(value) if isinstance(value, list) else value

    def write_config(self, key: str, value: Any) -> bool:
        self.values[key] = list(value) if isinstance(value, list) else value
        return True


class JsonConfigStore:
    """Config store backed by a JSON file.

    The file is read on every call so changes made by another process are
    picked up by the next invocation. Writes replace the file atomically.
    """

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise ConfigStoreError(f"Cannot read config file {self.path}: {e}") from e

        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigStoreError(f"Config file {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigStoreError(f"Config file {self.path} must contain a JSON object")
        return data

    def read_config(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def write_config(self, key: str, value: Any) -> bool:
        data = self._load()
        data[key] = value
        payload = json.dumps(data, indent=2) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise ConfigStoreError(f"Cannot write config file {self.path}: {e}") from e

        logger.debug("Wrote %s to %s", key, self.path)
        return True


def resolve_config_file() -> Path:
    """Resolve the config file location.

    Priority order:
    1. $GIT_AUTOFETCH_CONFIG environment variable
    2. $XDG_CONFIG_HOME/git-autofetch/config.json
    3. ~/.config/git-autofetch/config.json
    """
    env_config = os.environ.get("GIT_AUTOFETCH_CONFIG")
    if env_config:
        return Path(env_config).expanduser()

    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_home).expanduser() if xdg_home else Path.home() / ".config"
    return base / "git-autofetch" / "config.json"


def normalize_path(raw: str | Path) -> str:
    """Expand env vars and tilde, then make the path absolute."""
    expanded = os.path.expanduser(os.path.expandvars(str(raw)))
    return os.path.normpath(os.path.abspath(expanded))


def _read_list(store: ConfigStore, key: str) -> list[str]:
    value = store.read_config(key, [])
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _dedupe(paths: list[str]) -> list[str]:
    return list(dict.fromkeys(paths))


class ProjectDirectoryList:
    """Ordered, deduplicated list of directories kept under one config key."""

    def __init__(self, store: ConfigStore, key: str, label: str, other: tuple[str, str]):
        self.store = store
        self.key = key
        self.label = label
        # (config key, label) of the list a path may not also belong to
        self.other_key, self.other_label = other

    def show(self) -> list[str]:
        return _dedupe(_read_list(self.store, self.key))

    def add(self, path: str | Path) -> list[str]:
        """Add a path, returning the updated list.

        Adding a path that is already present leaves the list unchanged.
        """
        normalized = normalize_path(path)
        current = self.show()
        if normalized in current:
            return current

        if normalized in _read_list(self.store, self.other_key):
            raise DirectoryListConflict(normalized, self.other_label)

        current.append(normalized)
        self.store.write_config(self.key, current)
        logger.info("Added %s to %s directories", normalized, self.label)
        return current

    def remove(self, path: str | Path) -> list[str]:
        normalized = normalize_path(path)
        current = self.show()
        if normalized not in current:
            logger.warning("%s is not in the %s directories", normalized, self.label)
            return current

        current.remove(normalized)
        self.store.write_config(self.key, current)
        logger.info("Removed %s from %s directories", normalized, self.label)
        return current

    def clear(self) -> bool:
        return self.store.write_config(self.key, [])


def included_directories(store: ConfigStore) -> ProjectDirectoryList:
    return ProjectDirectoryList(
        store, INCLUDED_DIRECTORIES, "included", (EXCLUDED_DIRECTORIES, "excluded")
    )


def excluded_directories(store: ConfigStore) -> ProjectDirectoryList:
    return ProjectDirectoryList(
        store, EXCLUDED_DIRECTORIES, "excluded", (INCLUDED_DIRECTORIES, "included")
    )


def get_projects_directory(store: ConfigStore) -> str | None:
    value = store.read_config(PROJECTS_DIRECTORY, None)
    return str(value) if value else None


def set_projects_directory(store: ConfigStore, path: str | Path) -> str:
    """Store the projects root. The directory must exist."""
    normalized = normalize_path(path)
    if not os.path.isdir(normalized):
        raise ProjectsDirectoryNotFound(Path(normalized))
    store.write_config(PROJECTS_DIRECTORY, normalized)
    logger.info("Projects directory set to %s", normalized)
    return normalized
