# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Configuration loading and validation for codedb.

Settings come from ``.codedb.yml`` in the project root. Every key is
optional; a key with a value of the wrong type or out of range is reported
and its default is kept, so a bad file never stops the server from starting.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".codedb.yml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """Raised when a configuration file that must exist cannot be used."""


def _positive(value: Any) -> bool:
    return bool(value > 0)


def _non_blank(value: Any) -> bool:
    return bool(value.strip())


def _strings(value: Any) -> bool:
    return all(isinstance(item, str) for item in value)


# key -> (default, accepted type, extra check)
_SCHEMA: Dict[str, Tuple[Any, type, Optional[Callable[[Any], bool]]]] = {
    "file_glob": ("**/*.py", str, _non_blank),
    "ignore_patterns": ([], list, _strings),
    "source_roots": (["src", "."], list, _strings),
    "max_concurrent_files": (8, int, _positive),
    "parse_timeout_seconds": (5.0, float, lambda v: 0 < v <= 300),
    "max_file_size_bytes": (10 * 1024 * 1024, int, _positive),
    "max_file_lines": (10000, int, _positive),
    "max_recovery_attempts": (20, int, lambda v: v >= 0),
    "enable_snapshot": (True, bool, None),
    "snapshot_path": (".codedb/index.json", str, _non_blank),
    "watch_files": (True, bool, None),
    "completion_limit": (200, int, _positive),
    "client_request_timeout_seconds": (30.0, float, lambda v: 0 < v <= 300),
    "log_level": ("INFO", str, lambda v: v.upper() in LOG_LEVELS),
}


def _has_type(value: Any, expected: type) -> bool:
    # bool is an int subclass; YAML "yes"/"true" must not pass as a number
    if expected in (int, float) and isinstance(value, bool):
        return False
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


def _defaults() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, (default, _, _) in _SCHEMA.items():
        values[key] = list(default) if isinstance(default, list) else default
    return values


class Config:
    """Settings for one codedb server, read from a YAML file.

    Missing file, empty file, unparsable YAML and a top-level value that is
    not a mapping all fall back to the defaults with a log message.
    """

    def __init__(self, config_path: Optional[Path] = None, required: bool = False):
        """Read settings from ``config_path`` (``./.codedb.yml`` when None).

        Args:
            config_path: YAML file to read.
            required: The file was named explicitly and must exist.

        Raises:
            ConfigurationError: If ``required`` and the file is missing.
        """
        if config_path is None:
            config_path = Path.cwd() / CONFIG_FILENAME
        self.config_path = Path(config_path)
        if required and not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        self._values = _defaults()
        loaded = self._read()
        if loaded:
            self._apply(loaded)

    @classmethod
    def for_project(cls, project_root: Path) -> "Config":
        return cls(Path(project_root) / CONFIG_FILENAME)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.config_path.exists():
            logger.info(f"No configuration at {self.config_path}, using defaults")
            return None

        try:
            with open(self.config_path, encoding="utf-8") as stream:
                data = yaml.safe_load(stream)
        except yaml.YAMLError as e:
            logger.warning(f"Cannot parse {self.config_path}: {e}; using defaults")
            return None
        except OSError as e:
            logger.warning(f"Cannot read {self.config_path}: {e}; using defaults")
            return None

        if data is None:
            logger.warning(f"{self.config_path} is empty; using defaults")
            return None
        if not isinstance(data, dict):
            logger.warning(
                f"{self.config_path} must hold a mapping, not {type(data).__name__}; using defaults"
            )
            return None
        return data

    def _apply(self, loaded: Dict[str, Any]) -> None:
        for key, value in loaded.items():
            schema_entry = _SCHEMA.get(key)
            if schema_entry is None:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue

            default, expected, check = schema_entry
            if not _has_type(value, expected) or (check is not None and not check(value)):
                logger.warning(f"Rejected {key}={value!r}, keeping {default!r}")
                continue

            if expected is float:
                value = float(value)
            elif key == "log_level":
                value = value.upper()
            self._values[key] = value

    @property
    def file_glob(self) -> str:
        """Glob selecting the files to index, relative to the project root."""
        return self._values["file_glob"]

    @property
    def ignore_patterns(self) -> List[str]:
        """Extra ignore patterns on top of .gitignore."""
        return self._values["ignore_patterns"]

    @property
    def source_roots(self) -> List[str]:
        """Directories, relative to the project root, that module names start from."""
        return self._values["source_roots"]

    @property
    def max_concurrent_files(self) -> int:
        return self._values["max_concurrent_files"]

    @property
    def parse_timeout_seconds(self) -> float:
        return self._values["parse_timeout_seconds"]

    @property
    def max_file_size_bytes(self) -> int:
        return self._values["max_file_size_bytes"]

    @property
    def max_file_lines(self) -> int:
        return self._values["max_file_lines"]

    @property
    def max_recovery_attempts(self) -> int:
        """Syntax errors tolerated in one file before it is indexed as empty."""
        return self._values["max_recovery_attempts"]

    @property
    def enable_snapshot(self) -> bool:
        """Restore the index at startup and save it at shutdown."""
        return self._values["enable_snapshot"]

    @property
    def snapshot_path(self) -> str:
        return self._values["snapshot_path"]

    @property
    def watch_files(self) -> bool:
        return self._values["watch_files"]

    @property
    def completion_limit(self) -> int:
        return self._values["completion_limit"]

    @property
    def client_request_timeout_seconds(self) -> float:
        """How long to wait for the editor to answer a file list or content request."""
        return self._values["client_request_timeout_seconds"]

    @property
    def log_level(self) -> str:
        return self._values["log_level"]

    def resolve_snapshot_path(self, project_root: Path) -> Path:
        """Snapshot location; relative paths are taken from ``project_root``."""
        path = Path(self.snapshot_path)
        return path if path.is_absolute() else Path(project_root) / path
