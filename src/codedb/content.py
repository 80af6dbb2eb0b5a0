# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File discovery and content retrieval services.

This module provides the collaborators the indexing driver consumes:
- FilesFinder: lazily streams the URIs of project files matching a glob
- ContentRetriever: returns the text behind a URI
- OpenDocumentRetriever: overlays editor buffers on top of another retriever
- IgnoreRules: hardcoded, sensitive, .gitignore and user ignore patterns
- URI, module-name and content-hash helpers

Filesystem access runs in the default thread executor so the event loop is
never blocked by directory scans or file reads.
"""

import asyncio
import fnmatch
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)


class ContentUnavailableError(Exception):
    """Raised when the content behind a URI cannot be retrieved."""

    pass


class ContentMissingError(ContentUnavailableError):
    """Raised when the file behind a URI no longer exists."""

    pass


def path_to_uri(path: Path) -> str:
    return Path(path).resolve().as_uri()


def uri_to_path(uri: str) -> Path:
    """Convert a ``file://`` URI to a filesystem path.

    Raises:
        ValueError: For non-file URIs.
    """
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"Unsupported URI scheme: {uri}")
    return Path(unquote(parsed.path))


def content_hash(text: str) -> str:
    """SHA-256 hex digest of text content."""
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


def module_name_for(
    path: Path, project_root: Path, source_roots: Iterable[str] = ("src", ".")
) -> Tuple[str, bool]:
    """Derive the dotted module name a Python file defines.

    The most specific source root containing the file wins, e.g. with
    ``src`` as a source root ``src/pkg/mod.py`` defines ``pkg.mod``.

    Args:
        path: Absolute file path.
        project_root: Project root directory.
        source_roots: Source roots relative to the project root.

    Returns:
        Tuple of (module name, is_package).
    """
    path = Path(path)
    candidates: List[Tuple[int, Tuple[str, ...]]] = []
    for root in source_roots:
        root_path = (project_root / root).resolve()
        try:
            rel = path.resolve().relative_to(root_path)
        except ValueError:
            continue
        candidates.append((len(root_path.parts), rel.parts))

    if candidates:
        parts = list(max(candidates)[1])
    else:
        parts = [path.name]

    parts[-1] = Path(parts[-1]).stem
    is_package = parts[-1] == "__init__"
    if is_package:
        parts.pop()
    if not parts:
        # __init__.py directly in a source root
        return "", True
    return ".".join(parts), is_package


class IgnoreRules:
    """Path filter shared by discovery and the project watcher."""

    # Hardcoded ignore patterns
    ALWAYS_IGNORED = {
        ".git",
        "__pycache__",
        ".venv",
        "venv",
        "env",
        "node_modules",
        ".tox",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".eggs",
        "*.egg-info",
        "dist",
        "build",
    }

    # Sensitive files that should never be read
    SENSITIVE_PATTERNS = {
        ".env",
        ".env.*",
        "credentials.json",
        "*.key",
        "*.pem",
        "*_secret",
        "id_rsa",
        "id_ed25519",
        "secrets.yaml",
        "secrets.yml",
        ".pypirc",
        ".aws",
    }

    def __init__(
        self,
        project_root: Path,
        user_patterns: Optional[Iterable[str]] = None,
        gitignore_path: Optional[Path] = None,
    ):
        """Initialize ignore rules.

        Args:
            project_root: Root the relative patterns are matched against.
            user_patterns: Additional user-configured glob patterns.
            gitignore_path: Path to .gitignore (defaults to {project_root}/.gitignore).
        """
        self.project_root = Path(project_root).resolve()
        self.user_patterns: Set[str] = set(user_patterns or ())
        self.gitignore_path = gitignore_path or self.project_root / ".gitignore"
        self.gitignore_patterns = self._load_gitignore()

    def _load_gitignore(self) -> Set[str]:
        patterns: Set[str] = set()
        if not self.gitignore_path.exists():
            return patterns

        try:
            with open(self.gitignore_path, encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith("#") or line.startswith("!"):
                        continue
                    if len(line) > 1000:
                        logger.warning(
                            f".gitignore line {line_num}: Pattern too long (>1000 chars), skipping"
                        )
                        continue
                    patterns.add(line.rstrip("/").lstrip("/"))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read .gitignore: {e}")

        logger.debug(f"Loaded {len(patterns)} patterns from .gitignore")
        return patterns

    @staticmethod
    def _matches(parts: Tuple[str, ...], rel_path: str, pattern: str) -> bool:
        if fnmatch.fnmatch(rel_path, pattern):
            return True
        return any(fnmatch.fnmatch(part, pattern) for part in parts)

    def should_ignore(self, file_path: Path) -> bool:
        """Check whether a file or directory is excluded from the project."""
        path = Path(file_path)
        try:
            rel = path.resolve().relative_to(self.project_root)
        except ValueError:
            rel = path
        parts = rel.parts
        rel_path = rel.as_posix()

        for pattern in self.ALWAYS_IGNORED:
            if self._matches(parts, rel_path, pattern):
                return True
        for pattern in self.SENSITIVE_PATTERNS:
            if self._matches(parts, rel_path, pattern):
                logger.debug(f"Ignoring sensitive file/directory: {path.name}")
                return True
        for pattern in self.gitignore_patterns | self.user_patterns:
            if self._matches(parts, rel_path, pattern):
                return True
        return False


def matches_glob(rel_path: str, glob: str) -> bool:
    """Match a project-relative POSIX path against a glob like ``**/*.py``."""
    name = rel_path.rsplit("/", 1)[-1]
    while glob.startswith("**/"):
        glob = glob[3:]
        if fnmatch.fnmatch(name, glob):
            return True
    return fnmatch.fnmatch(rel_path, glob)


class FilesFinder(ABC):
    """Discovers project files."""

    @abstractmethod
    def find(self, glob: str) -> AsyncIterator[str]:
        """Lazily stream URIs of files matching ``glob`` (unordered)."""


class ContentRetriever(ABC):
    """Retrieves the text of a file."""

    @abstractmethod
    async def retrieve(self, uri: str) -> str:
        """Return the text behind ``uri``.

        Raises:
            ContentUnavailableError: If the content cannot be read.
        """


class FileSystemFilesFinder(FilesFinder):
    """Walks the project root directory by directory."""

    def __init__(self, project_root: Path, ignore_rules: Optional[IgnoreRules] = None):
        self.project_root = Path(project_root).resolve()
        self.ignore_rules = ignore_rules or IgnoreRules(self.project_root)

    async def find(self, glob: str) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        pending = [self.project_root]
        while pending:
            directory = pending.pop()
            entries = await loop.run_in_executor(None, self._scan, directory)
            for path, is_dir in entries:
                if self.ignore_rules.should_ignore(path):
                    continue
                if is_dir:
                    pending.append(path)
                    continue
                rel_path = path.relative_to(self.project_root).as_posix()
                if matches_glob(rel_path, glob):
                    yield path_to_uri(path)

    @staticmethod
    def _scan(directory: Path) -> List[Tuple[Path, bool]]:
        try:
            with os.scandir(directory) as it:
                return [
                    (Path(entry.path), entry.is_dir(follow_symlinks=False))
                    for entry in it
                    if entry.is_dir(follow_symlinks=False) or entry.is_file()
                ]
        except OSError as e:
            logger.warning(f"Cannot list {directory}: {e}")
            return []


class FileSystemContentRetriever(ContentRetriever):
    """Reads files with UTF-8 and a latin-1 fallback, enforcing size limits."""

    MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
    MAX_FILE_LINES = 10000

    def __init__(
        self,
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
        max_file_lines: int = MAX_FILE_LINES,
    ):
        self.max_file_size_bytes = max_file_size_bytes
        self.max_file_lines = max_file_lines

    async def retrieve(self, uri: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, uri)

    def _read(self, uri: str) -> str:
        try:
            path = uri_to_path(uri)
        except ValueError as e:
            raise ContentUnavailableError(str(e)) from e

        try:
            size = path.stat().st_size
            if size > self.max_file_size_bytes:
                raise ContentUnavailableError(
                    f"{path}: {size} bytes exceeds limit ({self.max_file_size_bytes})"
                )
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise ContentMissingError(f"File not found: {path}") from e
        except PermissionError as e:
            raise ContentUnavailableError(f"Permission denied reading file: {path}") from e
        except OSError as e:
            raise ContentUnavailableError(f"Cannot read {path}: {e}") from e

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(f"File {path} is not UTF-8, using latin-1 fallback encoding")
            text = data.decode("latin-1")

        line_count = text.count("\n") + 1
        if line_count > self.max_file_lines:
            raise ContentUnavailableError(
                f"{path}: {line_count} lines exceeds limit ({self.max_file_lines})"
            )
        return text


class OpenDocumentRetriever(ContentRetriever):
    """Serves editor buffers for open documents, else defers to ``fallback``."""

    def __init__(self, fallback: ContentRetriever):
        self.fallback = fallback
        self._documents: Dict[str, str] = {}

    def open(self, uri: str, text: str) -> None:
        self._documents[uri] = text

    def update(self, uri: str, text: str) -> None:
        self._documents[uri] = text

    def close(self, uri: str) -> None:
        self._documents.pop(uri, None)

    def is_open(self, uri: str) -> bool:
        return uri in self._documents

    def get_text(self, uri: str) -> Optional[str]:
        return self._documents.get(uri)

    async def retrieve(self, uri: str) -> str:
        text = self._documents.get(uri)
        if text is not None:
            return text
        return await self.fallback.retrieve(uri)
