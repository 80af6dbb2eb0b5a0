# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Indexing driver: feeds project files through parse -> collect -> repository.

Responsibilities:
- Initial sweep: stream discovered files, index each one, then flip the
  completeness signal to COMPLETE (which wakes all parked resolvers)
- Content hash gate: an unchanged hash means no reparse and no mutation
- Snapshot validation: files restored from a snapshot are re-checked lazily,
  on the first query touching them or when the sweep reaches them; restored
  files the sweep never discovers are removed
- A discovery failure ends the sweep early, but COMPLETE is only signalled
  once every file discovered before the failure has been indexed
- Incremental updates: index_uri() / remove_uri() for editor and watcher events

Concurrency:
- Per-file work runs as asyncio tasks bounded by a semaphore; parsing is
  offloaded to a worker thread with a timeout
- Updates to one URI are serialized by a per-URI asyncio.Lock. Lock
  acquisition is FIFO, so the last requested update for a URI wins
- Faults are isolated per file: logged, counted and never propagated
"""

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Set

from codedb.collector import Collector
from codedb.content import (
    ContentMissingError,
    ContentRetriever,
    ContentUnavailableError,
    FilesFinder,
    content_hash,
    module_name_for,
    uri_to_path,
)
from codedb.index_events import CompletenessSignal
from codedb.models import FileRecord, IndexState
from codedb.repository import Repository
from codedb.syntax.python_provider import ParseTimeoutError, PythonSyntaxProvider

logger = logging.getLogger(__name__)


class IndexingDriver:
    """Drives initial and incremental indexing of one project."""

    DEFAULT_GLOB = "**/*.py"
    DEFAULT_MAX_CONCURRENT_FILES = 8

    def __init__(
        self,
        project_root: Path,
        repository: Repository,
        provider: PythonSyntaxProvider,
        files_finder: FilesFinder,
        content_retriever: ContentRetriever,
        signal: CompletenessSignal,
        file_glob: str = DEFAULT_GLOB,
        source_roots: tuple = ("src", "."),
        max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES,
    ):
        """Initialize the driver.

        Args:
            project_root: Root directory of the project.
            repository: Repository to index into (possibly restored from a snapshot).
            provider: Syntax provider used to parse files.
            files_finder: Discovery service.
            content_retriever: Content service (usually the open-document overlay).
            signal: Completeness signal; this driver is its only writer.
            file_glob: Glob selecting the files to index.
            source_roots: Source roots used to derive module names.
            max_concurrent_files: Upper bound on files indexed at once.
        """
        self.project_root = Path(project_root).resolve()
        self.repository = repository
        self.provider = provider
        self.files_finder = files_finder
        self.content_retriever = content_retriever
        self.signal = signal
        self.file_glob = file_glob
        self.source_roots = tuple(source_roots)
        self.max_concurrent_files = max(1, max_concurrent_files)

        # URIs restored from a snapshot whose hash has not been re-checked yet
        self._unverified: Set[str] = set(repository.get_uris())
        self._locks: Dict[str, asyncio.Lock] = {}
        # uri -> tasks holding or waiting for its lock
        self._lock_users: Dict[str, int] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._sweep_task: Optional["asyncio.Task[None]"] = None

        self.stats = {"indexed": 0, "unchanged": 0, "failed": 0, "removed": 0}

    @property
    def unverified_uris(self) -> Set[str]:
        return set(self._unverified)

    def is_unverified(self, uri: str) -> bool:
        """Whether ``uri`` was restored from a snapshot and not re-checked yet."""
        return uri in self._unverified

    def start(self) -> "asyncio.Task[None]":
        """Launch the initial sweep as a background task.

        Raises:
            RuntimeError: If the sweep was already started.
        """
        if self._sweep_task is not None:
            raise RuntimeError("Initial indexing sweep already started")
        self.signal.transition(IndexState.INDEXING)
        self._sweep_task = asyncio.create_task(self._sweep())
        return self._sweep_task

    async def wait_until_complete(self) -> None:
        if self._sweep_task is not None:
            await asyncio.shield(self._sweep_task)

    async def stop(self) -> None:
        """Cancel a still-running sweep."""
        task = self._sweep_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep(self) -> None:
        started = time.perf_counter()
        discovered: Set[str] = set()
        tasks = []
        try:
            async for uri in self.files_finder.find(self.file_glob):
                if uri in discovered:
                    continue
                discovered.add(uri)
                tasks.append(asyncio.create_task(self._index_bounded(uri)))
            await asyncio.gather(*tasks)

            for uri in sorted(self._unverified - discovered):
                logger.info(f"Removing {uri}: no longer part of the project")
                await self.remove_uri(uri)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        except Exception as e:
            logger.error(f"Initial indexing sweep failed: {e}", exc_info=True)
            # Files discovered before the failure still count towards completion
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self.signal.transition(IndexState.COMPLETE)

        elapsed = time.perf_counter() - started
        logger.info(
            f"Initial indexing complete: {len(discovered)} files in {elapsed:.2f}s "
            f"(indexed={self.stats['indexed']}, unchanged={self.stats['unchanged']}, "
            f"failed={self.stats['failed']}, removed={self.stats['removed']})"
        )

    async def _index_bounded(self, uri: str) -> None:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_files)
        async with self._semaphore:
            await self.index_uri(uri)

    @contextlib.asynccontextmanager
    async def _serialized(self, uri: str) -> AsyncIterator[None]:
        """Run the enclosed block under the per-URI lock.

        The lock is dropped once nobody holds or awaits it and the URI is no
        longer indexed.
        """
        lock = self._locks.setdefault(uri, asyncio.Lock())
        self._lock_users[uri] = self._lock_users.get(uri, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[uri] -= 1
            if not self._lock_users[uri]:
                del self._lock_users[uri]
                if uri not in self.repository:
                    self._locks.pop(uri, None)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    async def index_uri(self, uri: str) -> bool:
        """Bring one file's records up to date with its current content.

        Never raises for per-file faults; they are logged and counted.

        Returns:
            True if the file was (re)parsed, False if it was unchanged,
            missing or failed.
        """
        async with self._serialized(uri):
            try:
                return await self._index_locked(uri)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["failed"] += 1
                logger.error(f"Failed to index {uri}: {e}", exc_info=True)
                return False

    async def _index_locked(self, uri: str) -> bool:
        try:
            text = await self.content_retriever.retrieve(uri)
        except ContentMissingError:
            if self.repository.remove_file(uri):
                self.stats["removed"] += 1
            self._unverified.discard(uri)
            return False
        except ContentUnavailableError as e:
            self.stats["failed"] += 1
            logger.warning(f"Skipping {uri}: {e}")
            return False

        digest = content_hash(text)
        self._unverified.discard(uri)
        record = self.repository.get_file(uri)
        if record is not None and record.content_hash == digest:
            self.stats["unchanged"] += 1
            return False

        module_name, is_package = module_name_for(
            uri_to_path(uri), self.project_root, self.source_roots
        )
        try:
            result = await self.provider.parse_in_executor(uri, text, module_name, is_package)
        except ParseTimeoutError as e:
            self.stats["failed"] += 1
            logger.warning(f"Skipping {uri}: {e}")
            return False

        Collector(self.repository, uri, digest, result.tree, result.duration).collect()
        self.stats["indexed"] += 1
        return True

    async def ensure_fresh(self, uri: str) -> Optional[FileRecord]:
        """Re-check a snapshot-restored file before it is queried.

        Returns:
            The file's current record, or None if it is not indexed.
        """
        if uri in self._unverified:
            await self.index_uri(uri)
        return self.repository.get_file(uri)

    async def remove_uri(self, uri: str) -> bool:
        """Drop a file from the index.

        Returns:
            True if the file was indexed.
        """
        async with self._serialized(uri):
            self._unverified.discard(uri)
            removed = self.repository.remove_file(uri)
        if removed:
            self.stats["removed"] += 1
        return removed

    def save_snapshot(self, path: Path) -> bool:
        """Persist the repository. Failures are logged, never raised.

        Returns:
            True if the snapshot was written.
        """
        try:
            self.repository.save(path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write index snapshot to {path}: {e}")
            return False
