# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Keeps the index in step with Python files changed on disk.

A watchdog observer runs on its own thread and reports every event under
the project root. Events for paths outside the indexed set are dropped
using the same ignore rules discovery applies. The rest are turned into
``index_uri`` / ``remove_uri`` calls, handed to the event loop with
``asyncio.run_coroutine_threadsafe`` so the repository is only ever
touched from the loop thread.

A rename is reported as a removal of the old path followed by an index of
the new one. There is no debouncing; bursts of writes to one file collapse
in the driver's content hash check.
"""

import asyncio
import logging
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from codedb.content import IgnoreRules, matches_glob, path_to_uri
from codedb.indexer import IndexingDriver

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Seconds to wait for the observer thread on stop
STOP_TIMEOUT = 5.0


class ProjectWatcher:
    """Forwards file system events under the project root to the driver.

    Example:
        watcher = ProjectWatcher(driver, ignore_rules, asyncio.get_running_loop())
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        driver: IndexingDriver,
        ignore_rules: IgnoreRules,
        loop: asyncio.AbstractEventLoop,
    ):
        self.driver = driver
        self.ignore_rules = ignore_rules
        self.loop = loop
        self.project_root = driver.project_root

        self._event_handler = _WatchdogBridge(self)
        self._observer: Optional["BaseObserver"] = None

    def is_indexed_path(self, file_path: str) -> bool:
        """Whether ``file_path`` is a project file the driver indexes."""
        candidate = Path(file_path)
        try:
            relative = candidate.resolve().relative_to(self.project_root)
        except ValueError:
            return False
        return matches_glob(relative.as_posix(), self.driver.file_glob) and not (
            self.ignore_rules.should_ignore(candidate)
        )

    def file_changed(self, file_path: str) -> Optional[Future]:
        """Schedule a reindex of a created or modified file."""
        logger.debug(f"{file_path} changed on disk")
        return self._schedule(self.driver.index_uri(path_to_uri(Path(file_path))))

    def file_deleted(self, file_path: str) -> Optional[Future]:
        """Schedule the removal of a deleted file from the index."""
        logger.debug(f"{file_path} removed from disk")
        return self._schedule(self.driver.remove_uri(path_to_uri(Path(file_path))))

    def _schedule(self, coro: Any) -> Optional[Future]:
        # The loop may already be gone while the observer drains its queue
        if self.loop.is_closed():
            coro.close()
            return None
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def is_running(self) -> bool:
        observer = self._observer
        return observer is not None and observer.is_alive()

    def start(self) -> None:
        """Begin watching the project root recursively.

        Raises:
            RuntimeError: If the watcher is already running.
        """
        if self.is_running():
            raise RuntimeError("ProjectWatcher is already running")

        observer = Observer()
        observer.schedule(self._event_handler, str(self.project_root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.project_root} for changes")

    def stop(self) -> None:
        """Stop the observer thread, waiting up to STOP_TIMEOUT seconds."""
        if not self.is_running():
            return
        assert self._observer is not None
        self._observer.stop()
        self._observer.join(timeout=STOP_TIMEOUT)
        logger.info("Stopped watching for changes")


class _WatchdogBridge(FileSystemEventHandler):
    """Translates watchdog events into ProjectWatcher calls."""

    def __init__(self, watcher: ProjectWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        source = str(event.src_path)
        if event.event_type == EVENT_TYPE_MOVED:
            destination = str(getattr(event, "dest_path", "") or "")
            if self.watcher.is_indexed_path(source):
                self.watcher.file_deleted(source)
            if destination and self.watcher.is_indexed_path(destination):
                self.watcher.file_changed(destination)
            return

        if not self.watcher.is_indexed_path(source):
            return
        if event.event_type == EVENT_TYPE_DELETED:
            self.watcher.file_deleted(source)
        elif event.event_type in (EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED):
            self.watcher.file_changed(source)
