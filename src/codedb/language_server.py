# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Language server lifecycle and component wiring.

Lifecycle:
- initialize: resolve the project root, load configuration, restore the
  index snapshot, build the indexing pipeline, start the initial sweep in
  the background and advertise capabilities
  Files are discovered and read through the client when it advertises
  ``xfilesProvider`` / ``xcontentProvider``, else from the file system
- shutdown: stop watching and indexing, write the index snapshot
- exit: stop serving; exit code 0 after shutdown, 1 otherwise
- transport end-of-file: orderly shutdown, then exit

Requests other than initialize are answered with SERVER_NOT_INITIALIZED
until initialize has run; early notifications are dropped.
"""

import asyncio
import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from lsprotocol import types

from codedb import __version__
from codedb.client import ClientContentRetriever, ClientFilesFinder
from codedb.config import Config
from codedb.content import (
    ContentRetriever,
    FileSystemContentRetriever,
    FileSystemFilesFinder,
    FilesFinder,
    IgnoreRules,
    OpenDocumentRetriever,
    uri_to_path,
)
from codedb.definition_resolver import DefinitionResolver
from codedb.dispatcher import Dispatcher, StreamMessageReader
from codedb.file_watcher import ProjectWatcher
from codedb.index_events import CompletenessSignal, IndexEvents
from codedb.indexer import IndexingDriver
from codedb.logging_setup import ClientLogHandler, attach_client_handler, detach_client_handler
from codedb.protocol import INVALID_REQUEST, SERVER_NOT_INITIALIZED, ResponseError
from codedb.repository import Repository
from codedb.server.text_document import TextDocument
from codedb.syntax.python_provider import PythonSyntaxProvider

logger = logging.getLogger(__name__)

# Protocol method -> TextDocument handler
TEXT_DOCUMENT_REQUESTS = {
    "textDocument/documentSymbol": "document_symbol",
    "textDocument/definition": "definition",
    "textDocument/references": "references",
    "textDocument/hover": "hover",
    "textDocument/completion": "completion",
    "textDocument/xdefinition": "xdefinition",
}
TEXT_DOCUMENT_NOTIFICATIONS = {
    "textDocument/didOpen": "did_open",
    "textDocument/didChange": "did_change",
    "textDocument/didClose": "did_close",
}


def read_package_name(project_root: Path) -> str:
    """Package name from pyproject.toml, else the root directory name."""
    pyproject = project_root / "pyproject.toml"
    if pyproject.exists():
        try:
            with open(pyproject, "rb") as f:
                data = tomllib.load(f)
            name = data.get("project", {}).get("name") or (
                data.get("tool", {}).get("poetry", {}).get("name")
            )
            if isinstance(name, str) and name:
                return name
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Cannot read package name from {pyproject}: {e}")
    return project_root.name


class LanguageServer:
    """Owns the per-process index and serves one client connection."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        project_root: Optional[Path] = None,
        config: Optional[Config] = None,
    ):
        """Initialize the server.

        Args:
            dispatcher: Dispatcher connected to the client transport.
            project_root: Fallback root when the client sends none.
            config: Configuration; loaded from the project root if None.
        """
        self.dispatcher = dispatcher
        self.project_root = project_root
        self.config = config

        self.events = IndexEvents()
        self.signal = CompletenessSignal(self.events)
        self.repository: Optional[Repository] = None
        self.driver: Optional[IndexingDriver] = None
        self.resolver: Optional[DefinitionResolver] = None
        self.text_document: Optional[TextDocument] = None
        self.watcher: Optional[ProjectWatcher] = None
        self.snapshot_path: Optional[Path] = None
        self._client_log_handler: Optional[ClientLogHandler] = None

        self.initialized = False
        self.shutdown_requested = False
        self.exit_code = 1
        self._exit_event = asyncio.Event()

        dispatcher.register("initialize", self.initialize)
        dispatcher.register("initialized", self.on_initialized)
        dispatcher.register("shutdown", self.shutdown)
        dispatcher.register("exit", self.exit)
        for method in TEXT_DOCUMENT_REQUESTS:
            dispatcher.register(method, self._not_initialized)
        for method in TEXT_DOCUMENT_NOTIFICATIONS:
            dispatcher.register(method, self._drop_until_initialized)

    @staticmethod
    def _not_initialized(**params: Any) -> None:
        raise ResponseError(SERVER_NOT_INITIALIZED, "Server not initialized")

    @staticmethod
    def _drop_until_initialized(**params: Any) -> None:
        logger.warning("Dropping notification received before initialize")

    # -- lifecycle --------------------------------------------------------

    def _resolve_root(
        self, root_uri: Optional[str], root_path: Optional[str], folders: Optional[List[Any]]
    ) -> Path:
        if root_uri:
            return uri_to_path(root_uri).resolve()
        if folders and isinstance(folders[0], dict) and folders[0].get("uri"):
            return uri_to_path(folders[0]["uri"]).resolve()
        if root_path:
            return Path(root_path).resolve()
        return (self.project_root or Path.cwd()).resolve()

    async def initialize(
        self,
        rootUri: Optional[str] = None,
        rootPath: Optional[str] = None,
        workspaceFolders: Optional[List[Any]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        **params: Any,
    ) -> types.InitializeResult:
        """Build the index pipeline for the client's project and start indexing."""
        if self.initialized:
            raise ResponseError(INVALID_REQUEST, "Server already initialized")
        try:
            root = self._resolve_root(rootUri, rootPath, workspaceFolders)
        except ValueError as e:
            raise ResponseError(INVALID_REQUEST, str(e)) from e
        self.project_root = root

        config = self.config or Config.for_project(root)
        self.config = config
        loop = asyncio.get_running_loop()
        self.events.bind_loop(loop)

        if config.enable_snapshot:
            self.snapshot_path = config.resolve_snapshot_path(root)
            repository = await loop.run_in_executor(
                None, Repository.load, self.snapshot_path, self.events
            )
        else:
            repository = Repository(self.events)
        self.repository = repository

        provider = PythonSyntaxProvider(
            max_recovery_attempts=config.max_recovery_attempts,
            timeout_seconds=config.parse_timeout_seconds,
        )
        ignore_rules = IgnoreRules(root, config.ignore_patterns)
        client_capabilities = capabilities if isinstance(capabilities, dict) else {}
        files_finder, retriever = self._content_services(
            root, config, ignore_rules, client_capabilities
        )
        documents = OpenDocumentRetriever(retriever)
        self.driver = IndexingDriver(
            project_root=root,
            repository=repository,
            provider=provider,
            files_finder=files_finder,
            content_retriever=documents,
            signal=self.signal,
            file_glob=config.file_glob,
            source_roots=tuple(config.source_roots),
            max_concurrent_files=config.max_concurrent_files,
        )
        self.resolver = DefinitionResolver(repository, self.signal, self.events)
        self.text_document = TextDocument(
            repository=repository,
            resolver=self.resolver,
            driver=self.driver,
            documents=documents,
            provider=provider,
            project_root=root,
            source_roots=tuple(config.source_roots),
            package_name=read_package_name(root),
            completion_limit=config.completion_limit,
        )
        for method, name in {**TEXT_DOCUMENT_REQUESTS, **TEXT_DOCUMENT_NOTIFICATIONS}.items():
            self.dispatcher.register(method, getattr(self.text_document, name))

        self._client_log_handler = attach_client_handler(self.dispatcher.notify)
        self.initialized = True
        logger.info(f"Initialized for {root} ({len(repository)} files restored)")

        self.driver.start()
        if config.watch_files and isinstance(retriever, ClientContentRetriever):
            logger.info("Not watching the file system: the client provides file content")
        elif config.watch_files:
            self._start_watcher(ignore_rules, loop)

        return types.InitializeResult(
            capabilities=types.ServerCapabilities(
                text_document_sync=types.TextDocumentSyncKind.Full,
                document_symbol_provider=True,
                definition_provider=True,
                references_provider=True,
                hover_provider=True,
                completion_provider=types.CompletionOptions(trigger_characters=["."]),
                experimental={"xdefinitionProvider": True},
            ),
            server_info=types.ServerInfo(name="codedb", version=__version__),
        )

    def _content_services(
        self,
        root: Path,
        config: Config,
        ignore_rules: IgnoreRules,
        capabilities: Dict[str, Any],
    ) -> Tuple[FilesFinder, ContentRetriever]:
        timeout = config.client_request_timeout_seconds
        files_finder: FilesFinder
        if capabilities.get("xfilesProvider"):
            logger.info("Discovering files through the client")
            files_finder = ClientFilesFinder(self.dispatcher.request, root, ignore_rules, timeout)
        else:
            files_finder = FileSystemFilesFinder(root, ignore_rules)

        retriever: ContentRetriever
        if capabilities.get("xcontentProvider"):
            logger.info("Reading file content through the client")
            retriever = ClientContentRetriever(
                self.dispatcher.request, timeout, max_file_lines=config.max_file_lines
            )
        else:
            retriever = FileSystemContentRetriever(
                max_file_size_bytes=config.max_file_size_bytes,
                max_file_lines=config.max_file_lines,
            )
        return files_finder, retriever

    def _start_watcher(self, ignore_rules: IgnoreRules, loop: asyncio.AbstractEventLoop) -> None:
        assert self.driver is not None
        watcher = ProjectWatcher(self.driver, ignore_rules, loop)
        try:
            watcher.start()
        except OSError as e:
            logger.warning(f"File watching unavailable, changes on disk will be missed: {e}")
            return
        self.watcher = watcher

    def on_initialized(self, **params: Any) -> None:
        logger.debug("Client confirmed initialization")

    async def shutdown(self) -> None:
        """Stop background work and persist the index."""
        if self.shutdown_requested:
            return
        self.shutdown_requested = True
        logger.info(f"Shutting down: {self.get_statistics()}")

        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.driver is not None:
            await self.driver.stop()
            if self.snapshot_path is not None:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.driver.save_snapshot, self.snapshot_path)

    def exit(self) -> None:
        self.exit_code = 0 if self.shutdown_requested else 1
        self._exit_event.set()

    async def _on_transport_closed(self) -> None:
        if not self.shutdown_requested:
            logger.warning("Client disconnected without shutdown")
            await self.shutdown()
        self.exit()

    async def serve(self, reader: StreamMessageReader) -> int:
        """Serve the client until exit or end of input.

        Returns:
            Process exit code.
        """
        run_task = asyncio.create_task(self.dispatcher.run(reader, self._on_transport_closed))
        exit_task = asyncio.create_task(self._exit_event.wait())
        await asyncio.wait({run_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)

        for task in (run_task, exit_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(run_task, exit_task, return_exceptions=True)
        await self.close()
        return self.exit_code

    async def close(self) -> None:
        """Release resources without persisting anything."""
        await self.dispatcher.cancel_pending()
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.driver is not None:
            await self.driver.stop()
        if self._client_log_handler is not None:
            detach_client_handler(self._client_log_handler)
            self._client_log_handler = None

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"state": self.signal.state}
        if self.repository is not None:
            stats.update(self.repository.get_statistics())
        if self.driver is not None:
            stats["driver"] = dict(self.driver.stats)
        return stats
