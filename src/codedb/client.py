# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Discovery and content services backed by the editor.

Clients advertising ``xfilesProvider`` / ``xcontentProvider`` in their
initialize capabilities serve the file list and file text themselves, e.g.
when the workspace is not on the server's file system. Both services issue
server-to-client requests through the dispatcher:

- ``workspace/xfiles`` -> list of ``{"uri": ...}`` for the whole workspace;
  glob and ignore rules are applied on this side
- ``textDocument/xcontent`` -> a TextDocumentItem carrying the text
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from codedb.content import (
    ContentRetriever,
    ContentUnavailableError,
    FilesFinder,
    IgnoreRules,
    matches_glob,
    path_to_uri,
    uri_to_path,
)
from codedb.protocol import ResponseError

logger = logging.getLogger(__name__)

# (method, params, timeout) -> result, normally Dispatcher.request
ClientRequest = Callable[[str, Optional[Dict[str, Any]], Optional[float]], Awaitable[Any]]

DEFAULT_TIMEOUT_SECONDS = 30.0


class ClientFilesFinder(FilesFinder):
    """Lists project files with a ``workspace/xfiles`` request."""

    def __init__(
        self,
        request: ClientRequest,
        project_root: Path,
        ignore_rules: Optional[IgnoreRules] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.request = request
        self.project_root = Path(project_root).resolve()
        self.ignore_rules = ignore_rules or IgnoreRules(self.project_root)
        self.timeout = timeout

    async def find(self, glob: str) -> AsyncIterator[str]:
        """Stream the client's files matching ``glob``.

        Raises:
            ResponseError: If the client rejects the request.
            ValueError: If the result is not a list.
        """
        result = await self.request(
            "workspace/xfiles", {"base": path_to_uri(self.project_root)}, self.timeout
        )
        if not isinstance(result, list):
            raise ValueError(f"workspace/xfiles returned {type(result).__name__}, not a list")

        for item in result:
            uri = item.get("uri") if isinstance(item, dict) else None
            if not isinstance(uri, str):
                logger.debug(f"Skipping malformed workspace/xfiles entry: {item!r}")
                continue
            try:
                path = uri_to_path(uri)
                rel_path = path.relative_to(self.project_root).as_posix()
            except ValueError:
                continue
            if self.ignore_rules.should_ignore(path):
                continue
            if matches_glob(rel_path, glob):
                yield uri


class ClientContentRetriever(ContentRetriever):
    """Fetches file text with a ``textDocument/xcontent`` request."""

    MAX_FILE_LINES = 10000

    def __init__(
        self,
        request: ClientRequest,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_file_lines: int = MAX_FILE_LINES,
    ):
        self.request = request
        self.timeout = timeout
        self.max_file_lines = max_file_lines

    async def retrieve(self, uri: str) -> str:
        try:
            result = await self.request(
                "textDocument/xcontent", {"textDocument": {"uri": uri}}, self.timeout
            )
        except ResponseError as e:
            raise ContentUnavailableError(f"Client cannot provide {uri}: {e.message}") from e
        except asyncio.TimeoutError as e:
            raise ContentUnavailableError(f"Client did not provide {uri} in time") from e
        except ConnectionError as e:
            raise ContentUnavailableError(f"Cannot request {uri}: {e}") from e

        text = result.get("text") if isinstance(result, dict) else None
        if not isinstance(text, str):
            raise ContentUnavailableError(f"textDocument/xcontent for {uri} has no text")

        line_count = text.count("\n") + 1
        if line_count > self.max_file_lines:
            raise ContentUnavailableError(
                f"{uri}: {line_count} lines exceeds limit ({self.max_file_lines})"
            )
        return text
