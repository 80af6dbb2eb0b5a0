# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""JSON-RPC dispatcher and line-delimited transport.

Each inbound line goes through Received -> Classified -> Dispatched ->
Responded (requests only):

1. Classification: objects without ``method`` are responses; they settle
   the matching request issued with request() and are otherwise ignored.
   Objects with an ``id`` are requests, everything else is a notification.
   Envelopes are validated with the ``mcp.types`` JSON-RPC models.
2. Dispatch: the handler bound to the method runs as its own asyncio task,
   so the read loop never waits for a handler and many requests can be in
   flight at once. No ordering between tasks is promised.
3. Response: a result, the code of a raised ResponseError, or INTERNAL_ERROR
   for anything unexpected. Notifications never get a response; their
   failures go to the crash handler.

Transport end-of-file fails requests still awaiting a client response, then
triggers the orderly-shutdown callback.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from mcp.types import ErrorData, JSONRPCNotification, JSONRPCRequest
from pydantic import ValidationError

from codedb.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ResponseError,
    unstructure,
)

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]
CrashHandler = Callable[[str, BaseException], None]
RequestId = Union[str, int, None]


class StreamMessageReader:
    """Reads one JSON-RPC message per line from an asyncio stream."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader

    async def read(self) -> Optional[str]:
        """Return the next non-blank line, or None at end of stream."""
        while True:
            try:
                line = await self.reader.readline()
            except (ConnectionError, asyncio.IncompleteReadError) as e:
                logger.error(f"Transport read failed: {e}")
                return None
            except ValueError as e:
                # Line longer than the stream limit; framing is lost
                logger.error(f"Transport framing lost: {e}")
                return None
            if not line:
                return None
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                return text


class StreamMessageWriter:
    """Writes one JSON-RPC message per line; writes never interleave."""

    def __init__(self, writer: Any):
        """Initialize writer.

        Args:
            writer: asyncio.StreamWriter (or any object with write() and
                async drain()).
        """
        self.writer = writer
        self._lock = asyncio.Lock()

    async def write(self, message: Dict[str, Any]) -> None:
        data = (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")
        async with self._lock:
            self.writer.write(data)
            await self.writer.drain()


def _default_crash_handler(method: str, error: BaseException) -> None:
    logger.critical(f"Notification handler for {method} failed: {error}", exc_info=error)


class Dispatcher:
    """Routes JSON-RPC messages to handlers registered by method name."""

    def __init__(
        self,
        writer: StreamMessageWriter,
        crash_handler: Optional[CrashHandler] = None,
    ):
        """Initialize dispatcher.

        Args:
            writer: Transport writer for responses and notifications.
            crash_handler: Called with (method, error) when a notification
                handler fails. Defaults to a critical log entry.
        """
        self.writer = writer
        self.crash_handler = crash_handler or _default_crash_handler
        self._handlers: Dict[str, Handler] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Server-to-client requests awaiting their response, by id
        self._outstanding: Dict[int, "asyncio.Future[Any]"] = {}
        self._next_request_id = 0

    def register(self, method: str, handler: Handler) -> None:
        """Bind a handler (sync or async callable) to a method name.

        JSON-RPC ``params`` are passed as keyword arguments matched by name;
        params the handler does not declare are dropped.
        """
        self._handlers[method] = handler

    @property
    def methods(self) -> Set[str]:
        return set(self._handlers)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # -- inbound ----------------------------------------------------------

    async def run(
        self,
        reader: StreamMessageReader,
        on_eof: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        """Read and dispatch messages until the transport closes."""
        self._loop = asyncio.get_running_loop()
        while True:
            line = await reader.read()
            if line is None:
                break
            self.dispatch_line(line)

        logger.info("Transport closed")
        self._fail_outstanding(ConnectionError("Transport closed"))
        if on_eof is not None:
            await on_eof()

    def dispatch_line(self, line: str) -> Optional["asyncio.Task[Any]"]:
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Malformed message: {e}")
            return self._spawn(self._send_error(None, ErrorData(code=PARSE_ERROR, message=str(e))))
        return self.dispatch(message)

    def dispatch(self, message: Any) -> Optional["asyncio.Task[Any]"]:
        """Classify one decoded message and start its handler task.

        Returns:
            The task handling the message, or None if nothing was scheduled.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        if not isinstance(message, dict):
            return self._spawn(
                self._send_error(
                    None, ErrorData(code=INVALID_REQUEST, message="Message must be an object")
                )
            )

        if "method" not in message:
            if "id" in message and ("result" in message or "error" in message):
                self._settle(message)
                return None
            return self._spawn(
                self._send_error(
                    self._safe_id(message.get("id")),
                    ErrorData(code=INVALID_REQUEST, message="Message has no method"),
                )
            )

        message.setdefault("jsonrpc", "2.0")
        is_request = "id" in message
        try:
            if is_request:
                envelope: Union[JSONRPCRequest, JSONRPCNotification] = (
                    JSONRPCRequest.model_validate(message)
                )
            else:
                envelope = JSONRPCNotification.model_validate(message)
        except ValidationError as e:
            if not is_request:
                logger.warning(f"Dropping invalid notification {message.get('method')!r}: {e}")
                return None
            return self._spawn(
                self._send_error(
                    self._safe_id(message.get("id")),
                    ErrorData(code=INVALID_REQUEST, message=f"Invalid request: {e}"),
                )
            )

        request_id = envelope.id if isinstance(envelope, JSONRPCRequest) else None
        return self._spawn(
            self._handle(envelope.method, envelope.params or {}, request_id, is_request)
        )

    @staticmethod
    def _safe_id(value: Any) -> RequestId:
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return value
        return None

    async def _handle(
        self, method: str, params: Dict[str, Any], request_id: RequestId, is_request: bool
    ) -> None:
        handler = self._handlers.get(method)
        if handler is None:
            if is_request:
                await self._send_error(
                    request_id,
                    ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {method}"),
                )
            else:
                logger.debug(f"No handler for notification {method}")
            return

        try:
            result = await self._invoke(handler, params)
        except asyncio.CancelledError:
            raise
        except ResponseError as e:
            if is_request:
                await self._send_error(request_id, e.to_error_data())
            else:
                self.crash_handler(method, e)
        except Exception as e:
            if is_request:
                logger.error(f"Request {method} failed: {e}", exc_info=True)
                await self._send_error(
                    request_id, ErrorData(code=INTERNAL_ERROR, message=f"{type(e).__name__}: {e}")
                )
            else:
                self.crash_handler(method, e)
        else:
            if is_request:
                await self._send(
                    {"jsonrpc": "2.0", "id": request_id, "result": unstructure(result)}
                )

    @staticmethod
    async def _invoke(handler: Handler, params: Dict[str, Any]) -> Any:
        """Call a handler with params bound by name.

        Raises:
            ResponseError: INVALID_PARAMS if required params are missing.
        """
        signature = inspect.signature(handler)
        takes_kwargs = any(
            p.kind is inspect.Parameter.VAR_KEYWORD for p in signature.parameters.values()
        )
        if takes_kwargs:
            kwargs = dict(params)
        else:
            kwargs = {k: v for k, v in params.items() if k in signature.parameters}
        try:
            bound = signature.bind(**kwargs)
        except TypeError as e:
            raise ResponseError(INVALID_PARAMS, str(e)) from e

        result = handler(*bound.args, **bound.kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    # -- outbound ---------------------------------------------------------

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            await self.writer.write(message)
        except (ConnectionError, OSError) as e:
            logger.error(f"Transport write failed: {e}")

    async def _send_error(self, request_id: RequestId, error: ErrorData) -> None:
        await self._send(
            {"jsonrpc": "2.0", "id": request_id, "error": error.model_dump(exclude_none=True)}
        )

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification to the client. Safe to call from any thread."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = unstructure(params)

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(self._send(message))
        else:
            asyncio.run_coroutine_threadsafe(self._send(message), loop)

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request to the client and wait for its result.

        Raises:
            ResponseError: If the client answers with an error.
            ConnectionError: If the transport fails or closes first.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        self._next_request_id += 1
        request_id = self._next_request_id
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = unstructure(params)

        future: "asyncio.Future[Any]" = loop.create_future()
        self._outstanding[request_id] = future
        try:
            await self.writer.write(message)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._outstanding.pop(request_id, None)

    def _settle(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        future = self._outstanding.get(request_id) if isinstance(request_id, int) else None
        if future is None or future.done():
            logger.debug(f"Ignoring response to unknown request {request_id!r}")
            return
        error = message.get("error")
        if error is None:
            future.set_result(message.get("result"))
            return
        if not isinstance(error, dict):
            error = {}
        future.set_exception(
            ResponseError(
                error.get("code", INTERNAL_ERROR),
                str(error.get("message", "Client request failed")),
                error.get("data"),
            )
        )

    def _fail_outstanding(self, error: BaseException) -> None:
        for future in self._outstanding.values():
            if not future.done():
                future.set_exception(error)

    # -- tasks ------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every in-flight handler task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        for future in self._outstanding.values():
            future.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
