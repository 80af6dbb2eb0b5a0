# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Index progress events and the completeness signal.

Components:
- IndexEvents: broadcast events keyed by name. Every emit() releases all
  tasks currently waiting on that name; later waiters wait for the next emit.
- CompletenessSignal: the process-wide NOT_STARTED -> INDEXING -> COMPLETE
  state. Reaching COMPLETE also broadcasts the ``complete`` event.

Event names:
- DEFINITION_ADDED: raised after a repository update inserts new Definitions
- COMPLETE: raised once, when the initial indexing sweep has finished

Waiters must re-check their condition after waking: emits carry no payload.
"""

import asyncio
import logging
from typing import Dict, Optional

from codedb.models import IndexState

logger = logging.getLogger(__name__)

DEFINITION_ADDED = "definition-added"
COMPLETE = "complete"


class IndexEvents:
    """Named broadcast events for asyncio waiters.

    Thread Safety:
        emit() may be called from any thread; when an event loop is bound,
        emits from foreign threads are forwarded to it with
        ``call_soon_threadsafe``. wait() must run on the loop.
    """

    def __init__(self) -> None:
        self._events: Dict[str, asyncio.Event] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._emit_counts: Dict[str, int] = {}

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def emit(self, name: str) -> None:
        """Wake every task currently waiting on ``name``."""
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._emit_now, name)
                return
        self._emit_now(name)

    def _emit_now(self, name: str) -> None:
        self._emit_counts[name] = self._emit_counts.get(name, 0) + 1
        event = self._events.pop(name, None)
        if event is not None:
            event.set()

    def emit_count(self, name: str) -> int:
        return self._emit_counts.get(name, 0)

    async def wait(self, *names: str) -> str:
        """Suspend until any of the named events is emitted.

        Args:
            names: One or more event names.

        Returns:
            The name of an event that fired.
        """
        if not names:
            raise ValueError("wait() needs at least one event name")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        waiters = {}
        for name in names:
            event = self._events.get(name)
            if event is None:
                event = asyncio.Event()
                self._events[name] = event
            waiters[asyncio.ensure_future(event.wait())] = name

        try:
            done, _ = await asyncio.wait(waiters.keys(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
        return waiters[next(iter(done))]


class CompletenessSignal:
    """Monotonic tri-state signal for the initial indexing sweep.

    The Indexing Driver is the single authoritative writer.
    """

    def __init__(self, events: IndexEvents) -> None:
        self._events = events
        self._state = IndexState.NOT_STARTED

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_complete(self) -> bool:
        return self._state == IndexState.COMPLETE

    def transition(self, state: str) -> None:
        """Advance the signal.

        Raises:
            ValueError: On an unknown state or an attempt to regress.
        """
        if state not in IndexState.ORDER:
            raise ValueError(f"Unknown index state: {state}")
        current = IndexState.ORDER.index(self._state)
        target = IndexState.ORDER.index(state)
        if target < current:
            raise ValueError(f"Index state cannot regress from {self._state} to {state}")
        if target == current:
            return

        self._state = state
        logger.info(f"Index state: {state}")
        if state == IndexState.COMPLETE:
            self._events.emit(COMPLETE)
