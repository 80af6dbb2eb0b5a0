# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Structured logging setup for codedb.

stdout carries the protocol stream, so human-readable console output goes
to stderr. Records can additionally be forwarded to the editor as
``window/logMessage`` notifications through ClientLogHandler.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

NotifyCallback = Callable[[str, Dict[str, Any]], None]

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
CONSOLE_DATE_FORMAT = "%H:%M:%S"

# window/logMessage MessageType: Error=1, Warning=2, Info=3, Log=4
_MESSAGE_TYPES = {
    logging.CRITICAL: 1,
    logging.ERROR: 1,
    logging.WARNING: 2,
    logging.INFO: 3,
    logging.DEBUG: 4,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StructuredFormatter(logging.Formatter):
    """Renders each record as a single JSON object per line.

    Callers can attach an ``extra_fields`` dict (via ``extra=``) whose keys
    are merged into the entry, e.g. the URI of the file being indexed.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = dict(
            timestamp=_utc_now().isoformat().replace("+00:00", "Z"),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(entry, default=str)


class ClientLogHandler(logging.Handler):
    """Forwards log records to the client as ``window/logMessage``."""

    def __init__(self, notify: NotifyCallback, level: int = logging.WARNING):
        super().__init__(level)
        self.notify = notify
        self.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        # Records produced while sending would recurse back into this handler
        if record.name.startswith("codedb.dispatcher"):
            return
        try:
            params = {
                "type": _MESSAGE_TYPES.get(record.levelno, 4),
                "message": self.format(record),
            }
            self.notify("window/logMessage", params)
        except Exception:
            self.handleError(record)


def _json_file_handler(log_dir: Path, level: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / "codedb_{}.log".format(_utc_now().strftime("%Y%m%d"))
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter())
    return handler


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))
    return handler


def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: int = logging.INFO,
    console_output: bool = True,
) -> None:
    """Configure the root logger for a server process.

    Replaces any handlers already installed on the root logger with a
    JSON-lines file handler writing ``codedb_YYYYMMDD.log`` and, unless
    disabled, a plain-text handler on stderr.

    Args:
        log_dir: Where log files go. Defaults to ``.codedb/logs`` under the
            current directory.
        log_level: Threshold applied to the root logger and both handlers.
        console_output: Also echo records to stderr.
    """
    target = log_dir if log_dir is not None else Path.cwd() / ".codedb" / "logs"

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)

    root.addHandler(_json_file_handler(target, log_level))
    if console_output:
        root.addHandler(_stderr_handler(log_level))

    logging.getLogger(__name__).info(f"Writing logs to {target}")


def attach_client_handler(notify: NotifyCallback, level: int = logging.WARNING) -> ClientLogHandler:
    """Install a ClientLogHandler on the ``codedb`` logger."""
    handler = ClientLogHandler(notify, level)
    logging.getLogger("codedb").addHandler(handler)
    return handler


def detach_client_handler(handler: ClientLogHandler) -> None:
    logging.getLogger("codedb").removeHandler(handler)
