# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Entry point for running the language server: python -m codedb"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from codedb.config import LOG_LEVELS, Config, ConfigurationError
from codedb.dispatcher import Dispatcher, StreamMessageReader, StreamMessageWriter
from codedb.language_server import LanguageServer
from codedb.logging_setup import setup_logging

logger = logging.getLogger(__name__)

# Upper bound on one protocol line (a full document text in didOpen/didChange)
STREAM_LIMIT = 64 * 1024 * 1024


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog="codedb",
        description="Cross-file symbol index language server (JSON-RPC over stdio)",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Project root used when the client sends none. Default: current directory",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file. Default: <project root>/.codedb.yml if present",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for JSON log files. Default: <root>/.codedb/logs",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=list(LOG_LEVELS),
        default=None,
        help="Logging level. Default: log_level from the configuration (INFO)",
    )
    return parser.parse_args(argv)


async def open_stdio() -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap stdin/stdout in asyncio streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def serve_stdio(root: Path, config: Optional[Config]) -> int:
    reader, writer = await open_stdio()
    dispatcher = Dispatcher(StreamMessageWriter(writer))
    server = LanguageServer(dispatcher, project_root=root, config=config)
    return await server.serve(StreamMessageReader(reader))


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point: configure logging and serve over stdio."""
    args = parse_args(argv)
    root = (args.root or Path.cwd()).resolve()

    try:
        config = Config(args.config, required=True) if args.config else None
    except ConfigurationError as e:
        print(f"codedb: {e}", file=sys.stderr)
        sys.exit(2)

    level_name = args.log_level or (config or Config.for_project(root)).log_level
    setup_logging(
        log_dir=args.log_dir or root / ".codedb" / "logs",
        log_level=getattr(logging, level_name),
    )
    logger.info(f"Starting codedb language server for {root}")

    exit_code = asyncio.run(serve_stdio(root, config))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
