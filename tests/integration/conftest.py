# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures for integration tests.

Provides a small multi-module Python project and an in-memory client
session driving the language server over line-delimited JSON-RPC.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from codedb.dispatcher import Dispatcher, StreamMessageReader, StreamMessageWriter
from codedb.language_server import LanguageServer


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """Create a representative Python project structure for integration testing.

    Creates a package with:
    - A relative import in __init__.py
    - A class with a field assigned in __init__ and a method
    - A second module importing and using the class

    Returns:
        Path to the project root directory
    """
    project_root = tmp_path / "sample_project"
    project_root.mkdir()
    (project_root / ".codedb.yml").write_text("watch_files: false\n")
    (project_root / "pyproject.toml").write_text('[project]\nname = "sample-project"\n')

    pkg_dir = project_root / "mypackage"
    pkg_dir.mkdir()

    (pkg_dir / "__init__.py").write_text("from .models import User\n")

    (pkg_dir / "models.py").write_text(
        '''"""Domain models."""


class User:
    """A registered user."""

    def __init__(self, name):
        self.name = name

    def greet(self):
        return f"Hello {self.name}"
'''
    )

    (pkg_dir / "service.py").write_text(
        """from mypackage.models import User


def register(name):
    user = User(name)
    return user.greet()
"""
    )

    return project_root


class _Transport:
    """Captures bytes written by the server."""

    def __init__(self) -> None:
        self.data = b""

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        pass


class ClientSession:
    """Test client talking to a LanguageServer through in-memory streams."""

    def __init__(self) -> None:
        self.stream = asyncio.StreamReader()
        self.transport = _Transport()
        self.server = LanguageServer(Dispatcher(StreamMessageWriter(self.transport)))
        self.serve_task: Optional["asyncio.Task[int]"] = None
        self._next_id = 0

    def start(self) -> None:
        self.serve_task = asyncio.create_task(
            self.server.serve(StreamMessageReader(self.stream))
        )

    def messages(self) -> List[Dict[str, Any]]:
        lines = self.transport.data.decode("utf-8").splitlines()
        return [json.loads(line) for line in lines if line]

    def send(self, message: Dict[str, Any]) -> None:
        self.stream.feed_data((json.dumps(message) + "\n").encode("utf-8"))

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self.send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def request(
        self, method: str, params: Optional[Dict[str, Any]] = None, timeout: float = 10.0
    ) -> Dict[str, Any]:
        """Send a request and return its response message."""
        self._next_id += 1
        request_id = self._next_id
        self.send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})

        async def response() -> Dict[str, Any]:
            while True:
                for message in self.messages():
                    if message.get("id") == request_id and "method" not in message:
                        return message
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(response(), timeout=timeout)

    def close_input(self) -> None:
        self.stream.feed_eof()

    async def exit_code(self, timeout: float = 10.0) -> int:
        assert self.serve_task is not None
        return await asyncio.wait_for(self.serve_task, timeout=timeout)


@pytest.fixture
def client_session():
    """Factory for ClientSession; call it inside a running event loop."""
    return ClientSession
