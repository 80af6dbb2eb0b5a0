# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the language server lifecycle."""

import asyncio
import json

import pytest

from codedb.client import ClientContentRetriever, ClientFilesFinder
from codedb.config import Config
from codedb.content import path_to_uri
from codedb.dispatcher import Dispatcher
from codedb.language_server import LanguageServer, read_package_name
from codedb.models import IndexState
from codedb.protocol import INVALID_REQUEST, SERVER_NOT_INITIALIZED


class CollectingWriter:
    def __init__(self):
        self.messages = []

    async def write(self, message):
        self.messages.append(message)

    def response(self, request_id):
        for message in self.messages:
            if message.get("id") == request_id and "method" not in message:
                return message
        return None


class AnsweringWriter(CollectingWriter):
    """Also answers the server's xfiles/xcontent requests from memory."""

    def __init__(self, files):
        super().__init__()
        self.files = files
        self.dispatcher = None

    async def write(self, message):
        self.messages.append(message)
        if "method" in message and "id" in message:
            asyncio.get_running_loop().call_soon(self._answer, message)

    def _answer(self, message):
        reply = {"jsonrpc": "2.0", "id": message["id"]}
        if message["method"] == "workspace/xfiles":
            reply["result"] = [{"uri": uri} for uri in self.files]
        else:
            uri = message["params"]["textDocument"]["uri"]
            if uri in self.files:
                reply["result"] = {
                    "uri": uri,
                    "languageId": "python",
                    "version": 0,
                    "text": self.files[uri],
                }
            else:
                reply["error"] = {"code": -32603, "message": f"Unknown document {uri}"}
        self.dispatcher.dispatch(reply)


class ScriptedReader:
    """Sends each line once the response to the previous request arrived."""

    def __init__(self, writer, steps):
        self.writer = writer
        self.steps = list(steps)
        self.awaiting = None

    async def read(self):
        if self.awaiting is not None:
            while self.writer.response(self.awaiting) is None:
                await asyncio.sleep(0.01)
            self.awaiting = None
        if not self.steps:
            return None
        message = self.steps.pop(0)
        self.awaiting = message.get("id")
        return json.dumps(message)


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".codedb.yml").write_text("watch_files: false\n")
    (tmp_path / "pyproject.toml").write_text('[project]\nname = "shapes-lib"\n')
    (tmp_path / "shapes.py").write_text("class Shape:\n    pass\n")
    (tmp_path / "app.py").write_text("from shapes import Shape\n\nShape()\n")
    return tmp_path


def request(request_id, method, params=None):
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}


class TestReadPackageName:
    """Tests for read_package_name."""

    def test_project_table(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[project]\nname = "mylib"\n')

        assert read_package_name(tmp_path) == "mylib"

    def test_poetry_table(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[tool.poetry]\nname = "poetic"\n')

        assert read_package_name(tmp_path) == "poetic"

    def test_fallback_to_directory_name(self, tmp_path):
        assert read_package_name(tmp_path) == tmp_path.name

        (tmp_path / "pyproject.toml").write_text("[project\n")
        assert read_package_name(tmp_path) == tmp_path.name


class TestBeforeInitialize:
    """Tests for messages received before initialize."""

    @pytest.mark.asyncio
    async def test_requests_are_rejected(self, project):
        writer = CollectingWriter()
        dispatcher = Dispatcher(writer)
        LanguageServer(dispatcher, project)

        await dispatcher.dispatch(
            request(1, "textDocument/definition", {"textDocument": {"uri": "x"}})
        )

        assert writer.messages[0]["error"]["code"] == SERVER_NOT_INITIALIZED

    @pytest.mark.asyncio
    async def test_notifications_are_dropped(self, project):
        writer = CollectingWriter()
        dispatcher = Dispatcher(writer)
        LanguageServer(dispatcher, project)

        await dispatcher.dispatch(
            {"jsonrpc": "2.0", "method": "textDocument/didClose", "params": {}}
        )

        assert writer.messages == []


class TestInitialize:
    """Tests for initialize / shutdown / exit."""

    @pytest.mark.asyncio
    async def test_initialize_advertises_capabilities(self, project):
        writer = CollectingWriter()
        dispatcher = Dispatcher(writer)
        server = LanguageServer(dispatcher)
        try:
            await dispatcher.dispatch(request(1, "initialize", {"rootUri": path_to_uri(project)}))
            result = writer.response(1)["result"]

            capabilities = result["capabilities"]
            assert capabilities["textDocumentSync"] == 1
            assert capabilities["definitionProvider"] is True
            assert capabilities["referencesProvider"] is True
            assert capabilities["hoverProvider"] is True
            assert capabilities["documentSymbolProvider"] is True
            assert capabilities["completionProvider"]["triggerCharacters"] == ["."]
            assert capabilities["experimental"] == {"xdefinitionProvider": True}
            assert result["serverInfo"]["name"] == "codedb"
            assert server.project_root == project.resolve()
            assert server.config.watch_files is False
            assert server.text_document.package_name == "shapes-lib"
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_initialize_twice(self, project):
        writer = CollectingWriter()
        dispatcher = Dispatcher(writer)
        server = LanguageServer(dispatcher)
        try:
            await dispatcher.dispatch(request(1, "initialize", {"rootUri": path_to_uri(project)}))
            await dispatcher.dispatch(request(2, "initialize", {"rootUri": path_to_uri(project)}))

            assert writer.response(2)["error"]["code"] == INVALID_REQUEST
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_root_from_workspace_folders_and_fallback(self, project):
        server = LanguageServer(Dispatcher(CollectingWriter()), project_root=project)
        try:
            await server.initialize(workspaceFolders=[{"uri": path_to_uri(project), "name": "p"}])
            assert server.project_root == project.resolve()
        finally:
            await server.close()

        server = LanguageServer(Dispatcher(CollectingWriter()), project_root=project)
        try:
            await server.initialize()
            assert server.project_root == project.resolve()
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_requests_served_after_initialize(self, project):
        writer = CollectingWriter()
        dispatcher = Dispatcher(writer)
        server = LanguageServer(dispatcher)
        try:
            await dispatcher.dispatch(request(1, "initialize", {"rootUri": path_to_uri(project)}))
            await dispatcher.dispatch(
                request(
                    2,
                    "textDocument/definition",
                    {
                        "textDocument": {"uri": path_to_uri(project / "app.py")},
                        "position": {"line": 2, "character": 1},
                    },
                )
            )

            locations = writer.response(2)["result"]
            assert locations[0]["uri"] == path_to_uri(project / "shapes.py")
            assert locations[0]["range"]["start"] == {"line": 0, "character": 0}
            await server.driver.wait_until_complete()
            assert server.get_statistics()["state"] == IndexState.COMPLETE
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_client_provides_files_and_content(self, tmp_path):
        # The workspace only exists on the client side
        root = tmp_path / "remote"
        shapes = path_to_uri(root / "shapes.py")
        app = path_to_uri(root / "app.py")
        writer = AnsweringWriter(
            {
                shapes: "class Shape:\n    pass\n",
                app: "from shapes import Shape\n\nShape()\n",
            }
        )
        dispatcher = Dispatcher(writer)
        writer.dispatcher = dispatcher
        server = LanguageServer(dispatcher)
        try:
            await dispatcher.dispatch(
                request(
                    1,
                    "initialize",
                    {
                        "rootUri": path_to_uri(root),
                        "capabilities": {"xfilesProvider": True, "xcontentProvider": True},
                    },
                )
            )
            await server.driver.wait_until_complete()

            assert isinstance(server.driver.files_finder, ClientFilesFinder)
            assert isinstance(server.text_document.documents.fallback, ClientContentRetriever)
            assert server.watcher is None
            assert len(server.repository) == 2

            await dispatcher.dispatch(
                request(
                    2,
                    "textDocument/definition",
                    {"textDocument": {"uri": app}, "position": {"line": 2, "character": 1}},
                )
            )
            assert writer.response(2)["result"][0]["uri"] == shapes
            requested = [m["method"] for m in writer.messages if "method" in m and "id" in m]
            assert requested.count("workspace/xfiles") == 1
            assert "textDocument/xcontent" in requested
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_shutdown_writes_snapshot_and_restart_restores_it(self, project):
        server = LanguageServer(Dispatcher(CollectingWriter()))
        await server.initialize(rootUri=path_to_uri(project))
        await server.driver.wait_until_complete()
        await server.shutdown()
        server.exit()
        await server.close()

        assert server.exit_code == 0
        assert (project / ".codedb" / "index.json").exists()

        restarted = LanguageServer(Dispatcher(CollectingWriter()))
        try:
            await restarted.initialize(rootUri=path_to_uri(project))
            assert len(restarted.repository) == 2
            assert restarted.driver.unverified_uris == {
                path_to_uri(project / "app.py"),
                path_to_uri(project / "shapes.py"),
            }
        finally:
            await restarted.close()

    @pytest.mark.asyncio
    async def test_snapshot_disabled(self, tmp_path):
        (tmp_path / "mod.py").write_text("X = 1\n")
        config_path = tmp_path / "custom.yml"
        config_path.write_text("enable_snapshot: false\nwatch_files: false\n")
        server = LanguageServer(Dispatcher(CollectingWriter()), config=Config(config_path))

        await server.initialize(rootUri=path_to_uri(tmp_path))
        await server.driver.wait_until_complete()
        await server.shutdown()
        await server.close()

        assert not (tmp_path / ".codedb").exists()

    @pytest.mark.asyncio
    async def test_exit_without_shutdown(self, project):
        server = LanguageServer(Dispatcher(CollectingWriter()))

        server.exit()

        assert server.exit_code == 1


class TestServe:
    """Tests for serving a whole session."""

    @pytest.mark.asyncio
    async def test_orderly_session(self, project):
        writer = CollectingWriter()
        server = LanguageServer(Dispatcher(writer))
        reader = ScriptedReader(
            writer,
            [
                request(1, "initialize", {"rootUri": path_to_uri(project)}),
                {"jsonrpc": "2.0", "method": "initialized", "params": {}},
                request(2, "shutdown"),
                {"jsonrpc": "2.0", "method": "exit"},
            ],
        )

        code = await asyncio.wait_for(server.serve(reader), timeout=10.0)

        assert code == 0
        assert writer.response(2) == {"jsonrpc": "2.0", "id": 2, "result": None}

    @pytest.mark.asyncio
    async def test_end_of_input_shuts_down(self, project):
        writer = CollectingWriter()
        server = LanguageServer(Dispatcher(writer))
        reader = ScriptedReader(
            writer, [request(1, "initialize", {"rootUri": path_to_uri(project)})]
        )

        code = await asyncio.wait_for(server.serve(reader), timeout=10.0)

        assert code == 0
        assert server.shutdown_requested
        assert (project / ".codedb" / "index.json").exists()
