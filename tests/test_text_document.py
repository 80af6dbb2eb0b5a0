# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the textDocument/* handlers."""

import pytest
from lsprotocol import types

from codedb.content import (
    FileSystemContentRetriever,
    FileSystemFilesFinder,
    OpenDocumentRetriever,
    path_to_uri,
)
from codedb.definition_resolver import DefinitionResolver
from codedb.index_events import CompletenessSignal, IndexEvents
from codedb.indexer import IndexingDriver
from codedb.protocol import INVALID_PARAMS, ResponseError
from codedb.repository import Repository
from codedb.server.text_document import TextDocument
from codedb.syntax.python_provider import PythonSyntaxProvider

SHAPES = '''"""Shapes."""


class Shape:
    """Base shape."""

    def area(self):
        return 0


def make_shape():
    return Shape()
'''

APP = """from pkg.shapes import Shape, make_shape

shape = make_shape()
Shape.area(shape)
"""

CALC = """def total(items, factor):
    result = 0
    for item in items:
        result += item * factor
    return result


def other(result):
    return result
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "__init__.py").write_text("")
    (tmp_path / "pkg" / "shapes.py").write_text(SHAPES)
    (tmp_path / "pkg" / "app.py").write_text(APP)
    return tmp_path


async def build(root, completion_limit=200, repository=None, start=True):
    """Index the project and return handlers over it."""
    repository = repository if repository is not None else Repository(IndexEvents())
    signal = CompletenessSignal(repository.events)
    provider = PythonSyntaxProvider()
    documents = OpenDocumentRetriever(FileSystemContentRetriever())
    driver = IndexingDriver(
        root, repository, provider, FileSystemFilesFinder(root), documents, signal
    )
    handlers = TextDocument(
        repository=repository,
        resolver=DefinitionResolver(repository, signal),
        driver=driver,
        documents=documents,
        provider=provider,
        project_root=root,
        package_name="sample",
        completion_limit=completion_limit,
    )
    if start:
        driver.start()
        await driver.wait_until_complete()
    return handlers


def doc(root, name):
    return {"uri": path_to_uri(root / "pkg" / name)}


def pos(line, character):
    return {"line": line, "character": character}


class TestDocumentSymbol:
    """Tests for textDocument/documentSymbol."""

    @pytest.mark.asyncio
    async def test_symbols_of_file(self, project):
        handlers = await build(project)

        symbols = await handlers.document_symbol(doc(project, "shapes.py"))

        assert [(s.name, s.kind) for s in symbols] == [
            ("Shape", types.SymbolKind.Class),
            ("area", types.SymbolKind.Method),
            ("make_shape", types.SymbolKind.Function),
        ]
        assert symbols[1].container_name == "pkg.shapes.Shape"
        assert symbols[0].location.range.start.line == 3

    @pytest.mark.asyncio
    async def test_unknown_file_has_no_symbols(self, project):
        handlers = await build(project)

        assert await handlers.document_symbol(doc(project, "missing.py")) == []


class TestDefinition:
    """Tests for textDocument/definition and xdefinition."""

    @pytest.mark.asyncio
    async def test_cross_file_definition(self, project):
        handlers = await build(project)

        locations = await handlers.definition(doc(project, "app.py"), pos(3, 2))

        assert len(locations) == 1
        assert locations[0].uri == path_to_uri(project / "pkg" / "shapes.py")
        assert locations[0].range.start.line == 3

    @pytest.mark.asyncio
    async def test_attribute_definition(self, project):
        handlers = await build(project)

        locations = await handlers.definition(doc(project, "app.py"), pos(3, 7))

        assert locations[0].range.start.line == 6

    @pytest.mark.asyncio
    async def test_no_identifier_under_cursor(self, project):
        handlers = await build(project)

        assert await handlers.definition(doc(project, "app.py"), pos(1, 0)) == []

    @pytest.mark.asyncio
    async def test_unresolvable_name(self, project):
        (project / "pkg" / "other.py").write_text("print(undefined_thing)\n")
        handlers = await build(project)

        assert await handlers.definition(doc(project, "other.py"), pos(0, 8)) == []

    @pytest.mark.asyncio
    async def test_invalid_position(self, project):
        handlers = await build(project)

        with pytest.raises(ResponseError) as exc_info:
            await handlers.definition(doc(project, "app.py"), {"line": "x"})
        assert exc_info.value.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_xdefinition(self, project):
        handlers = await build(project)

        result = await handlers.xdefinition(doc(project, "app.py"), pos(3, 2))

        assert result[0]["symbol"] == {
            "fqn": "pkg.shapes.Shape",
            "kind": "class",
            "package": {"name": "sample"},
        }
        assert result[0]["location"]["uri"] == path_to_uri(project / "pkg" / "shapes.py")


class TestReferences:
    """Tests for textDocument/references."""

    @pytest.mark.asyncio
    async def test_references_across_files(self, project):
        handlers = await build(project)
        shapes = path_to_uri(project / "pkg" / "shapes.py")
        app = path_to_uri(project / "pkg" / "app.py")

        locations = await handlers.references(doc(project, "app.py"), pos(3, 2))

        found = sorted((loc.uri, loc.range.start.line) for loc in locations)
        assert found == sorted([(shapes, 11), (app, 0), (app, 3)])

    @pytest.mark.asyncio
    async def test_include_declaration(self, project):
        handlers = await build(project)
        shapes = path_to_uri(project / "pkg" / "shapes.py")

        locations = await handlers.references(
            doc(project, "shapes.py"), pos(3, 7), {"includeDeclaration": True}
        )

        assert (locations[0].uri, locations[0].range.start.line) == (shapes, 3)
        assert len(locations) == 4

    @pytest.mark.asyncio
    async def test_local_variable(self, project):
        (project / "pkg" / "calc.py").write_text(CALC)
        handlers = await build(project)

        locations = await handlers.references(doc(project, "calc.py"), pos(4, 12))

        found = [(loc.range.start.line, loc.range.start.character) for loc in locations]
        assert found == [(3, 8), (4, 11)]
        assert {loc.uri for loc in locations} == {path_to_uri(project / "pkg" / "calc.py")}

    @pytest.mark.asyncio
    async def test_local_variable_with_declaration(self, project):
        (project / "pkg" / "calc.py").write_text(CALC)
        handlers = await build(project)

        locations = await handlers.references(
            doc(project, "calc.py"), pos(3, 9), {"includeDeclaration": True}
        )

        found = [(loc.range.start.line, loc.range.start.character) for loc in locations]
        # The parameter of the same name in other() is a different local
        assert found == [(1, 4), (3, 8), (4, 11)]

    @pytest.mark.asyncio
    async def test_parameter(self, project):
        (project / "pkg" / "calc.py").write_text(CALC)
        handlers = await build(project)

        locations = await handlers.references(
            doc(project, "calc.py"), pos(0, 18), {"includeDeclaration": True}
        )

        found = [(loc.range.start.line, loc.range.start.character) for loc in locations]
        assert found == [(0, 17), (3, 25)]

    @pytest.mark.asyncio
    async def test_unbound_name_has_no_references(self, project):
        (project / "pkg" / "calc.py").write_text("def f():\n    return undefined_thing\n")
        handlers = await build(project)

        assert await handlers.references(doc(project, "calc.py"), pos(1, 12)) == []


class TestRestoredSnapshot:
    """Tests for answers served from a restored index."""

    @pytest.mark.asyncio
    async def test_definition_rechecks_moved_declaration(self, project):
        handlers = await build(project)
        snapshot = handlers.repository.snapshot()
        shapes = project / "pkg" / "shapes.py"
        shapes.write_text("\n\n\n\n" + SHAPES)

        restored = await build(
            project, repository=Repository.restore(snapshot, IndexEvents()), start=False
        )
        assert restored.driver.is_unverified(path_to_uri(shapes))

        locations = await restored.definition(doc(project, "app.py"), pos(3, 2))

        assert locations[0].range.start.line == 7
        assert not restored.driver.is_unverified(path_to_uri(shapes))

    @pytest.mark.asyncio
    async def test_xdefinition_rechecks_moved_declaration(self, project):
        handlers = await build(project)
        snapshot = handlers.repository.snapshot()
        (project / "pkg" / "shapes.py").write_text("\n\n" + SHAPES)

        restored = await build(
            project, repository=Repository.restore(snapshot, IndexEvents()), start=False
        )
        result = await restored.xdefinition(doc(project, "app.py"), pos(3, 2))

        assert result[0]["location"]["range"]["start"]["line"] == 5

    @pytest.mark.asyncio
    async def test_unchanged_file_keeps_location(self, project):
        handlers = await build(project)
        snapshot = handlers.repository.snapshot()

        restored = await build(
            project, repository=Repository.restore(snapshot, IndexEvents()), start=False
        )
        hover = await restored.hover(doc(project, "app.py"), pos(3, 2))
        locations = await restored.definition(doc(project, "app.py"), pos(3, 2))

        assert "class Shape" in hover.contents.value
        assert locations[0].range.start.line == 3
        assert restored.driver.stats["unchanged"] == 1


class TestHover:
    """Tests for textDocument/hover."""

    @pytest.mark.asyncio
    async def test_hover_class(self, project):
        handlers = await build(project)

        hover = await handlers.hover(doc(project, "app.py"), pos(3, 2))

        assert hover.contents.value == "```python\nclass Shape\n```\n\nBase shape."
        assert hover.range.start.line == 3
        assert hover.range.end.character == 5

    @pytest.mark.asyncio
    async def test_hover_function(self, project):
        handlers = await build(project)

        hover = await handlers.hover(doc(project, "app.py"), pos(2, 10))

        assert hover.contents.value == "```python\ndef make_shape()\n```"

    @pytest.mark.asyncio
    async def test_hover_nothing(self, project):
        handlers = await build(project)

        assert await handlers.hover(doc(project, "app.py"), pos(1, 0)) is None


class TestCompletion:
    """Tests for textDocument/completion."""

    @pytest.mark.asyncio
    async def test_member_completion(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "app.py")
        await handlers.did_open(
            {
                "uri": uri,
                "languageId": "python",
                "version": 1,
                "text": "from pkg.shapes import Shape\n\nShape.ar",
            }
        )

        result = await handlers.completion({"uri": uri}, pos(2, 8))

        assert [item.label for item in result.items] == ["area"]
        assert result.items[0].kind == types.CompletionItemKind.Method
        assert result.is_incomplete is False

    @pytest.mark.asyncio
    async def test_module_member_completion(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "app.py")
        await handlers.did_open(
            {"uri": uri, "languageId": "python", "version": 1, "text": "pkg.shapes.ma"}
        )

        result = await handlers.completion({"uri": uri}, pos(0, 13))

        assert [item.label for item in result.items] == ["make_shape"]

    @pytest.mark.asyncio
    async def test_prefix_completion(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "app.py")
        await handlers.did_open(
            {"uri": uri, "languageId": "python", "version": 1, "text": "x = 1\nmake"}
        )

        result = await handlers.completion({"uri": uri}, pos(1, 4))

        assert [item.label for item in result.items] == ["make_shape"]

    @pytest.mark.asyncio
    async def test_unknown_qualifier(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "app.py")
        await handlers.did_open(
            {"uri": uri, "languageId": "python", "version": 1, "text": "nothing.x"}
        )

        result = await handlers.completion({"uri": uri}, pos(0, 9))

        assert result.items == []

    @pytest.mark.asyncio
    async def test_limit_marks_incomplete(self, project):
        handlers = await build(project, completion_limit=2)

        result = await handlers.completion(doc(project, "app.py"), pos(1, 0))

        assert len(result.items) == 2
        assert result.is_incomplete is True


class TestDocumentSync:
    """Tests for didOpen / didChange / didClose."""

    @pytest.mark.asyncio
    async def test_edits_reindex_and_close_reverts(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "shapes.py")
        repository = handlers.repository

        await handlers.did_open({"uri": uri, "languageId": "python", "version": 1, "text": SHAPES})
        await handlers.did_change(
            {"uri": uri, "version": 2},
            [{"text": SHAPES.replace("class Shape", "class Polygon")}],
        )

        assert repository.get_definition("pkg.shapes.Polygon") is not None
        assert repository.get_definition("pkg.shapes.Shape") is None

        await handlers.did_close({"uri": uri})

        assert repository.get_definition("pkg.shapes.Shape") is not None
        assert repository.get_definition("pkg.shapes.Polygon") is None

    @pytest.mark.asyncio
    async def test_unsaved_document_is_indexed(self, project):
        handlers = await build(project)
        uri = path_to_uri(project / "pkg" / "draft.py")

        await handlers.did_open(
            {"uri": uri, "languageId": "python", "version": 1, "text": "DRAFT = 1\n"}
        )
        assert handlers.repository.get_definition("pkg.draft.DRAFT") is not None

        await handlers.did_close({"uri": uri})
        assert handlers.repository.get_definition("pkg.draft.DRAFT") is None

    @pytest.mark.asyncio
    async def test_change_without_text(self, project):
        handlers = await build(project)

        with pytest.raises(ResponseError) as exc_info:
            await handlers.did_change(
                {"uri": path_to_uri(project / "pkg" / "app.py"), "version": 2}, [{"range": None}]
            )
        assert exc_info.value.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_change_without_changes(self, project):
        handlers = await build(project)

        with pytest.raises(ResponseError):
            await handlers.did_change(
                {"uri": path_to_uri(project / "pkg" / "app.py"), "version": 2}, []
            )
