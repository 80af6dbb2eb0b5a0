# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the tolerant Python syntax provider and tree helpers."""

import time

import pytest

from codedb.models import Position
from codedb.syntax.nodes import NodeKind, node_at, scope_at
from codedb.syntax.python_provider import ParseTimeoutError, PythonSyntaxProvider


def parse(source, module_name="pkg.mod", is_package=False):
    provider = PythonSyntaxProvider()
    return provider.parse("file:///p/pkg/mod.py", source, module_name, is_package)


def kinds(node):
    return [child.kind for child in node.children]


class TestTreeBuilding:
    """Tests for converting Python source into SyntaxNode trees."""

    def test_module_root(self):
        result = parse('"""Module doc."""\nX = 1\n')

        assert result.tree.kind is NodeKind.MODULE
        assert result.tree.module == "pkg.mod"
        assert result.tree.documentation == "Module doc."
        assert not result.is_partial

    def test_class_with_method_and_field(self):
        source = (
            "class Foo(Base):\n"
            '    """Foo doc."""\n'
            "    limit = 3\n"
            "\n"
            "    def run(self, x):\n"
            "        return x\n"
        )
        result = parse(source)

        cls = result.tree.children[0]
        assert cls.kind is NodeKind.CLASS
        assert cls.name == "Foo"
        assert cls.signature == "class Foo(Base)"
        assert cls.documentation == "Foo doc."
        assert cls.name_range.start == Position(0, 6)
        assert cls.name_range.end == Position(0, 9)

        base = cls.children[0]
        assert base.kind is NodeKind.NAME
        assert base.name == "Base"
        assert base.header

        field = next(c for c in cls.children if c.kind is NodeKind.VARIABLE)
        assert field.name == "limit"

        method = next(c for c in cls.children if c.kind is NodeKind.FUNCTION)
        assert method.name == "run"
        assert method.signature == "def run(self, x)"
        params = [c.name for c in method.children if c.kind is NodeKind.PARAMETER]
        assert params == ["self", "x"]

    def test_async_function_signature(self):
        result = parse("async def fetch(url: str) -> bytes:\n    pass\n")

        func = result.tree.children[0]
        assert func.signature == "async def fetch(url: str) -> bytes"
        assert func.name_range.start == Position(0, 10)

    def test_imports(self):
        source = "import os.path\nimport numpy as np\nfrom .sibling import helper as h\n"
        result = parse(source)

        imports = [c for c in result.tree.children if c.kind is NodeKind.IMPORT]
        assert len(imports) == 3
        assert imports[0].module == "os.path"
        assert imports[0].bound_name == "os"
        assert imports[1].bound_name == "np"
        assert imports[2].module == "sibling"
        assert imports[2].imported_name == "helper"
        assert imports[2].level == 1
        assert imports[2].bound_name == "h"

    def test_wildcard_import_skipped(self):
        result = parse("from os import *\n")

        assert result.tree.children == []

    def test_function_locals_are_names(self):
        result = parse("def f():\n    y = 1\n    return y\n")

        func = result.tree.children[0]
        assert NodeKind.VARIABLE not in kinds(func)
        stores = [c for c in func.children if c.kind is NodeKind.NAME and c.is_store]
        assert [c.name for c in stores] == ["y"]

    def test_tuple_assignment_declares_each_name(self):
        result = parse("a, (b, *c) = values\n")

        names = [c.name for c in result.tree.children if c.kind is NodeKind.VARIABLE]
        assert names == ["a", "b", "c"]

    def test_attribute_base_link(self):
        result = parse("import os\nos.path.join\n")

        attribute = [n for n in result.tree.walk() if n.kind is NodeKind.ATTRIBUTE][0]
        assert attribute.name == "join"
        assert attribute.base.kind is NodeKind.ATTRIBUTE
        assert attribute.base.base.name == "os"
        assert attribute.name_range.start == Position(1, 8)

    def test_lambda_is_anonymous_scope(self):
        result = parse("f = lambda x: x\n")

        scope = [n for n in result.tree.walk() if n.kind is NodeKind.FUNCTION][0]
        assert scope.name is None
        assert [c.name for c in scope.children if c.kind is NodeKind.PARAMETER] == ["x"]

    def test_non_ascii_columns_are_characters(self):
        result = parse('s = "héllo"; value = s\n')

        value = [n for n in result.tree.walk() if n.name == "value"][0]
        assert value.name_range.start == Position(0, 13)


class TestErrorRecovery:
    """Tests for best-effort parsing of malformed input."""

    def test_broken_line_is_neutralized(self):
        source = "def ok():\n    pass\n\nx = = 1\n\nclass After:\n    pass\n"
        result = parse(source)

        assert result.is_partial
        assert result.errors[0].line == 3
        names = [c.name for c in result.tree.children]
        assert "ok" in names
        assert "After" in names

    def test_broken_block_opener(self):
        source = "if x ==:\n    y = 1\n\ndef fine():\n    pass\n"
        result = parse(source)

        assert result.is_partial
        assert "fine" in [c.name for c in result.tree.children]

    def test_unrecoverable_source_yields_empty_module(self):
        provider = PythonSyntaxProvider(max_recovery_attempts=0)

        result = provider.parse("file:///p/x.py", "x = = 1\n", "x")

        assert result.tree.kind is NodeKind.MODULE
        assert result.tree.children == []
        assert result.is_partial

    def test_null_bytes_do_not_raise(self):
        result = parse("x = 1\x00\n")

        assert result.tree.kind is NodeKind.MODULE

    def test_depth_limit_skips_subtree(self):
        provider = PythonSyntaxProvider(max_depth=3)
        source = "def a():\n    def b():\n        def c():\n            def d():\n                pass\n"

        result = provider.parse("file:///p/x.py", source, "x")

        names = [n.name for n in result.tree.walk() if n.kind is NodeKind.FUNCTION]
        assert "a" in names
        assert "d" not in names


class TestLookups:
    """Tests for cursor lookups over the tree."""

    def test_node_at_prefers_innermost_identifier(self):
        source = "import os\nos.path\n"
        result = parse(source)

        node = node_at(result.tree, Position(1, 4))
        assert node.kind is NodeKind.ATTRIBUTE
        assert node.name == "path"

        node = node_at(result.tree, Position(1, 1))
        assert node.kind is NodeKind.NAME
        assert node.name == "os"

    def test_node_at_whitespace_returns_none(self):
        result = parse("x = 1\n\n\n")

        assert node_at(result.tree, Position(2, 0)) is None

    def test_scope_at(self):
        source = "class Foo:\n    def run(self):\n        pass\n"
        result = parse(source)

        assert scope_at(result.tree, Position(2, 8)).name == "run"
        assert scope_at(result.tree, Position(0, 0)).name == "Foo"


class TestExecutor:
    """Tests for parsing in the thread executor."""

    @pytest.mark.asyncio
    async def test_parse_in_executor(self):
        provider = PythonSyntaxProvider()

        result = await provider.parse_in_executor("file:///p/x.py", "X = 1\n", "x")

        assert result.tree.children[0].name == "X"

    @pytest.mark.asyncio
    async def test_parse_timeout(self, monkeypatch):
        provider = PythonSyntaxProvider(timeout_seconds=0.05)

        def slow_parse(*args):
            time.sleep(0.5)

        monkeypatch.setattr(provider, "parse", slow_parse)

        with pytest.raises(ParseTimeoutError):
            await provider.parse_in_executor("file:///p/x.py", "X = 1\n", "x")
