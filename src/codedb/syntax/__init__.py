# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Syntax provider: Python source text to SyntaxNode trees.

Components:
- SyntaxNode / NodeKind: tagged tree with explicit parent and child links
- PythonSyntaxProvider: tolerant parser built on the ``ast`` module
"""

from codedb.syntax.nodes import NodeKind, SyntaxNode, node_at, scope_at
from codedb.syntax.python_provider import (
    ParseFault,
    ParseResult,
    ParseTimeoutError,
    PythonSyntaxProvider,
)

__all__ = [
    "NodeKind",
    "ParseFault",
    "ParseResult",
    "ParseTimeoutError",
    "PythonSyntaxProvider",
    "SyntaxNode",
    "node_at",
    "scope_at",
]
