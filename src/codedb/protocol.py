# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Protocol-level types: error responses and editor payload conversion.

JSON-RPC error codes come from ``mcp.types``; editor payloads are
``lsprotocol`` types, converted to and from plain JSON with the lsprotocol
cattrs converter. Index models (codedb.models) are translated here so the
rest of the codebase never depends on the wire representation.
"""

from typing import Any, Dict, Optional, Type, TypeVar

from lsprotocol import types
from lsprotocol.converters import get_converter
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ErrorData,
)

from codedb.models import Definition, Position, Range, Symbol, SymbolKind

__all__ = [
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "SERVER_NOT_INITIALIZED",
    "ResponseError",
    "structure",
    "unstructure",
]

# Editor protocol: request received before initialize
SERVER_NOT_INITIALIZED = -32002

T = TypeVar("T")

_converter = get_converter()

_SYMBOL_KINDS = {
    SymbolKind.MODULE: types.SymbolKind.Module,
    SymbolKind.CLASS: types.SymbolKind.Class,
    SymbolKind.FUNCTION: types.SymbolKind.Function,
    SymbolKind.METHOD: types.SymbolKind.Method,
    SymbolKind.FIELD: types.SymbolKind.Field,
    SymbolKind.CONSTANT: types.SymbolKind.Constant,
    SymbolKind.VARIABLE: types.SymbolKind.Variable,
}

_COMPLETION_KINDS = {
    SymbolKind.MODULE: types.CompletionItemKind.Module,
    SymbolKind.CLASS: types.CompletionItemKind.Class,
    SymbolKind.FUNCTION: types.CompletionItemKind.Function,
    SymbolKind.METHOD: types.CompletionItemKind.Method,
    SymbolKind.FIELD: types.CompletionItemKind.Field,
    SymbolKind.CONSTANT: types.CompletionItemKind.Constant,
    SymbolKind.VARIABLE: types.CompletionItemKind.Variable,
}


class ResponseError(Exception):
    """Application error answered with a structured error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message, data=self.data)


def structure(value: Any, cls: Type[T]) -> T:
    """Convert a JSON value to a protocol type.

    Raises:
        ResponseError: INVALID_PARAMS if the value does not fit ``cls``.
    """
    try:
        return _converter.structure(value, cls)
    except Exception as e:
        raise ResponseError(
            INVALID_PARAMS, f"Invalid {getattr(cls, '__name__', cls)}: {e}"
        ) from e


def unstructure(value: Any) -> Any:
    """Convert a protocol type (or a list of them) to JSON-compatible data."""
    return _converter.unstructure(value)


# -- index models <-> protocol types ----------------------------------------


def to_position(position: types.Position) -> Position:
    return Position(line=position.line, character=position.character)


def from_range(range_: Range) -> types.Range:
    return types.Range(
        start=types.Position(line=range_.start.line, character=range_.start.character),
        end=types.Position(line=range_.end.line, character=range_.end.character),
    )


def location(uri: str, range_: Range) -> types.Location:
    return types.Location(uri=uri, range=from_range(range_))


def symbol_information(symbol: Symbol, uri: str) -> types.SymbolInformation:
    return types.SymbolInformation(
        name=symbol.name,
        kind=_SYMBOL_KINDS.get(symbol.kind, types.SymbolKind.Variable),
        location=location(uri, symbol.range),
        container_name=symbol.container_fqn or None,
    )


def hover(definition: Definition, range_: Optional[Range] = None) -> types.Hover:
    """Markdown hover: signature in a code block, then the docstring."""
    parts = []
    if definition.signature:
        parts.append(f"```python\n{definition.signature}\n```")
    else:
        parts.append(f"`{definition.fqn}` ({definition.kind})")
    if definition.documentation:
        parts.append(definition.documentation)
    return types.Hover(
        contents=types.MarkupContent(kind=types.MarkupKind.Markdown, value="\n\n".join(parts)),
        range=from_range(range_) if range_ is not None else None,
    )


def completion_item(definition: Definition) -> types.CompletionItem:
    return types.CompletionItem(
        label=definition.name,
        kind=_COMPLETION_KINDS.get(definition.kind, types.CompletionItemKind.Text),
        detail=definition.signature or definition.fqn,
        documentation=definition.documentation,
    )


def xdefinition(definition: Definition, package_name: str) -> Dict[str, Any]:
    """Extended definition payload: symbol descriptor plus location."""
    return {
        "symbol": {
            "fqn": definition.fqn,
            "kind": definition.kind,
            "package": {"name": package_name},
        },
        "location": unstructure(location(definition.uri, definition.range)),
    }
