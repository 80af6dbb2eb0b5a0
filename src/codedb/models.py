# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Core data models for the cross-file symbol index.

This module defines the records stored in the Repository:
- Position / Range: zero-based source locations (editor protocol convention)
- SymbolKind: Kinds of declared symbols
- Symbol: A declaration owned by exactly one Namespace
- Namespace: A module-level scope owned by exactly one File
- FileRecord: One indexed file, replaced wholesale on reparse
- Definition: The unique declaring occurrence of a fully-qualified name (FQN)
- Reference: A non-declaring occurrence of an FQN
- IndexState: States of the process-wide completeness signal

Ownership is a strict tree: FileRecord -> Namespace -> Symbol. Symbols keep a
non-owning back-reference to their Namespace so the FQN can be derived.

All models serialize to JSON-compatible primitives for snapshot persistence.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class SymbolKind:
    """Kinds of symbols that can be declared in a file.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    MODULE = "module"  # the file's own namespace
    CLASS = "class"  # class Foo:
    FUNCTION = "function"  # module-level def foo():
    METHOD = "method"  # def foo(self): inside a class
    FIELD = "field"  # class attribute or self.attr assigned in __init__
    CONSTANT = "constant"  # module-level UPPER_CASE = ...
    VARIABLE = "variable"  # module-level foo = ...

    ALL = (MODULE, CLASS, FUNCTION, METHOD, FIELD, CONSTANT, VARIABLE)


class IndexState:
    """States of the completeness signal.

    Transitions are monotonic: NOT_STARTED -> INDEXING -> COMPLETE.
    """

    NOT_STARTED = "not_started"
    INDEXING = "indexing"
    COMPLETE = "complete"

    ORDER = (NOT_STARTED, INDEXING, COMPLETE)


@dataclass(frozen=True)
class Position:
    """Zero-based line and character offset."""

    line: int
    character: int

    def to_dict(self) -> Dict[str, int]:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(line=int(data["line"]), character=int(data["character"]))


@dataclass(frozen=True)
class Range:
    """Half-open source range between two positions."""

    start: Position
    end: Position

    def contains(self, position: Position) -> bool:
        """Check whether a position falls inside this range (end inclusive)."""
        start = (self.start.line, self.start.character)
        end = (self.end.line, self.end.character)
        return start <= (position.line, position.character) <= end

    def size(self) -> tuple:
        """Sortable extent used to pick the innermost of nested ranges."""
        return (self.end.line - self.start.line, self.end.character - self.start.character)

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Range":
        return cls(start=Position.from_dict(data["start"]), end=Position.from_dict(data["end"]))

    @classmethod
    def from_coordinates(
        cls, start_line: int, start_char: int, end_line: int, end_char: int
    ) -> "Range":
        return cls(Position(start_line, start_char), Position(end_line, end_char))


@dataclass
class Symbol:
    """A symbol declared in a file.

    The FQN is derived from the owning namespace, the enclosing classes
    (``container``) and the declared name, e.g. ``pkg.mod.Foo.bar``.
    """

    name: str
    kind: str  # SymbolKind value
    range: Range
    container: Optional[str] = None  # dotted enclosing class path inside the module

    # Non-owning back-reference, set by Namespace.add_symbol()
    namespace: Optional["Namespace"] = field(default=None, repr=False, compare=False)

    @property
    def fqn(self) -> str:
        parts = []
        if self.namespace is not None and self.namespace.name:
            parts.append(self.namespace.name)
        if self.container:
            parts.append(self.container)
        parts.append(self.name)
        return ".".join(parts)

    @property
    def container_fqn(self) -> Optional[str]:
        """FQN of the enclosing scope (class or namespace)."""
        if self.namespace is None:
            return self.container
        if self.container:
            return f"{self.namespace.name}.{self.container}"
        return self.namespace.name

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "range": self.range.to_dict(),
        }
        if self.container is not None:
            result["container"] = self.container
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Symbol":
        return cls(
            name=data["name"],
            kind=data["kind"],
            range=Range.from_dict(data["range"]),
            container=data.get("container"),
        )


@dataclass
class Namespace:
    """A namespace (Python module) scoped to one file."""

    name: str
    symbols: List[Symbol] = field(default_factory=list)

    def add_symbol(self, symbol: Symbol) -> Symbol:
        """Attach a symbol, taking exclusive ownership of it."""
        if symbol.namespace is not None and symbol.namespace is not self:
            raise ValueError(f"Symbol {symbol.name} already belongs to {symbol.namespace.name}")
        symbol.namespace = self
        self.symbols.append(symbol)
        return symbol

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "symbols": [s.to_dict() for s in self.symbols]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Namespace":
        namespace = cls(name=data["name"])
        for symbol_data in data.get("symbols", []):
            namespace.add_symbol(Symbol.from_dict(symbol_data))
        return namespace


@dataclass
class FileRecord:
    """An indexed file.

    Replaced wholesale whenever its content hash changes.
    """

    uri: str
    content_hash: str
    namespaces: List[Namespace] = field(default_factory=list)
    parse_time: float = 0.0  # seconds spent in the last parse

    def iter_symbols(self) -> List[Symbol]:
        return [symbol for namespace in self.namespaces for symbol in namespace.symbols]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "content_hash": self.content_hash,
            "parse_time": self.parse_time,
            "namespaces": [ns.to_dict() for ns in self.namespaces],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        return cls(
            uri=data["uri"],
            content_hash=data["content_hash"],
            parse_time=float(data.get("parse_time", 0.0)),
            namespaces=[Namespace.from_dict(ns) for ns in data.get("namespaces", [])],
        )


@dataclass(frozen=True)
class Definition:
    """The declaring occurrence of an FQN."""

    fqn: str
    uri: str
    range: Range
    kind: str  # SymbolKind value
    signature: Optional[str] = None  # declaration line, e.g. "def foo(a, b)"
    documentation: Optional[str] = None  # docstring if present

    @property
    def name(self) -> str:
        return self.fqn.rsplit(".", 1)[-1]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "fqn": self.fqn,
            "uri": self.uri,
            "range": self.range.to_dict(),
            "kind": self.kind,
        }
        if self.signature is not None:
            result["signature"] = self.signature
        if self.documentation is not None:
            result["documentation"] = self.documentation
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Definition":
        return cls(
            fqn=data["fqn"],
            uri=data["uri"],
            range=Range.from_dict(data["range"]),
            kind=data["kind"],
            signature=data.get("signature"),
            documentation=data.get("documentation"),
        )


@dataclass(frozen=True)
class Reference:
    """A usage of an FQN. The FQN is not required to have a Definition."""

    fqn: str
    uri: str
    range: Range

    def to_dict(self) -> Dict[str, Any]:
        return {"fqn": self.fqn, "uri": self.uri, "range": self.range.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reference":
        return cls(fqn=data["fqn"], uri=data["uri"], range=Range.from_dict(data["range"]))
