# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Syntax tree nodes handed from the syntax provider to the collector.

The tree keeps only what indexing and resolution need: scopes, declarations,
imports and name usages. Each node carries an explicit NodeKind tag, a
non-owning parent link and owned child links, so scope lookups are explicit
upward walks over kind tags instead of type inspection of parser objects.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from codedb.models import Position, Range


class NodeKind(Enum):
    """Kinds of syntax nodes."""

    MODULE = "module"
    CLASS = "class"
    FUNCTION = "function"
    PARAMETER = "parameter"
    VARIABLE = "variable"  # assignment target at module or class scope
    IMPORT = "import"  # one imported binding (one alias of an import statement)
    NAME = "name"
    ATTRIBUTE = "attribute"


SCOPE_KINDS = (NodeKind.MODULE, NodeKind.CLASS, NodeKind.FUNCTION)
DECLARATION_KINDS = (NodeKind.CLASS, NodeKind.FUNCTION, NodeKind.VARIABLE)


@dataclass(eq=False)
class SyntaxNode:
    """A node of the syntax tree.

    Attributes:
        kind: Node kind tag.
        range: Full source range of the construct.
        name: Identifier (declared name, bound name, attribute name).
        name_range: Range of the identifier itself; used for cursor lookup.
        parent: Non-owning link to the enclosing node (None for MODULE).
        children: Owned child nodes in source order.
        header: True when the node is evaluated in the scope enclosing its
            parent CLASS/FUNCTION (decorators, bases, defaults, annotations).
        is_store: True for binding occurrences (assignment targets).
        signature: Declaration text for CLASS/FUNCTION/VARIABLE.
        documentation: Docstring for MODULE/CLASS/FUNCTION.
        module: Dotted module name (MODULE) or imported module (IMPORT).
        imported_name: Name imported by ``from m import name`` (IMPORT).
        level: Relative import level, number of leading dots (IMPORT).
        is_package: True when the MODULE is a package ``__init__``.
        base: For ATTRIBUTE, the NAME/ATTRIBUTE it is accessed on, if any.
    """

    kind: NodeKind
    range: Range
    name: Optional[str] = None
    name_range: Optional[Range] = None
    parent: Optional["SyntaxNode"] = field(default=None, repr=False)
    children: List["SyntaxNode"] = field(default_factory=list, repr=False)
    header: bool = False
    is_store: bool = False
    signature: Optional[str] = None
    documentation: Optional[str] = None
    module: Optional[str] = None
    imported_name: Optional[str] = None
    level: int = 0
    is_package: bool = False
    base: Optional["SyntaxNode"] = field(default=None, repr=False)

    # Memoized scope bindings, filled lazily by the definition resolver
    bindings: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def add_child(self, child: "SyntaxNode") -> "SyntaxNode":
        child.parent = self
        self.children.append(child)
        return child

    def walk(self) -> Iterator["SyntaxNode"]:
        """Yield this node and all descendants in source (pre-)order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def ancestors(self) -> Iterator["SyntaxNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def first_ancestor(self, *kinds: NodeKind) -> Optional["SyntaxNode"]:
        for node in self.ancestors():
            if node.kind in kinds:
                return node
        return None

    def root(self) -> "SyntaxNode":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @property
    def bound_name(self) -> Optional[str]:
        """Local name an IMPORT binds (``import a.b`` binds ``a``)."""
        if self.kind is not NodeKind.IMPORT:
            return self.name
        if self.name:
            return self.name
        if self.imported_name:
            return self.imported_name
        if self.module:
            return self.module.split(".")[0]
        return None


def node_at(tree: SyntaxNode, position: Position) -> Optional[SyntaxNode]:
    """Find the innermost identifier-bearing node at a position.

    Args:
        tree: Root of the syntax tree.
        position: Cursor position.

    Returns:
        The node whose identifier range contains the position, preferring the
        smallest range. None if the cursor is not on an identifier.
    """
    best: Optional[SyntaxNode] = None
    for node in tree.walk():
        if node.kind is NodeKind.MODULE:
            continue
        target = node.name_range or node.range
        if not target.contains(position):
            continue
        if best is None or target.size() <= (best.name_range or best.range).size():
            best = node
    return best


def scope_at(tree: SyntaxNode, position: Position) -> SyntaxNode:
    """Innermost scope (module, class or function) containing a position."""
    best = tree
    for node in tree.walk():
        if node.kind in SCOPE_KINDS and node.range.contains(position):
            if node.range.size() <= best.range.size():
                best = node
    return best
