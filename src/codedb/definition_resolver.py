# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Definition resolution: from syntax nodes to FQNs and Definitions.

Pure functions (no repository access, no suspension):
- defined_fqn(node): the FQN a declaration node declares
- referenced_fqn(node): the FQN a usage node refers to, from lexical and
  import context only

Resolution rules for names (Python scoping, no type inference):
- Function scopes: parameters and assigned names are locals and shadow
  everything (unresolvable); function-level imports resolve.
- Class bodies see their own members; functions nested in a class do not.
- Module scope: imports, classes, functions and module variables.
- ``self.x`` / ``cls.x`` inside a method resolves to a member of the
  enclosing class.
- Attribute chains are qualified when rooted at an import or a class.
- Relative imports resolve against the current module's package.

DefinitionResolver adds repository-backed lookup and the incompleteness
protocol: while the index is not complete, a miss suspends until the next
``definition-added`` or ``complete`` event and retries.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from codedb.index_events import COMPLETE, DEFINITION_ADDED, CompletenessSignal, IndexEvents
from codedb.models import Definition, SymbolKind
from codedb.repository import Repository
from codedb.syntax.nodes import SCOPE_KINDS, NodeKind, SyntaxNode

logger = logging.getLogger(__name__)

# Node kinds that can bind or use a plain local name
LOCAL_NAME_KINDS = (
    NodeKind.NAME,
    NodeKind.PARAMETER,
    NodeKind.VARIABLE,
    NodeKind.CLASS,
    NodeKind.FUNCTION,
)


class BindingKind:
    """How a name is bound in a scope."""

    IMPORT = "import"
    DECLARATION = "declaration"
    LOCAL = "local"


@dataclass(frozen=True)
class Binding:
    kind: str  # BindingKind value
    fqn: Optional[str]
    node: SyntaxNode


# -- module / import helpers -----------------------------------------------


def module_name_of(node: SyntaxNode) -> Optional[str]:
    root = node.root()
    return root.module if root.kind is NodeKind.MODULE else None


def package_of(node: SyntaxNode) -> Optional[str]:
    """Package the node's module lives in (itself for ``__init__``)."""
    root = node.root()
    if root.kind is not NodeKind.MODULE or root.module is None:
        return None
    if root.is_package:
        return root.module
    if "." in root.module:
        return root.module.rsplit(".", 1)[0]
    return ""


def _import_base(node: SyntaxNode) -> Optional[str]:
    """Absolute module an IMPORT node names, resolving relative levels."""
    if not node.level:
        return node.module
    package = package_of(node)
    if package is None:
        return None
    parts = package.split(".") if package else []
    drop = node.level - 1
    if drop > len(parts):
        return None
    if drop:
        parts = parts[: len(parts) - drop]
    if node.module:
        parts.append(node.module)
    return ".".join(parts) or None


def import_target(node: SyntaxNode) -> Optional[str]:
    """FQN named by an import statement (``from a import b`` -> ``a.b``)."""
    base = _import_base(node)
    if base is None:
        return None
    if node.imported_name:
        return f"{base}.{node.imported_name}"
    return base


def import_binding_fqn(node: SyntaxNode) -> Optional[str]:
    """FQN bound to the local name an import introduces.

    ``import a.b`` binds ``a`` to module ``a``; ``import a.b as c`` binds
    ``c`` to ``a.b``.
    """
    target = import_target(node)
    if target is None:
        return None
    if node.imported_name is None and node.name is None and node.level == 0:
        return target.split(".")[0]
    return target


# -- declarations ----------------------------------------------------------


def _enclosing_method_class(node: SyntaxNode) -> Optional[SyntaxNode]:
    function = node.first_ancestor(NodeKind.FUNCTION)
    if function is None or function.name is None:
        return None
    if function.parent is not None and function.parent.kind is NodeKind.CLASS:
        return function.parent
    return None


def _is_self_field(node: SyntaxNode) -> bool:
    """``self.x = ...`` inside ``__init__`` of a class."""
    if node.kind is not NodeKind.ATTRIBUTE or not node.is_store:
        return False
    base = node.base
    if base is None or base.kind is not NodeKind.NAME or base.name != "self":
        return False
    function = node.first_ancestor(NodeKind.FUNCTION)
    return (
        function is not None
        and function.name == "__init__"
        and _enclosing_method_class(node) is not None
    )


def defined_fqn(node: SyntaxNode) -> Optional[str]:
    """Return the FQN a node declares, or None if it is not a declaration.

    Declarations nested in a function body are locals and declare nothing.
    """
    if node.kind is NodeKind.MODULE:
        return node.module or None

    if node.kind is NodeKind.ATTRIBUTE:
        if not _is_self_field(node):
            return None
        cls = _enclosing_method_class(node)
        owner = defined_fqn(cls) if cls is not None else None
        return f"{owner}.{node.name}" if owner else None

    if node.kind not in (NodeKind.CLASS, NodeKind.FUNCTION, NodeKind.VARIABLE):
        return None
    if not node.name:
        return None

    parts: List[str] = [node.name]
    for ancestor in node.ancestors():
        if ancestor.kind is NodeKind.FUNCTION:
            return None
        if ancestor.kind is NodeKind.CLASS:
            if not ancestor.name:
                return None
            parts.append(ancestor.name)
        elif ancestor.kind is NodeKind.MODULE:
            if ancestor.module:
                parts.append(ancestor.module)
            break
    return ".".join(reversed(parts))


def declaration_kind(node: SyntaxNode) -> Optional[str]:
    """SymbolKind of a declaration node."""
    parent_kind = node.parent.kind if node.parent is not None else None
    if node.kind is NodeKind.MODULE:
        return SymbolKind.MODULE
    if node.kind is NodeKind.CLASS:
        return SymbolKind.CLASS
    if node.kind is NodeKind.FUNCTION:
        return SymbolKind.METHOD if parent_kind is NodeKind.CLASS else SymbolKind.FUNCTION
    if node.kind is NodeKind.ATTRIBUTE:
        return SymbolKind.FIELD
    if node.kind is NodeKind.VARIABLE and node.name:
        if parent_kind is NodeKind.CLASS:
            return SymbolKind.FIELD
        if node.name.upper() == node.name and any(c.isalpha() for c in node.name):
            return SymbolKind.CONSTANT
        return SymbolKind.VARIABLE
    return None


# -- scopes ----------------------------------------------------------------


def scope_chain(node: SyntaxNode) -> List[SyntaxNode]:
    """Scopes visible from a node, innermost first."""
    chain: List[SyntaxNode] = []
    child = node
    passed_function = False
    for ancestor in node.ancestors():
        # Header nodes are evaluated in the scope around their CLASS/FUNCTION
        from_header = child.header
        child = ancestor
        if ancestor.kind not in SCOPE_KINDS or from_header:
            continue
        if ancestor.kind is NodeKind.CLASS and passed_function:
            continue
        chain.append(ancestor)
        if ancestor.kind is NodeKind.FUNCTION:
            passed_function = True
    return chain


def _scope_members(scope: SyntaxNode) -> Iterator[SyntaxNode]:
    """Nodes evaluated in ``scope``; nested scope bodies are not entered."""
    stack = list(reversed(scope.children))
    while stack:
        node = stack.pop()
        yield node
        if node.kind in SCOPE_KINDS:
            continue
        stack.extend(reversed(node.children))


def scope_bindings(scope: SyntaxNode) -> Dict[str, Binding]:
    """Names bound directly in a scope. Memoized on the scope node."""
    if scope.bindings is not None:
        return scope.bindings

    bindings: Dict[str, Binding] = {}
    for member in _scope_members(scope):
        if member.kind is NodeKind.IMPORT:
            name = member.bound_name
            if name:
                bindings.setdefault(
                    name, Binding(BindingKind.IMPORT, import_binding_fqn(member), member)
                )
        elif member.kind in (NodeKind.CLASS, NodeKind.FUNCTION, NodeKind.VARIABLE):
            if member.header or not member.name:
                continue
            fqn = defined_fqn(member)
            kind = BindingKind.DECLARATION if fqn else BindingKind.LOCAL
            bindings.setdefault(member.name, Binding(kind, fqn, member))
        elif member.kind is NodeKind.PARAMETER and member.name:
            bindings.setdefault(member.name, Binding(BindingKind.LOCAL, None, member))
        elif member.kind is NodeKind.NAME and member.is_store and member.name:
            if scope.kind is NodeKind.FUNCTION:
                bindings.setdefault(member.name, Binding(BindingKind.LOCAL, None, member))

    scope.bindings = bindings
    return bindings


def binding_scope(node: SyntaxNode, name: str) -> Optional[SyntaxNode]:
    """Innermost scope visible from ``node`` that binds ``name``."""
    for scope in scope_chain(node):
        if name in scope_bindings(scope):
            return scope
    return None


def lookup(node: SyntaxNode, name: str) -> Optional[Binding]:
    """Resolve a name through the scopes visible from ``node``."""
    scope = binding_scope(node, name)
    return scope_bindings(scope)[name] if scope is not None else None


def local_occurrences(node: SyntaxNode) -> List[SyntaxNode]:
    """Every occurrence of a function-local name, in source order.

    Locals (parameters, assigned names, nested declarations) have no FQN, so
    their uses are found by walking the function that binds them. Nested
    scopes rebinding the same name are left out. Empty when ``node`` is not
    a local.
    """
    name = node.name
    if node.kind not in LOCAL_NAME_KINDS or not name:
        return []
    scope = binding_scope(node, name)
    if scope is None or scope.kind is not NodeKind.FUNCTION:
        return []
    if scope_bindings(scope)[name].kind != BindingKind.LOCAL:
        return []
    return [
        candidate
        for candidate in scope.walk()
        if candidate.kind in LOCAL_NAME_KINDS
        and candidate.name == name
        and binding_scope(candidate, name) is scope
    ]


def visible_scopes(scope: SyntaxNode) -> List[SyntaxNode]:
    """Scopes visible from code directly inside ``scope``, innermost first."""
    chain = [scope]
    passed_function = scope.kind is NodeKind.FUNCTION
    for ancestor in scope.ancestors():
        if ancestor.kind not in SCOPE_KINDS:
            continue
        if ancestor.kind is NodeKind.CLASS and passed_function:
            continue
        chain.append(ancestor)
        if ancestor.kind is NodeKind.FUNCTION:
            passed_function = True
    return chain


def qualify_dotted(scope: SyntaxNode, dotted: str) -> Optional[str]:
    """FQN of a dotted expression (``os.path``, ``self``) typed inside ``scope``.

    Used where no syntax node exists for the text, e.g. an incomplete
    ``foo.`` being completed.
    """
    parts = dotted.split(".")
    head = parts[0]
    if head in ("self", "cls"):
        cls = scope.parent if scope.kind is NodeKind.FUNCTION else None
        if cls is None or cls.kind is not NodeKind.CLASS:
            return None
        base = defined_fqn(cls)
    else:
        base = None
        for visible in visible_scopes(scope):
            binding = scope_bindings(visible).get(head)
            if binding is None:
                continue
            if binding.kind != BindingKind.LOCAL:
                base = binding.fqn
            break
    if base is None:
        return None
    return ".".join([base] + parts[1:])


# -- references ------------------------------------------------------------


def _qualify(node: Optional[SyntaxNode]) -> Optional[str]:
    """FQN of an expression usable as a namespace (module or class)."""
    if node is None:
        return None

    if node.kind is NodeKind.NAME:
        if node.name in ("self", "cls"):
            cls = _enclosing_method_class(node)
            return defined_fqn(cls) if cls is not None else None
        binding = lookup(node, node.name or "")
        if binding is None or binding.fqn is None:
            return None
        if binding.kind == BindingKind.IMPORT:
            return binding.fqn
        if binding.kind == BindingKind.DECLARATION and binding.node.kind is NodeKind.CLASS:
            return binding.fqn
        return None

    if node.kind is NodeKind.ATTRIBUTE:
        base = node.base
        # self.x is an instance member, not a namespace
        if base is not None and base.kind is NodeKind.NAME and base.name in ("self", "cls"):
            return None
        owner = _qualify(base)
        return f"{owner}.{node.name}" if owner else None

    return None


def referenced_fqn(node: SyntaxNode) -> Optional[str]:
    """Return the FQN a usage node refers to, or None if unresolvable.

    Only lexical and import context is used; anything needing type
    information (attributes of locals, call results) is unresolvable.
    """
    if node.kind is NodeKind.IMPORT:
        return import_target(node)

    if node.kind is NodeKind.NAME:
        if node.is_store or not node.name:
            return None
        binding = lookup(node, node.name)
        if binding is None or binding.kind == BindingKind.LOCAL:
            return None
        return binding.fqn

    if node.kind is NodeKind.ATTRIBUTE:
        if _is_self_field(node):
            return None
        base = node.base
        if base is not None and base.kind is NodeKind.NAME and base.name in ("self", "cls"):
            cls = _enclosing_method_class(node)
            owner = defined_fqn(cls) if cls is not None else None
        else:
            owner = _qualify(base)
        return f"{owner}.{node.name}" if owner else None

    return None


class DefinitionResolver:
    """Repository-backed resolution with the incompleteness protocol."""

    def __init__(
        self,
        repository: Repository,
        signal: CompletenessSignal,
        events: Optional[IndexEvents] = None,
    ):
        """Initialize resolver.

        Args:
            repository: Index to look Definitions up in.
            signal: Completeness signal of the indexing sweep.
            events: Event bus; defaults to the repository's.
        """
        self.repository = repository
        self.signal = signal
        self.events = events if events is not None else repository.events

    @staticmethod
    def resolve_fqn(node: SyntaxNode) -> Optional[str]:
        """FQN a node declares, else the FQN it references."""
        return defined_fqn(node) or referenced_fqn(node)

    def resolve_to_definition(self, node: SyntaxNode) -> Optional[Definition]:
        """Look up the Definition for a node without waiting."""
        fqn = self.resolve_fqn(node)
        if fqn is None:
            return None
        return self.repository.get_definition(fqn)

    async def wait_for_definition(self, node: SyntaxNode) -> Optional[Definition]:
        """Resolve a node, waiting for indexing progress on a miss.

        Retries after every ``definition-added`` event until a Definition is
        found or indexing is complete. A miss after completion is final.
        """
        fqn = self.resolve_fqn(node)
        if fqn is None:
            return None

        while True:
            definition = self.repository.get_definition(fqn)
            if definition is not None or self.signal.is_complete:
                return definition
            logger.debug(f"Definition of {fqn} pending, waiting for indexing progress")
            await self.events.wait(DEFINITION_ADDED, COMPLETE)

    async def wait_for_complete(self) -> None:
        """Suspend until the initial indexing sweep has completed."""
        while not self.signal.is_complete:
            await self.events.wait(COMPLETE)
