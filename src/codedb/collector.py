# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Collector: turns one file's syntax tree into Repository records.

Walks the tree in source order and gathers:
- Declarations (module, class, function, method, field, constant, variable)
  as Symbols in the file's Namespace plus Definitions keyed by FQN
- Usages (names, attribute accesses, import bindings) as References, when
  the referenced FQN can be resolved from lexical and import context

Unresolved usages are dropped. A node that fails to convert is logged and
skipped without aborting the walk. The result is committed with exactly one
Repository.upsert_file() call, so collecting the same tree twice yields the
same Repository state.
"""

import logging
from typing import List, Optional, Set

from codedb.definition_resolver import declaration_kind, defined_fqn, referenced_fqn
from codedb.models import Definition, FileRecord, Namespace, Reference, Symbol, SymbolKind
from codedb.repository import Repository
from codedb.syntax.nodes import NodeKind, SyntaxNode

logger = logging.getLogger(__name__)

_USAGE_KINDS = (NodeKind.NAME, NodeKind.ATTRIBUTE, NodeKind.IMPORT)


class Collector:
    """Collects declarations and usages of one file into the Repository."""

    def __init__(
        self,
        repository: Repository,
        uri: str,
        content_hash: str,
        tree: SyntaxNode,
        parse_time: float = 0.0,
    ):
        """Initialize collector.

        Args:
            repository: Repository receiving the file's records.
            uri: URI of the file the tree was parsed from.
            content_hash: Hash of the parsed content.
            tree: MODULE root produced by the syntax provider.
            parse_time: Seconds spent parsing.
        """
        self.repository = repository
        self.uri = uri
        self.content_hash = content_hash
        self.tree = tree
        self.parse_time = parse_time

        self.module_name = tree.module or ""
        self.namespace = Namespace(name=self.module_name)
        self.definitions: List[Definition] = []
        self.references: List[Reference] = []
        self._declared: Set[str] = set()
        self.skipped = 0

    def collect(self) -> FileRecord:
        """Walk the tree and replace the file's records in the Repository.

        Returns:
            The stored FileRecord.
        """
        self._add_module_definition()

        for node in self.tree.walk():
            if node is self.tree:
                continue
            try:
                self._visit(node)
            except Exception as e:
                self.skipped += 1
                logger.error(f"Skipping {node.kind.value} node {node.name!r} in {self.uri}: {e}")

        record = self.repository.upsert_file(
            self.uri,
            self.content_hash,
            [self.namespace],
            definitions=self.definitions,
            references=self.references,
            parse_time=self.parse_time,
        )
        logger.debug(
            f"Collected {self.uri}: {len(self.namespace.symbols)} symbols, "
            f"{len(self.definitions)} definitions, {len(self.references)} references"
        )
        return record

    def _add_module_definition(self) -> None:
        if not self.module_name:
            return
        self._declared.add(self.module_name)
        self.definitions.append(
            Definition(
                fqn=self.module_name,
                uri=self.uri,
                range=self.tree.range,
                kind=SymbolKind.MODULE,
                documentation=self.tree.documentation,
            )
        )

    def _visit(self, node: SyntaxNode) -> None:
        fqn = defined_fqn(node)
        if fqn is not None:
            self._add_declaration(node, fqn)
            return

        if node.kind in _USAGE_KINDS and not (node.kind is NodeKind.NAME and node.is_store):
            target = referenced_fqn(node)
            if target is not None:
                self.references.append(
                    Reference(fqn=target, uri=self.uri, range=node.name_range or node.range)
                )

    def _add_declaration(self, node: SyntaxNode, fqn: str) -> None:
        if fqn in self._declared:
            logger.debug(f"Redeclaration of {fqn} in {self.uri}, keeping first")
            return
        kind = declaration_kind(node)
        if kind is None or not node.name:
            return

        self._declared.add(fqn)
        self.namespace.add_symbol(
            Symbol(
                name=node.name,
                kind=kind,
                range=node.range,
                container=self._container(fqn, node.name),
            )
        )
        self.definitions.append(
            Definition(
                fqn=fqn,
                uri=self.uri,
                range=node.range,
                kind=kind,
                signature=node.signature,
                documentation=node.documentation,
            )
        )

    def _container(self, fqn: str, name: str) -> Optional[str]:
        """Dotted class path between the module and the declared name."""
        inner = fqn[: -len(name) - 1] if fqn != name else ""
        if self.module_name:
            if inner == self.module_name:
                return None
            if inner.startswith(self.module_name + "."):
                inner = inner[len(self.module_name) + 1 :]
        return inner or None
