# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Handlers for the ``textDocument/*`` methods.

Thin facades over the Repository, the DefinitionResolver and the
IndexingDriver. Positional queries parse the document's current content to
find the node under the cursor; the index itself is only read.

Suspension points:
- definition / hover / xdefinition wait for indexing progress while the
  index is incomplete and the target is not indexed yet, and re-check the
  declaring file first when it was restored from a snapshot
- references waits for the initial sweep to complete, then freshens every
  referencing file concurrently. Locals have no FQN and are searched for
  inside the function that binds them, without waiting
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from lsprotocol import types

from codedb import protocol
from codedb.content import (
    ContentUnavailableError,
    OpenDocumentRetriever,
    content_hash,
    module_name_for,
    uri_to_path,
)
from codedb.definition_resolver import (
    DefinitionResolver,
    local_occurrences,
    lookup,
    qualify_dotted,
)
from codedb.indexer import IndexingDriver
from codedb.models import Definition, Position
from codedb.protocol import INVALID_PARAMS, ResponseError
from codedb.query import name_starts_with, uri_equals
from codedb.repository import Repository
from codedb.syntax.nodes import SyntaxNode, node_at, scope_at
from codedb.syntax.python_provider import PythonSyntaxProvider

logger = logging.getLogger(__name__)

_DOTTED_PREFIX = re.compile(r"([A-Za-z_][\w.]*)?$")


class TextDocument:
    """``textDocument/*`` request and notification handlers."""

    def __init__(
        self,
        repository: Repository,
        resolver: DefinitionResolver,
        driver: IndexingDriver,
        documents: OpenDocumentRetriever,
        provider: PythonSyntaxProvider,
        project_root: Path,
        source_roots: Tuple[str, ...] = ("src", "."),
        package_name: str = "",
        completion_limit: int = 200,
    ):
        """Initialize handlers.

        Args:
            repository: Index read by the queries.
            resolver: Definition resolver bound to the same repository.
            driver: Indexing driver used to (re)index documents.
            documents: Open-document overlay.
            provider: Syntax provider for cursor lookups.
            project_root: Project root, for module names.
            source_roots: Source roots, for module names.
            package_name: Package name reported by xdefinition.
            completion_limit: Maximum completion items returned.
        """
        self.repository = repository
        self.resolver = resolver
        self.driver = driver
        self.documents = documents
        self.provider = provider
        self.project_root = project_root
        self.source_roots = tuple(source_roots)
        self.package_name = package_name
        self.completion_limit = completion_limit

        # uri -> (content hash, tree) of the last cursor-lookup parse
        self._trees: Dict[str, Tuple[str, SyntaxNode]] = {}

    # -- document lifecycle ----------------------------------------------

    async def did_open(self, textDocument: Dict[str, Any]) -> None:
        item = protocol.structure(textDocument, types.TextDocumentItem)
        self.documents.open(item.uri, item.text)
        await self.driver.index_uri(item.uri)

    async def did_change(
        self, textDocument: Dict[str, Any], contentChanges: List[Dict[str, Any]]
    ) -> None:
        document = protocol.structure(textDocument, types.VersionedTextDocumentIdentifier)
        if not isinstance(contentChanges, list) or not contentChanges:
            raise ResponseError(INVALID_PARAMS, "contentChanges must be a non-empty list")
        # Full document sync: the last change carries the whole text
        text = contentChanges[-1].get("text") if isinstance(contentChanges[-1], dict) else None
        if not isinstance(text, str):
            raise ResponseError(INVALID_PARAMS, "content change has no text")
        self.documents.update(document.uri, text)
        await self.driver.index_uri(document.uri)

    async def did_close(self, textDocument: Dict[str, Any]) -> None:
        document = protocol.structure(textDocument, types.TextDocumentIdentifier)
        self.documents.close(document.uri)
        self._trees.pop(document.uri, None)
        # Revert to the content on disk (or drop the file if it is gone)
        await self.driver.index_uri(document.uri)

    # -- queries ----------------------------------------------------------

    async def document_symbol(
        self, textDocument: Dict[str, Any]
    ) -> List[types.SymbolInformation]:
        document = protocol.structure(textDocument, types.TextDocumentIdentifier)
        await self.driver.ensure_fresh(document.uri)
        symbols = self.repository.query().filter(uri_equals(document.uri)).symbols()
        return [protocol.symbol_information(symbol, document.uri) for symbol in symbols]

    async def definition(
        self, textDocument: Dict[str, Any], position: Dict[str, Any]
    ) -> List[types.Location]:
        node = await self._node_at(textDocument, position)
        if node is None:
            return []
        definition = await self._fresh_definition(node)
        if definition is None:
            return []
        return [protocol.location(definition.uri, definition.range)]

    async def references(
        self,
        textDocument: Dict[str, Any],
        position: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> List[types.Location]:
        include_declaration = bool(context and context.get("includeDeclaration"))
        node = await self._node_at(textDocument, position)
        if node is None:
            return []
        fqn = self.resolver.resolve_fqn(node)
        if fqn is None:
            document = protocol.structure(textDocument, types.TextDocumentIdentifier)
            return self._local_references(node, document.uri, include_declaration)

        await self.resolver.wait_for_complete()
        uris = self.repository.get_reference_uris(fqn)
        await asyncio.gather(*(self.driver.ensure_fresh(uri) for uri in uris))

        locations = []
        if include_declaration:
            definition = self.repository.get_definition(fqn)
            if definition is not None:
                locations.append(protocol.location(definition.uri, definition.range))
        for reference in self.repository.get_references(fqn):
            locations.append(protocol.location(reference.uri, reference.range))
        return locations

    async def hover(
        self, textDocument: Dict[str, Any], position: Dict[str, Any]
    ) -> Optional[types.Hover]:
        node = await self._node_at(textDocument, position)
        if node is None:
            return None
        definition = await self._fresh_definition(node)
        if definition is None:
            return None
        return protocol.hover(definition, node.name_range or node.range)

    async def completion(
        self, textDocument: Dict[str, Any], position: Dict[str, Any]
    ) -> types.CompletionList:
        document = protocol.structure(textDocument, types.TextDocumentIdentifier)
        cursor = protocol.to_position(protocol.structure(position, types.Position))
        text, tree = await self._tree(document.uri)

        lines = text.split("\n")
        line = lines[cursor.line] if cursor.line < len(lines) else ""
        match = _DOTTED_PREFIX.search(line[: cursor.character])
        typed = (match.group(1) or "") if match else ""
        qualifier, _, prefix = typed.rpartition(".")

        if qualifier:
            container = qualify_dotted(scope_at(tree, cursor), qualifier)
            if container is None and self.repository.get_definition(qualifier) is not None:
                container = qualifier
            if container is None:
                return types.CompletionList(is_incomplete=False, items=[])
            candidates = self._members(container, prefix)
        else:
            candidates = (
                self.repository.query().definitions().filter(name_starts_with(prefix)).to_list()
            )

        seen = set()
        items = []
        truncated = False
        for definition in sorted(candidates, key=lambda d: (d.name, d.fqn)):
            if definition.fqn in seen:
                continue
            seen.add(definition.fqn)
            if len(items) >= self.completion_limit:
                truncated = True
                break
            items.append(protocol.completion_item(definition))
        return types.CompletionList(is_incomplete=truncated, items=items)

    @staticmethod
    def _local_references(
        node: SyntaxNode, uri: str, include_declaration: bool
    ) -> List[types.Location]:
        """Occurrences of a local name within the function binding it."""
        occurrences = local_occurrences(node)
        if not occurrences:
            return []
        declaration = lookup(node, node.name or "")
        return [
            protocol.location(uri, occurrence.name_range or occurrence.range)
            for occurrence in occurrences
            if include_declaration or declaration is None or occurrence is not declaration.node
        ]

    def _members(self, container: str, prefix: str) -> List[Definition]:
        """Live definitions directly inside ``container`` whose name starts with ``prefix``."""
        head = container + "."
        return [
            definition
            for definition in self.repository.query().definitions()
            if definition.fqn.startswith(head)
            and "." not in definition.fqn[len(head) :]
            and definition.name.startswith(prefix)
        ]

    async def xdefinition(
        self, textDocument: Dict[str, Any], position: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        node = await self._node_at(textDocument, position)
        if node is None:
            return []
        definition = await self._fresh_definition(node)
        if definition is None:
            return []
        return [protocol.xdefinition(definition, self.package_name)]

    # -- helpers ----------------------------------------------------------

    async def _fresh_definition(self, node: SyntaxNode) -> Optional[Definition]:
        """Resolve a node, re-checking a snapshot-restored declaring file first.

        Reparsing the declaring file can move or drop the Definition, so the
        lookup is repeated until it lands in a file that has been checked.
        """
        checked: Set[str] = set()
        definition = await self.resolver.wait_for_definition(node)
        while (
            definition is not None
            and definition.uri not in checked
            and self.driver.is_unverified(definition.uri)
        ):
            checked.add(definition.uri)
            await self.driver.ensure_fresh(definition.uri)
            definition = await self.resolver.wait_for_definition(node)
        return definition

    async def _tree(self, uri: str) -> Tuple[str, SyntaxNode]:
        """Current text and syntax tree of a document."""
        try:
            text = await self.documents.retrieve(uri)
        except ContentUnavailableError as e:
            raise ResponseError(INVALID_PARAMS, f"Cannot read {uri}: {e}") from e

        digest = content_hash(text)
        cached = self._trees.get(uri)
        if cached is not None and cached[0] == digest:
            return text, cached[1]

        try:
            module_name, is_package = module_name_for(
                uri_to_path(uri), self.project_root, self.source_roots
            )
        except ValueError:
            module_name, is_package = "", False
        result = await self.provider.parse_in_executor(uri, text, module_name, is_package)
        self._trees[uri] = (digest, result.tree)
        return text, result.tree

    async def _node_at(
        self, textDocument: Dict[str, Any], position: Dict[str, Any]
    ) -> Optional[SyntaxNode]:
        document = protocol.structure(textDocument, types.TextDocumentIdentifier)
        cursor: Position = protocol.to_position(protocol.structure(position, types.Position))
        _, tree = await self._tree(document.uri)
        return node_at(tree, cursor)
