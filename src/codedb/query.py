# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Lazy, composable queries over the Repository.

A query is a re-iterable sequence of typed rows. Each stage is a plain
generator function from one row type to another; query objects only compose
them, so nothing is evaluated until iteration and no stage has side effects:

    repository.query()                      # FileQuery over all files
        .filter(lambda f: f.uri == uri)     # FileQuery
        .namespaces()                       # NamespaceQuery
        .symbols()                          # SymbolQuery
        .definitions()                      # DefinitionQuery

The file list is copied when iteration starts, so a query observes each
FileRecord either before or after a replacement, never in between.
"""

from typing import (
    TYPE_CHECKING,
    Callable,
    Generic,
    Iterable,
    Iterator,
    List,
    Optional,
    TypeVar,
)

from codedb.models import Definition, FileRecord, Namespace, Reference, Symbol

if TYPE_CHECKING:
    from codedb.repository import Repository

T = TypeVar("T")
Q = TypeVar("Q", bound="Query")


class Query(Generic[T]):
    """Base lazy query. ``source`` is re-invoked on every iteration."""

    def __init__(self, repository: "Repository", source: Callable[[], Iterable[T]]):
        self._repository = repository
        self._source = source

    def __iter__(self) -> Iterator[T]:
        return iter(self._source())

    def filter(self: Q, predicate: Callable[[T], bool]) -> Q:
        source = self._source
        return type(self)(self._repository, lambda: (row for row in source() if predicate(row)))

    def first(self) -> Optional[T]:
        for row in self:
            return row
        return None

    def to_list(self) -> List[T]:
        return list(self)

    def count(self) -> int:
        return sum(1 for _ in self)


def namespaces_of(files: Iterable[FileRecord]) -> Iterator[Namespace]:
    for record in files:
        yield from record.namespaces


def symbols_of(namespaces: Iterable[Namespace]) -> Iterator[Symbol]:
    for namespace in namespaces:
        yield from namespace.symbols


def definitions_of_files(
    repository: "Repository", files: Iterable[FileRecord]
) -> Iterator[Definition]:
    for record in files:
        yield from repository.get_definitions_for_uri(record.uri)


def references_of_files(
    repository: "Repository", files: Iterable[FileRecord]
) -> Iterator[Reference]:
    for record in files:
        yield from repository.get_references_for_uri(record.uri)


def definitions_of_symbols(
    repository: "Repository", symbols: Iterable[Symbol]
) -> Iterator[Definition]:
    for symbol in symbols:
        definition = repository.get_definition(symbol.fqn)
        if definition is not None:
            yield definition


class FileQuery(Query[FileRecord]):
    def namespaces(self) -> "NamespaceQuery":
        source = self._source
        return NamespaceQuery(self._repository, lambda: namespaces_of(source()))

    def symbols(self) -> "SymbolQuery":
        return self.namespaces().symbols()

    def definitions(self) -> "DefinitionQuery":
        source, repository = self._source, self._repository
        return DefinitionQuery(repository, lambda: definitions_of_files(repository, source()))

    def references(self) -> "ReferenceQuery":
        source, repository = self._source, self._repository
        return ReferenceQuery(repository, lambda: references_of_files(repository, source()))


class NamespaceQuery(Query[Namespace]):
    def symbols(self) -> "SymbolQuery":
        source = self._source
        return SymbolQuery(self._repository, lambda: symbols_of(source()))


class SymbolQuery(Query[Symbol]):
    def definitions(self) -> "DefinitionQuery":
        source, repository = self._source, self._repository
        return DefinitionQuery(repository, lambda: definitions_of_symbols(repository, source()))


class DefinitionQuery(Query[Definition]):
    pass


class ReferenceQuery(Query[Reference]):
    pass


def uri_equals(uri: str) -> Callable[[FileRecord], bool]:
    """Predicate matching a single file."""
    return lambda record: record.uri == uri


def name_starts_with(prefix: str) -> Callable[[Definition], bool]:
    """Predicate matching definitions by the start of their short name."""
    return lambda definition: definition.name.startswith(prefix)
