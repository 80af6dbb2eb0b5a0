# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Repository: the authoritative cross-file symbol index.

Indices:
- _files: URI -> FileRecord (unique)
- _definitions: FQN -> live Definition (unique)
- _references: FQN -> URI -> [Reference] (multi)

plus per-URI ownership lists so replacing or removing a file drops everything
previously attributed to it.

Duplicate declarations: the first declaration seen for an FQN is the live
Definition. Later declarations from other files are kept as shadowed
candidates and reported by conflicts(); when the owner file stops declaring
the FQN, the earliest surviving candidate is promoted. Re-indexing the owner
with the FQN still declared keeps ownership stable.

Concurrency:
- All mutation and lookup runs under a reentrant lock. A replacement builds
  the new records first and swaps them in within one critical section, so a
  reader never observes a file mid-replacement.
- Events are emitted after the lock is released.

Persistence:
- snapshot()/restore() convert to and from a self-describing dict.
- save()/load() write and read that dict as JSON. An incompatible or corrupt
  snapshot yields an empty Repository (logged as a warning), never an error.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from codedb.index_events import DEFINITION_ADDED, IndexEvents
from codedb.models import Definition, FileRecord, Namespace, Reference
from codedb.query import FileQuery

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Raised internally when a snapshot cannot be restored."""

    pass


class Repository:
    """In-memory symbol index with atomic per-file replacement."""

    SNAPSHOT_FORMAT = "codedb-snapshot"
    SNAPSHOT_VERSION = 1

    def __init__(self, events: Optional[IndexEvents] = None) -> None:
        """Initialize an empty repository.

        Args:
            events: Event bus for ``definition-added`` notifications.
        """
        self.events = events if events is not None else IndexEvents()
        self._lock = threading.RLock()

        self._files: Dict[str, FileRecord] = {}
        self._definitions: Dict[str, Definition] = {}
        # FQN -> URI -> Definition, insertion ordered (first seen first)
        self._candidates: Dict[str, Dict[str, Definition]] = {}
        self._definitions_by_uri: Dict[str, List[Definition]] = {}
        self._references: Dict[str, Dict[str, List[Reference]]] = {}
        self._references_by_uri: Dict[str, List[Reference]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)

    def __contains__(self, uri: object) -> bool:
        with self._lock:
            return uri in self._files

    # -- mutation ---------------------------------------------------------

    def upsert_file(
        self,
        uri: str,
        content_hash: str,
        namespaces: List[Namespace],
        definitions: Iterable[Definition] = (),
        references: Iterable[Reference] = (),
        parse_time: float = 0.0,
        notify: bool = True,
    ) -> FileRecord:
        """Atomically replace everything attributed to ``uri``.

        Args:
            uri: File URI.
            content_hash: Hash of the content the records were built from.
            namespaces: Namespaces (with their Symbols) declared by the file.
            definitions: Definitions declared by the file.
            references: References made by the file.
            parse_time: Seconds spent parsing the file.
            notify: Emit ``definition-added`` if Definitions became live.

        Returns:
            The stored FileRecord.
        """
        record = FileRecord(
            uri=uri, content_hash=content_hash, namespaces=list(namespaces), parse_time=parse_time
        )

        new_definitions: List[Definition] = []
        seen: Set[str] = set()
        for definition in definitions:
            if definition.uri != uri:
                raise ValueError(f"Definition {definition.fqn} is not attributed to {uri}")
            if definition.fqn in seen:
                logger.debug(f"Duplicate declaration of {definition.fqn} in {uri}, keeping first")
                continue
            seen.add(definition.fqn)
            new_definitions.append(definition)

        new_references = list(references)
        for reference in new_references:
            if reference.uri != uri:
                raise ValueError(f"Reference to {reference.fqn} is not attributed to {uri}")

        with self._lock:
            owned = {
                definition.fqn
                for definition in self._definitions_by_uri.get(uri, [])
                if self._definitions.get(definition.fqn) is definition
            }
            self._detach(uri)

            self._files[uri] = record
            added = self._attach_definitions(uri, new_definitions, owned)
            added += self._promote(owned - seen)
            self._attach_references(uri, new_references)

        if added and notify:
            self.events.emit(DEFINITION_ADDED)
        return record

    def remove_file(self, uri: str) -> bool:
        """Remove a file and everything attributed to it.

        Returns:
            True if the file was indexed.
        """
        with self._lock:
            if uri not in self._files:
                return False
            owned = {
                definition.fqn
                for definition in self._definitions_by_uri.get(uri, [])
                if self._definitions.get(definition.fqn) is definition
            }
            self._detach(uri)
            del self._files[uri]
            promoted = self._promote(owned)

        logger.debug(f"Removed {uri} from index")
        if promoted:
            self.events.emit(DEFINITION_ADDED)
        return True

    def clear(self) -> None:
        with self._lock:
            self._files.clear()
            self._definitions.clear()
            self._candidates.clear()
            self._definitions_by_uri.clear()
            self._references.clear()
            self._references_by_uri.clear()

    def _detach(self, uri: str) -> None:
        """Drop definitions and references attributed to ``uri`` (lock held)."""
        for definition in self._definitions_by_uri.pop(uri, []):
            candidates = self._candidates.get(definition.fqn)
            if candidates is not None:
                candidates.pop(uri, None)
                if not candidates:
                    del self._candidates[definition.fqn]
            if self._definitions.get(definition.fqn) is definition:
                del self._definitions[definition.fqn]

        for reference in self._references_by_uri.pop(uri, []):
            by_uri = self._references.get(reference.fqn)
            if by_uri is not None:
                by_uri.pop(uri, None)
                if not by_uri:
                    del self._references[reference.fqn]

    def _attach_definitions(
        self, uri: str, definitions: List[Definition], previously_owned: Set[str]
    ) -> int:
        added = 0
        for definition in definitions:
            self._candidates.setdefault(definition.fqn, {})[uri] = definition
            live = self._definitions.get(definition.fqn)
            if live is None or definition.fqn in previously_owned:
                self._definitions[definition.fqn] = definition
                added += 1
            else:
                logger.debug(
                    f"Conflicting declaration of {definition.fqn} in {uri}, "
                    f"keeping {live.uri}"
                )
        self._definitions_by_uri[uri] = definitions
        return added

    def _promote(self, fqns: Iterable[str]) -> int:
        """Promote the earliest surviving candidate for orphaned FQNs."""
        promoted = 0
        for fqn in fqns:
            if fqn in self._definitions:
                continue
            candidates = self._candidates.get(fqn)
            if candidates:
                definition = next(iter(candidates.values()))
                self._definitions[fqn] = definition
                promoted += 1
                logger.debug(f"Promoted declaration of {fqn} in {definition.uri}")
        return promoted

    def _attach_references(self, uri: str, references: List[Reference]) -> None:
        for reference in references:
            self._references.setdefault(reference.fqn, {}).setdefault(uri, []).append(reference)
        self._references_by_uri[uri] = references

    # -- lookup -----------------------------------------------------------

    def get_file(self, uri: str) -> Optional[FileRecord]:
        with self._lock:
            return self._files.get(uri)

    def get_uris(self) -> List[str]:
        with self._lock:
            return list(self._files)

    def get_definition(self, fqn: str) -> Optional[Definition]:
        with self._lock:
            return self._definitions.get(fqn)

    def get_definitions_for_uri(self, uri: str) -> List[Definition]:
        """Live definitions declared by a file."""
        with self._lock:
            return [
                definition
                for definition in self._definitions_by_uri.get(uri, [])
                if self._definitions.get(definition.fqn) is definition
            ]

    def get_reference_uris(self, fqn: str) -> List[str]:
        """URIs of files containing at least one reference to ``fqn``."""
        with self._lock:
            return list(self._references.get(fqn, {}))

    def get_references(self, fqn: str, uri: Optional[str] = None) -> List[Reference]:
        with self._lock:
            by_uri = self._references.get(fqn, {})
            if uri is not None:
                return list(by_uri.get(uri, []))
            return [reference for refs in by_uri.values() for reference in refs]

    def get_references_for_uri(self, uri: str) -> List[Reference]:
        with self._lock:
            return list(self._references_by_uri.get(uri, []))

    def conflicts(self) -> Dict[str, List[str]]:
        """FQNs declared by more than one file, mapped to declaring URIs.

        The first URI of each list owns the live Definition.
        """
        with self._lock:
            result: Dict[str, List[str]] = {}
            for fqn, candidates in self._candidates.items():
                if len(candidates) > 1:
                    live = self._definitions.get(fqn)
                    uris = list(candidates)
                    if live is not None and live.uri in uris:
                        uris.remove(live.uri)
                        uris.insert(0, live.uri)
                    result[fqn] = uris
            return result

    def query(self) -> FileQuery:
        """Start a lazy query over all indexed files."""

        def files() -> List[FileRecord]:
            with self._lock:
                return list(self._files.values())

        return FileQuery(self, files)

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "files": len(self._files),
                "definitions": len(self._definitions),
                "referenced_fqns": len(self._references),
                "references": sum(len(refs) for refs in self._references_by_uri.values()),
                "conflicts": sum(1 for c in self._candidates.values() if len(c) > 1),
            }

    # -- persistence ------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Serialize the whole repository to a JSON-compatible dict."""
        with self._lock:
            files = []
            for uri, record in self._files.items():
                entry = record.to_dict()
                entry["definitions"] = [d.to_dict() for d in self._definitions_by_uri.get(uri, [])]
                entry["references"] = [r.to_dict() for r in self._references_by_uri.get(uri, [])]
                files.append(entry)
            return {
                "format": self.SNAPSHOT_FORMAT,
                "version": self.SNAPSHOT_VERSION,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "files": files,
            }

    @classmethod
    def restore(cls, data: Any, events: Optional[IndexEvents] = None) -> "Repository":
        """Rebuild a repository from snapshot() output.

        Fails soft: an incompatible or corrupt snapshot returns an empty
        repository so the caller falls back to a full reindex.
        """
        repository = cls(events)
        try:
            repository._restore_files(data)
        except (SnapshotError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Discarding index snapshot: {e}")
            return cls(events)
        return repository

    def _restore_files(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise SnapshotError(f"snapshot must be an object, got {type(data).__name__}")
        if data.get("format") != self.SNAPSHOT_FORMAT:
            raise SnapshotError(f"unknown snapshot format {data.get('format')!r}")
        if data.get("version") != self.SNAPSHOT_VERSION:
            raise SnapshotError(
                f"snapshot version {data.get('version')!r} != {self.SNAPSHOT_VERSION}"
            )
        files = data.get("files")
        if not isinstance(files, list):
            raise SnapshotError("snapshot has no file list")

        for entry in files:
            record = FileRecord.from_dict(entry)
            self.upsert_file(
                record.uri,
                record.content_hash,
                record.namespaces,
                definitions=[Definition.from_dict(d) for d in entry.get("definitions", [])],
                references=[Reference.from_dict(r) for r in entry.get("references", [])],
                parse_time=record.parse_time,
                notify=False,
            )

    def save(self, path: Path) -> None:
        """Write snapshot() to ``path`` as JSON, replacing it atomically."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.snapshot(), f)
        os.replace(tmp_path, path)
        logger.info(f"Index snapshot written to {path} ({len(self)} files)")

    @classmethod
    def load(cls, path: Path, events: Optional[IndexEvents] = None) -> "Repository":
        """Read a snapshot written by save(). Fails soft to an empty repository."""
        if not path.exists():
            logger.info(f"No index snapshot at {path}")
            return cls(events)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Index snapshot {path} is unreadable, reindexing from scratch: {e}")
            return cls(events)

        repository = cls.restore(data, events)
        logger.info(f"Index snapshot loaded from {path} ({len(repository)} files)")
        return repository
