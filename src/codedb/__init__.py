# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""codedb: cross-file symbol index and language server for Python projects."""

from .config import Config, ConfigurationError
from .index_events import CompletenessSignal, IndexEvents
from .models import (
    Definition,
    FileRecord,
    IndexState,
    Namespace,
    Position,
    Range,
    Reference,
    Symbol,
    SymbolKind,
)
from .repository import Repository, SnapshotError

__version__ = "0.1.0"

__all__ = [
    "CompletenessSignal",
    "Config",
    "ConfigurationError",
    "Definition",
    "FileRecord",
    "IndexEvents",
    "IndexState",
    "Namespace",
    "Position",
    "Range",
    "Reference",
    "Repository",
    "SnapshotError",
    "Symbol",
    "SymbolKind",
]
