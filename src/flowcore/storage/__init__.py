# src/flowcore/storage/__init__.py
"""
Checkpoint persistence for flowcore (SQLite).

- db: connection factory + pragmas
- migrations: lightweight SQL migrations runner
- repo: checkpoint store protocol and its SQLite / in-memory adapters
"""

from .db import SQLiteDB
from .migrations import apply_migrations
from .repo import CheckpointRepo, CheckpointStore, InMemoryCheckpointStore, SQLiteCheckpointStore

__all__ = [
    "SQLiteDB",
    "apply_migrations",
    "CheckpointRepo",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLiteCheckpointStore",
]
