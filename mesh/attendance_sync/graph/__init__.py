"""
Graph module - the local path-addressed data graph.

This module handles:
- Path addressing and identity namespaces
- The in-memory graph store with field-level merge
- Optional SQLite persistence of accepted field states

Invariants:
    - Every write, local or remote, goes through the merge resolver
    - A successful write notifies every registered listener exactly once
"""

from .path import APP_NAMESPACE, Path, join, make_path, namespace_of, namespace_root
from .persistence import SqliteGraphLog
from .store import ChangeEvent, GraphStore, Node, PutResult

__all__ = [
    "APP_NAMESPACE",
    "Path",
    "join",
    "make_path",
    "namespace_of",
    "namespace_root",
    "SqliteGraphLog",
    "ChangeEvent",
    "GraphStore",
    "Node",
    "PutResult",
]
