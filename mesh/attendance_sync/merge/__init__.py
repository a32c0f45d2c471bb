"""
Merge module - deterministic conflict resolution.

Invariants:
    - Per-field last-write-wins, ties broken by writer id
    - Older writes never change a stored field
    - Same set of writes in any order yields the same node state
"""

from .clock import HybridClock
from .resolver import (
    ConflictDropped,
    FieldState,
    MergeOutcome,
    check_timestamp,
    is_scalar,
    merge_states,
    resolve,
    wins,
)

__all__ = [
    "HybridClock",
    "ConflictDropped",
    "FieldState",
    "MergeOutcome",
    "check_timestamp",
    "is_scalar",
    "merge_states",
    "resolve",
    "wins",
]
