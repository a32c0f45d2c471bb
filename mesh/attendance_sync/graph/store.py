"""
Local graph store.

The GraphStore is the unit of truth every other component reads and
writes. It holds path-addressed nodes, each a map of field name to
FieldState (value + timestamp + writer), and runs every write, local or
remote, through the merge resolver.

Invariants:
    - Writes are field-level merges, never whole-node replacement
    - A field only changes when the incoming state wins last-write-wins
    - Listeners are called once per write that changed at least one field,
      in the order writes were applied
    - Nodes handed to callers are copies; mutating them has no effect

How to change safely:
    - Listeners run while the store lock is held; they must only schedule
      work (enqueue, create tasks), never call user code directly
    - Keep local and remote writes on the same _apply path so merge
      semantics cannot diverge by origin
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import MalformedInputError
from ..merge.clock import HybridClock
from ..merge.resolver import ConflictDropped, FieldState, check_timestamp, is_scalar, resolve
from .path import Path, PathLike, make_path, parent, to_text
from .persistence import SqliteGraphLog

logger = logging.getLogger(__name__)

ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"
ORIGIN_LOAD = "load"


@dataclass
class Node:
    """Snapshot of a node.

    Attributes:
        path: Node path
        fields: Field name to value
        states: Field name to FieldState (value, ts, writer)
    """
    path: Path
    fields: dict[str, Any]
    states: dict[str, FieldState]

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def key(self) -> str:
        """Last path segment."""
        return self.path[-1]

    @property
    def updated_at(self) -> float:
        """Greatest field timestamp."""
        return max((s.ts for s in self.states.values()), default=0.0)


@dataclass
class ChangeEvent:
    """A write that changed at least one field.

    Attributes:
        path: Node path
        applied: Field states that won and were stored
        node: Node snapshot after the write
        origin: ORIGIN_LOCAL, ORIGIN_REMOTE or ORIGIN_LOAD
        is_new: Whether the node did not exist before this write
        context: Origin-specific metadata (e.g. wire message id)
    """
    path: Path
    applied: dict[str, FieldState]
    node: Node
    origin: str
    is_new: bool
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class PutResult:
    """Result of a put or remote merge.

    Attributes:
        path: Node path
        applied: Field states that were stored
        dropped: Incoming states that lost to stored ones
        node: Node snapshot after the write (None if the node still does not exist)
    """
    path: Path
    applied: dict[str, FieldState]
    dropped: list[ConflictDropped]
    node: Node | None

    @property
    def changed(self) -> bool:
        return bool(self.applied)


Listener = Callable[[ChangeEvent], None]


class GraphStore:
    """Path-addressed, field-merging key/value graph.

    Thread safety:
        All reads and writes take an internal re-entrant lock, so put() may
        be called concurrently from several threads. Listener callbacks run
        under the lock and must only schedule work.

    Example:
        >>> store = GraphStore(peer_id="peer-a")
        >>> _ = store.put(("app", "class_list", "101"), {"studentId": "101", "name": "Alice"})
        >>> store.get(("app", "class_list", "101")).get("name")
        'Alice'
    """

    def __init__(
        self,
        peer_id: str | None = None,
        clock: HybridClock | None = None,
        persistence: SqliteGraphLog | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            peer_id: Writer id stamped on local writes (generated if not provided)
            clock: Timestamp source for local writes
            persistence: Optional SQLite log to mirror accepted states into
        """
        self.peer_id = peer_id or f"peer-{uuid.uuid4().hex[:12]}"
        self.clock = clock or HybridClock()
        self.persistence = persistence
        self.lock = threading.RLock()

        self._nodes: dict[Path, dict[str, FieldState]] = {}
        self._children: dict[Path, set[str]] = {}
        self._listeners: list[Listener] = []

        self._write_count = 0
        self._applied_count = 0
        self._dropped_count = 0

    # Listeners

    def add_listener(self, listener: Listener) -> None:
        with self.lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self.lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # Writes

    def put(
        self,
        path: PathLike,
        fields: Mapping[str, Any],
        timestamp: float | None = None,
        writer: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> PutResult:
        """Write fields to a node.

        Only the given fields are touched; other fields of the node keep
        their values. Pass ``None`` as a value to clear a field.

        Args:
            path: Node path
            fields: Field name to scalar value
            timestamp: Write timestamp (defaults to clock.tick())
            writer: Writer id (defaults to this store's peer id)
            context: Metadata passed through to listeners

        Returns:
            PutResult with applied and dropped fields

        Raises:
            MalformedInputError: If the path or a field is invalid
        """
        node_path = make_path(path)
        self.validate_fields(fields)

        if timestamp is None:
            ts = self.clock.tick()
        else:
            ts = check_timestamp(timestamp)
            self.clock.observe(ts)

        author = writer or self.peer_id
        states = {name: FieldState(value=value, ts=ts, writer=author) for name, value in fields.items()}
        return self._apply(node_path, states, ORIGIN_LOCAL, context)

    def put_states(
        self,
        path: PathLike,
        states: Mapping[str, FieldState],
        context: dict[str, Any] | None = None,
    ) -> PutResult:
        """Local write of pre-built field states (e.g. signed by a ScopedWriter)."""
        node_path = make_path(path)
        self.validate_fields({name: s.value for name, s in states.items()})
        self.validate_states(states)
        self.clock.observe(max(s.ts for s in states.values()))
        return self._apply(node_path, dict(states), ORIGIN_LOCAL, context)

    def merge_remote(
        self,
        path: PathLike,
        states: Mapping[str, FieldState],
        origin: str = ORIGIN_REMOTE,
        context: dict[str, Any] | None = None,
    ) -> PutResult:
        """Merge field states received from another peer.

        States keep their original timestamps and writers, so re-delivery
        and out-of-order delivery converge to the same node.
        """
        node_path = make_path(path)
        if not states:
            return PutResult(path=node_path, applied={}, dropped=[], node=self.get(node_path))

        self.validate_states(states)
        self.clock.observe(max(s.ts for s in states.values()))
        return self._apply(node_path, dict(states), origin, context)

    def validate_fields(self, fields: Mapping[str, Any]) -> None:
        if not isinstance(fields, Mapping) or not fields:
            raise MalformedInputError("A write needs at least one field")
        errors = []
        for name, value in fields.items():
            if not isinstance(name, str) or not name:
                errors.append(f"Invalid field name: {name!r}")
            elif not is_scalar(value):
                errors.append(f"Field '{name}' is not a scalar: {type(value).__name__}")
        if errors:
            raise MalformedInputError("Invalid fields", errors=errors)

    def validate_states(self, states: Mapping[str, FieldState]) -> None:
        errors = []
        for name, state in states.items():
            if not is_scalar(state.value):
                errors.append(f"Field '{name}' is not a scalar: {type(state.value).__name__}")
            try:
                check_timestamp(state.ts)
            except MalformedInputError as e:
                errors.append(f"Field '{name}': {e.message}")
        if errors:
            raise MalformedInputError("Invalid field states", errors=errors)

    def _apply(
        self,
        path: Path,
        states: dict[str, FieldState],
        origin: str,
        context: dict[str, Any] | None,
    ) -> PutResult:
        with self.lock:
            current = self._nodes.get(path)
            is_new = current is None
            outcome = resolve(current or {}, states)

            self._write_count += 1
            if outcome.dropped:
                self._dropped_count += len(outcome.dropped)
                for dropped in outcome.dropped:
                    logger.debug(
                        "Dropped stale field write",
                        extra={
                            "path": to_text(path),
                            "field": dropped.field,
                            "incoming_ts": dropped.incoming.ts,
                            "current_ts": dropped.current.ts,
                            "origin": origin,
                        },
                    )

            if not outcome.applied:
                return PutResult(
                    path=path,
                    applied={},
                    dropped=outcome.dropped,
                    node=self._snapshot(path),
                )

            # Memory only changes once the log has accepted the states
            if self.persistence is not None and origin != ORIGIN_LOAD:
                self.persistence.upsert(path, outcome.applied)

            node_states = self._nodes.setdefault(path, {})
            node_states.update(outcome.applied)
            self._applied_count += len(outcome.applied)

            parent_path = parent(path)
            if parent_path is not None:
                self._children.setdefault(parent_path, set()).add(path[-1])

            node = self._snapshot(path)
            event = ChangeEvent(
                path=path,
                applied=dict(outcome.applied),
                node=node,
                origin=origin,
                is_new=is_new,
                context=dict(context or {}),
            )
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Store listener failed: {e}", exc_info=True)

        return PutResult(path=path, applied=dict(outcome.applied), dropped=outcome.dropped, node=node)

    # Reads

    def _snapshot(self, path: Path) -> Node | None:
        states = self._nodes.get(path)
        if states is None:
            return None
        return Node(
            path=path,
            fields={name: s.value for name, s in states.items()},
            states=dict(states),
        )

    def get(self, path: PathLike) -> Node | None:
        """Get a node snapshot, or None if nothing was ever written there."""
        node_path = make_path(path)
        with self.lock:
            return self._snapshot(node_path)

    def states(self, path: PathLike) -> dict[str, FieldState]:
        """Raw field states of a node (empty if absent)."""
        node_path = make_path(path)
        with self.lock:
            return dict(self._nodes.get(node_path, {}))

    def child_paths(self, prefix: PathLike) -> list[Path]:
        """Paths of existing direct children of a prefix."""
        prefix_path = make_path(prefix)
        with self.lock:
            return [
                prefix_path + (key,)
                for key in self._children.get(prefix_path, ())
                if prefix_path + (key,) in self._nodes
            ]

    def children(self, prefix: PathLike) -> Iterator[tuple[Path, Node]]:
        """Lazily iterate direct children of a prefix, in no particular order.

        The set of child keys is captured when iteration starts; children
        created afterwards are delivered by subscribe_children instead.
        """
        for child_path in self.child_paths(prefix):
            node = self.get(child_path)
            if node is not None:
                yield child_path, node

    def __contains__(self, path: PathLike) -> bool:
        return self.get(path) is not None

    def __len__(self) -> int:
        with self.lock:
            return len(self._nodes)

    # Persistence

    def load(self) -> int:
        """Replay persisted states into memory.

        Returns:
            Number of field states loaded
        """
        if self.persistence is None:
            return 0
        if not self.persistence.is_open:
            self.persistence.open()

        loaded = 0
        for path, name, state in self.persistence.load():
            result = self.merge_remote(path, {name: state}, origin=ORIGIN_LOAD)
            loaded += len(result.applied)

        logger.info("Loaded graph from local log", extra={"fields": loaded, "nodes": len(self)})
        return loaded

    @property
    def stats(self) -> dict[str, Any]:
        """Store statistics."""
        with self.lock:
            return {
                "peer_id": self.peer_id,
                "nodes": len(self._nodes),
                "writes": self._write_count,
                "applied_fields": self._applied_count,
                "dropped_fields": self._dropped_count,
            }
