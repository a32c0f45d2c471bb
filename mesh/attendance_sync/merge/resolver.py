"""
Last-write-wins merge resolution.

Pure functions with no I/O. Both local and remote writes go through
resolve(), so a field's final value depends only on the set of writes a
peer has seen, never on the order they arrived in.

Ordering of two states for the same field:
    1. Greater timestamp wins
    2. Equal timestamps: lexicographically smaller writer id wins
    3. Equal timestamp and writer: larger canonical JSON of the value wins

Identical states never win, which makes re-delivery a no-op.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..errors import MalformedInputError

SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class FieldState:
    """Value of one field plus the metadata used to order writes.

    Attributes:
        value: Scalar field value (None clears the field)
        ts: Writer timestamp (hybrid-clock milliseconds)
        writer: Peer id of the writer
        sig: Signature by the namespace owner (namespaced paths only)
    """
    value: Any
    ts: float
    writer: str
    sig: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        data = {"v": self.value, "ts": self.ts, "w": self.writer}
        if self.sig is not None:
            data["s"] = self.sig
        return data

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> FieldState:
        """Decode a wire-encoded field state.

        Raises:
            MalformedInputError: If keys are missing or have the wrong type
        """
        try:
            value = data["v"]
            ts = data["ts"]
            writer = data["w"]
        except (KeyError, TypeError) as e:
            raise MalformedInputError(f"Invalid field state: {data!r}") from e
        if not is_scalar(value):
            raise MalformedInputError(f"Field value is not a scalar: {value!r}")
        check_timestamp(ts)
        if not isinstance(writer, str) or not writer:
            raise MalformedInputError(f"Invalid field writer: {writer!r}")
        sig = data.get("s")
        if sig is not None and not isinstance(sig, str):
            raise MalformedInputError(f"Invalid field signature: {sig!r}")
        return cls(value=value, ts=float(ts), writer=writer, sig=sig)


@dataclass(frozen=True)
class ConflictDropped:
    """An incoming field state that lost to the stored one.

    Not an error: the outcome is logged and counted, never raised.
    """
    field: str
    incoming: FieldState
    current: FieldState


@dataclass
class MergeOutcome:
    """Result of merging incoming states into a node.

    Attributes:
        applied: Field states that replaced (or created) the stored state
        dropped: Incoming states that lost the comparison
    """
    applied: Dict[str, FieldState] = field(default_factory=dict)
    dropped: List[ConflictDropped] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def is_scalar(value: Any) -> bool:
    """JSON scalar; NaN and infinities are not values."""
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return isinstance(value, SCALAR_TYPES)


def check_timestamp(ts: Any) -> float:
    """Validate a write timestamp and return it as a float.

    Raises:
        MalformedInputError: If ts is not an int or float with a finite float value
    """
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        raise MalformedInputError(f"Invalid field timestamp: {ts!r}")
    try:
        value = float(ts)
    except OverflowError:
        raise MalformedInputError(f"Field timestamp out of range: {ts!r}") from None
    if not math.isfinite(value):
        raise MalformedInputError(f"Invalid field timestamp: {ts!r}")
    return value


def _value_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def same_state(a: FieldState, b: FieldState) -> bool:
    """Same write, distinguishing ``True`` from ``1``; signatures are not compared."""
    return a.ts == b.ts and a.writer == b.writer and _value_key(a.value) == _value_key(b.value)


def wins(incoming: FieldState, current: Optional[FieldState]) -> bool:
    """Whether ``incoming`` should replace ``current``."""
    if current is None:
        return True
    if incoming.ts != current.ts:
        return incoming.ts > current.ts
    if incoming.writer != current.writer:
        return incoming.writer < current.writer
    return _value_key(incoming.value) > _value_key(current.value)


def resolve(
    current: Mapping[str, FieldState],
    incoming: Mapping[str, FieldState],
) -> MergeOutcome:
    """Merge incoming field states into the current ones.

    Args:
        current: Stored field states of the node
        incoming: Field states from a local or remote write

    Returns:
        MergeOutcome listing applied and dropped fields
    """
    outcome = MergeOutcome()
    for name, state in incoming.items():
        existing = current.get(name)
        if wins(state, existing):
            outcome.applied[name] = state
        elif existing is not None and not same_state(state, existing):
            outcome.dropped.append(ConflictDropped(field=name, incoming=state, current=existing))
    return outcome


def merge_states(
    current: Mapping[str, FieldState],
    incoming: Mapping[str, FieldState],
) -> Dict[str, FieldState]:
    """Return the merged field map without mutating either input."""
    merged = dict(current)
    merged.update(resolve(current, incoming).applied)
    return merged
