"""
Unit tests for last-write-wins merge resolution.

Tests cover:
- Timestamp, writer and value tie-breaks
- Convergence under random delivery orders
- Monotonicity (older writes never change a field)
- Wire encoding of field states
"""

import itertools
import random

import pytest

from mesh.attendance_sync.errors import MalformedInputError
from mesh.attendance_sync.merge import (
    ConflictDropped,
    FieldState,
    check_timestamp,
    is_scalar,
    merge_states,
    resolve,
    wins,
)


class TestWins:
    """Tests for the field ordering."""

    def test_anything_beats_missing(self):
        """A first write always wins."""
        assert wins(FieldState("a", 1.0, "p1"), None)

    def test_greater_timestamp_wins(self):
        """Newer timestamp wins regardless of writer."""
        old = FieldState("old", 100.0, "a")
        new = FieldState("new", 101.0, "z")

        assert wins(new, old)
        assert not wins(old, new)

    def test_tie_broken_by_smaller_writer(self):
        """On equal timestamps the lexicographically smaller writer wins."""
        a = FieldState("from-a", 100.0, "peer-a")
        b = FieldState("from-b", 100.0, "peer-b")

        assert wins(a, b)
        assert not wins(b, a)

    def test_tie_broken_by_value(self):
        """Equal timestamp and writer fall back to the larger canonical value."""
        low = FieldState("apple", 100.0, "peer-a")
        high = FieldState("banana", 100.0, "peer-a")

        assert wins(high, low)
        assert not wins(low, high)

    def test_identical_state_never_wins(self):
        """Re-delivery of the same state is a no-op."""
        state = FieldState("x", 100.0, "peer-a")
        assert not wins(state, FieldState("x", 100.0, "peer-a"))

    def test_bool_and_int_are_distinct_values(self):
        """True and 1 are different values for tie-breaking."""
        as_bool = FieldState(True, 100.0, "peer-a")
        as_int = FieldState(1, 100.0, "peer-a")

        assert wins(as_bool, as_int) != wins(as_int, as_bool)


class TestResolve:
    """Tests for resolve()."""

    def test_field_level_merge(self):
        """Only incoming fields are considered; others are untouched."""
        current = {
            "name": FieldState("Alice", 100.0, "p1"),
            "active": FieldState(True, 100.0, "p1"),
        }
        incoming = {"active": FieldState(False, 200.0, "p1")}

        merged = merge_states(current, incoming)

        assert merged["name"].value == "Alice"
        assert merged["active"].value is False

    def test_dropped_is_reported_not_raised(self):
        """A losing write becomes a ConflictDropped outcome."""
        current = {"name": FieldState("new", 200.0, "p1")}
        incoming = {"name": FieldState("old", 100.0, "p2")}

        outcome = resolve(current, incoming)

        assert not outcome.changed
        assert outcome.dropped == [
            ConflictDropped(field="name", incoming=incoming["name"], current=current["name"])
        ]

    def test_duplicate_is_neither_applied_nor_dropped(self):
        """An identical state produces no outcome at all."""
        state = FieldState("same", 100.0, "p1")
        outcome = resolve({"f": state}, {"f": FieldState("same", 100.0, "p1")})

        assert outcome.applied == {}
        assert outcome.dropped == []


class TestConvergence:
    """Property-style tests: any delivery order yields the same state."""

    @staticmethod
    def _random_writes(rng, count):
        writers = ["peer-a", "peer-b", "peer-c"]
        fields = ["name", "active", "timestamp"]
        values = ["x", "y", 1, 2, True, False, None, 1.5]
        return [
            (
                rng.choice(fields),
                FieldState(rng.choice(values), float(rng.randint(1, 5)), rng.choice(writers)),
            )
            for _ in range(count)
        ]

    @staticmethod
    def _apply_all(writes):
        node = {}
        for name, state in writes:
            node = merge_states(node, {name: state})
        return node

    @pytest.mark.parametrize("seed", range(25))
    def test_random_orders_converge(self, seed):
        """Two peers applying the same writes in different orders agree."""
        rng = random.Random(seed)
        writes = self._random_writes(rng, 30)

        expected = self._apply_all(writes)
        for _ in range(10):
            shuffled = list(writes)
            rng.shuffle(shuffled)
            result = self._apply_all(shuffled)
            assert {k: v.value for k, v in result.items()} == {
                k: v.value for k, v in expected.items()
            }
            assert result == expected

    def test_all_permutations_of_a_tie(self):
        """Every ordering of concurrent same-timestamp writes converges."""
        writes = [
            ("f", FieldState("a", 10.0, "peer-b")),
            ("f", FieldState("b", 10.0, "peer-a")),
            ("f", FieldState("c", 10.0, "peer-a")),
        ]
        results = {self._apply_all(list(order))["f"].value for order in itertools.permutations(writes)}

        assert results == {"c"}

    def test_monotonicity(self):
        """An older write never changes a stored field."""
        rng = random.Random(7)
        for _ in range(100):
            current_ts = float(rng.randint(50, 100))
            current = {"f": FieldState("current", current_ts, rng.choice(["a", "b"]))}
            older = {"f": FieldState("older", current_ts - rng.randint(1, 49), "a")}

            assert merge_states(current, older)["f"].value == "current"


class TestFieldStateWire:
    """Tests for FieldState wire encoding."""

    def test_signature_is_optional_on_the_wire(self):
        """Unsigned states carry no 's' key."""
        assert FieldState("v", 1.0, "p").to_wire() == {"v": "v", "ts": 1.0, "w": "p"}
        assert FieldState("v", 1.0, "p", sig="abc").to_wire()["s"] == "abc"

    def test_from_wire_accepts_integer_timestamps(self):
        """JSON integers decode to float timestamps."""
        state = FieldState.from_wire({"v": 3, "ts": 1000, "w": "p"})
        assert state == FieldState(3, 1000.0, "p")

    @pytest.mark.parametrize(
        "data",
        [
            {"ts": 1.0, "w": "p"},
            {"v": {"nested": 1}, "ts": 1.0, "w": "p"},
            {"v": 1, "ts": "soon", "w": "p"},
            {"v": 1, "ts": True, "w": "p"},
            {"v": 1, "ts": float("nan"), "w": "p"},
            {"v": 1, "ts": float("inf"), "w": "p"},
            {"v": float("nan"), "ts": 1.0, "w": "p"},
            {"v": 1, "ts": 1.0, "w": ""},
            {"v": 1, "ts": 1.0, "w": "p", "s": 42},
            "not-a-dict",
        ],
    )
    def test_from_wire_rejects_malformed(self, data):
        """Malformed states raise MalformedInputError."""
        with pytest.raises(MalformedInputError):
            FieldState.from_wire(data)


class TestFiniteValues:
    """NaN and infinities never enter the ordering."""

    def test_non_finite_floats_are_not_scalars(self):
        assert is_scalar(1.5)
        assert not is_scalar(float("nan"))
        assert not is_scalar(float("-inf"))

    @pytest.mark.parametrize("ts", [float("nan"), float("inf"), 10**400, "1", None])
    def test_check_timestamp_rejects(self, ts):
        with pytest.raises(MalformedInputError):
            check_timestamp(ts)

    def test_check_timestamp_returns_float(self):
        assert check_timestamp(5) == 5.0
