"""
Unit tests for the wire format and the in-memory transport.

Tests cover:
- WireMessage encoding and validation
- Rebroadcast to other transports only
- Replay buffer for late joiners
- Disconnect, reconnect and injected failures
"""

import json

import pytest

from mesh.attendance_sync.errors import MalformedInputError, TransportClosedError, TransportError
from mesh.attendance_sync.merge import FieldState
from mesh.attendance_sync.transport import (
    MSG_GET,
    MSG_PUT,
    InMemoryRelay,
    InMemoryTransport,
    Transport,
    WireMessage,
)


def put_message(origin="peer-a", value="Alice"):
    return WireMessage(
        MSG_PUT,
        ("app", "class_list", "101"),
        origin,
        fields={"name": FieldState(value, 10.0, origin)},
    )


class Collector:
    """Records inbound messages and connect events."""

    def __init__(self):
        self.messages = []
        self.connects = []

    async def on_message(self, message):
        self.messages.append(message)

    async def on_connect(self, address):
        self.connects.append(address)


class TestWireMessage:
    """Tests for WireMessage."""

    def test_round_trip(self):
        """encode/decode preserves every attribute."""
        original = put_message()
        decoded = WireMessage.decode(original.encode())

        assert decoded == original

    def test_get_message_has_no_fields(self):
        """Get requests carry a path and the children flag."""
        msg = WireMessage(MSG_GET, ("app", "class_list"), "peer-a", children=True)
        data = json.loads(msg.encode())

        assert data["type"] == "get"
        assert data["children"] is True
        assert data["fields"] == {}

    def test_ids_are_unique(self):
        """Every message gets its own id."""
        assert put_message().id != put_message().id

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "[1, 2]",
            json.dumps({"type": "put", "id": "x", "origin": "p"}),
            json.dumps({"type": "shout", "id": "x", "origin": "p", "path": ["a"]}),
            json.dumps({"type": "put", "id": "x", "origin": "p", "path": []}),
            json.dumps({"type": "put", "id": 1, "origin": "p", "path": ["a"]}),
            json.dumps({"type": "put", "id": "x", "origin": "p", "path": ["a"], "fields": [1]}),
            json.dumps(
                {"type": "put", "id": "x", "origin": "p", "path": ["a"], "fields": {"f": {"v": [1]}}}
            ),
            '{"type": "put", "id": "x", "origin": "p", "path": ["a"], '
            '"fields": {"f": {"v": 1, "ts": NaN, "w": "p"}}}',
            '{"type": "put", "id": "x", "origin": "p", "path": ["a"], '
            '"fields": {"f": {"v": 1, "ts": Infinity, "w": "p"}}}',
            '{"type": "put", "id": "x", "origin": "p", "path": ["a"], '
            '"fields": {"f": {"v": -Infinity, "ts": 1, "w": "p"}}}',
        ],
    )
    def test_malformed_frames_rejected(self, frame):
        """Anything that is not a well-formed message raises MalformedInputError."""
        with pytest.raises(MalformedInputError):
            WireMessage.decode(frame)


class TestInMemoryTransport:
    """Tests for InMemoryRelay + InMemoryTransport."""

    @pytest.fixture
    def relay(self):
        return InMemoryRelay(buffer_size=10)

    def test_satisfies_protocol(self, relay):
        """InMemoryTransport is a Transport."""
        assert isinstance(InMemoryTransport(relay, "p"), Transport)

    @pytest.mark.asyncio
    async def test_connect_fires_on_connect(self, relay):
        """on_connect is called with the relay address."""
        collector = Collector()
        transport = InMemoryTransport(relay, "peer-a")
        transport.set_handlers(collector.on_message, collector.on_connect)

        await transport.connect()

        assert transport.is_connected
        assert collector.connects == ["memory://relay"]
        await transport.close()
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, relay):
        """send() on a closed transport raises TransportClosedError."""
        transport = InMemoryTransport(relay, "peer-a")

        with pytest.raises(TransportClosedError):
            await transport.send(put_message())

    @pytest.mark.asyncio
    async def test_broadcast_skips_sender(self, relay):
        """Every other transport receives the frame; the sender does not."""
        collectors = {name: Collector() for name in ("a", "b", "c")}
        transports = {}
        for name, collector in collectors.items():
            transports[name] = InMemoryTransport(relay, name)
            transports[name].set_handlers(collector.on_message)
            await transports[name].connect()

        message = put_message(origin="a")
        await transports["a"].send(message)
        for transport in transports.values():
            await transport.wait_idle()

        assert collectors["a"].messages == []
        assert collectors["b"].messages == [message]
        assert collectors["c"].messages == [message]
        for transport in transports.values():
            await transport.close()

    @pytest.mark.asyncio
    async def test_late_joiner_gets_buffered_puts(self, relay):
        """Put frames sent before a transport attaches are replayed to it."""
        sender = InMemoryTransport(relay, "a")
        sender.set_handlers(Collector().on_message)
        await sender.connect()
        await sender.send(put_message(value="first"))
        await sender.send(WireMessage(MSG_GET, ("app",), "a"))

        late = Collector()
        joiner = InMemoryTransport(relay, "b")
        joiner.set_handlers(late.on_message)
        await joiner.connect()
        await joiner.wait_idle()

        assert [m.type for m in late.messages] == [MSG_PUT]
        assert late.messages[0].fields["name"].value == "first"
        await sender.close()
        await joiner.close()

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        """Only the most recent puts are replayed."""
        relay = InMemoryRelay(buffer_size=2)
        sender = InMemoryTransport(relay, "a")
        sender.set_handlers(Collector().on_message)
        await sender.connect()
        for value in ("v1", "v2", "v3"):
            await sender.send(put_message(value=value))

        late = Collector()
        joiner = InMemoryTransport(relay, "b")
        joiner.set_handlers(late.on_message)
        await joiner.connect()
        await joiner.wait_idle()

        assert [m.fields["name"].value for m in late.messages] == ["v2", "v3"]
        await sender.close()
        await joiner.close()

    @pytest.mark.asyncio
    async def test_disconnected_transport_misses_frames(self):
        """Frames sent while disconnected are lost when nothing is buffered."""
        relay_without_buffer = InMemoryRelay(buffer_size=0)
        a = InMemoryTransport(relay_without_buffer, "a")
        b_collector = Collector()
        b = InMemoryTransport(relay_without_buffer, "b")
        a.set_handlers(Collector().on_message)
        b.set_handlers(b_collector.on_message, b_collector.on_connect)
        await a.connect()
        await b.connect()

        await b.disconnect()
        await a.send(put_message())
        await b.reconnect()
        await b.wait_idle()

        assert b_collector.messages == []
        assert len(b_collector.connects) == 2
        await a.close()
        await b.close()

    @pytest.mark.asyncio
    async def test_frame_log_is_bounded(self):
        """Only the newest frames are kept for inspection; the count keeps going."""
        relay = InMemoryRelay(buffer_size=0, frame_log_size=3)
        sender = InMemoryTransport(relay, "a")
        sender.set_handlers(Collector().on_message)
        await sender.connect()
        for i in range(10):
            await sender.send(put_message(value=f"v{i}"))

        assert relay.get_frame_count() == 10
        assert [m.fields["name"].value for m in relay.get_all_frames()] == ["v7", "v8", "v9"]
        relay.clear()
        assert relay.get_frame_count() == 0
        await sender.close()

    @pytest.mark.asyncio
    async def test_injected_send_failure(self, relay):
        """inject_send_failures makes send() raise TransportError."""
        transport = InMemoryTransport(relay, "a")
        transport.set_handlers(Collector().on_message)
        await transport.connect()
        transport.inject_send_failures()

        with pytest.raises(TransportError):
            await transport.send(put_message())

        transport.inject_send_failures(False)
        await transport.send(put_message())
        assert relay.get_frame_count() == 1
        await transport.close()
