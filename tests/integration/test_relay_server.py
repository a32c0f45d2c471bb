"""
Integration tests for the relay server and the websocket transport.

Tests cover:
- /health status
- Rebroadcast without echo, replay buffer, dropped frames
- Peers syncing attendance data through a real relay socket
"""

import asyncio
import json

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from mesh.attendance_sync.attendance import (
    AdminConsole,
    SessionStatus,
    StudentCheckIn,
    parse_checkin_link,
)
from mesh.attendance_sync.config import PeerConfig
from mesh.attendance_sync.errors import TransportClosedError, TransportConnectionError
from mesh.attendance_sync.identity import Identity
from mesh.attendance_sync.merge import FieldState
from mesh.attendance_sync.peer import Peer
from mesh.attendance_sync.transport import MSG_PUT, RelayServer, WebSocketTransport, WireMessage


def put_frame(value="Alice"):
    return WireMessage(
        MSG_PUT,
        ("app", "class_list", "101"),
        "raw-client",
        fields={"name": FieldState(value, 10.0, "raw-client")},
    ).encode()


async def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def relay():
    return RelayServer(buffer_size=2, heartbeat=5.0)


@pytest_asyncio.fixture
async def client(relay):
    client = TestClient(TestServer(relay.create_app()))
    await client.start_server()
    yield client
    await client.close()


def sync_url(client):
    return str(client.make_url("/sync")).replace("http://", "ws://")


class TestRelayServer:
    """Tests for RelayServer over raw websocket clients."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        data = await resp.json()
        assert data == {"status": "ok", "peers": 0, "buffered": 0, "relayed": 0, "dropped": 0}

    @pytest.mark.asyncio
    async def test_frames_rebroadcast_without_echo(self, client, relay):
        """The sender never gets its own frame back."""
        a = await client.ws_connect("/sync")
        b = await client.ws_connect("/sync")
        await wait_for(lambda: relay.stats["peers"] == 2)

        frame = put_frame()
        await a.send_str(frame)

        assert await b.receive_str(timeout=5) == frame
        with pytest.raises(asyncio.TimeoutError):
            await a.receive_str(timeout=0.2)
        await a.close()
        await b.close()

    @pytest.mark.asyncio
    async def test_late_peer_receives_buffered_puts(self, client, relay):
        """Only the newest buffer_size put frames are replayed."""
        a = await client.ws_connect("/sync")
        for value in ("v1", "v2", "v3"):
            await a.send_str(put_frame(value))
        await wait_for(lambda: relay.stats["relayed"] == 3)

        late = await client.ws_connect("/sync")
        received = [json.loads(await late.receive_str(timeout=5)) for _ in range(2)]

        assert [m["fields"]["name"]["v"] for m in received] == ["v2", "v3"]
        assert relay.stats["buffered"] == 2
        await a.close()
        await late.close()

    @pytest.mark.asyncio
    async def test_non_json_frames_dropped(self, client, relay):
        a = await client.ws_connect("/sync")
        b = await client.ws_connect("/sync")
        await wait_for(lambda: relay.stats["peers"] == 2)

        await a.send_str("hello")
        await a.send_str("[1, 2, 3]")
        await wait_for(lambda: relay.stats["dropped"] == 2)

        with pytest.raises(asyncio.TimeoutError):
            await b.receive_str(timeout=0.2)
        await a.close()
        await b.close()


class TestWebSocketTransport:
    """Peers connected through a relay socket."""

    @pytest.mark.asyncio
    async def test_requires_urls(self):
        with pytest.raises(TransportConnectionError):
            await WebSocketTransport([], peer_id="p").connect()

    @pytest.mark.asyncio
    async def test_send_before_connect(self):
        transport = WebSocketTransport(["ws://127.0.0.1:1/sync"], peer_id="p")

        with pytest.raises(TransportClosedError):
            await transport.send(WireMessage.decode(put_frame()))

    @pytest.mark.asyncio
    async def test_admin_and_student_over_relay(self, client):
        """Roster, session pointer and attendance all cross the relay."""
        url = sync_url(client)
        admin_transport = WebSocketTransport([url], peer_id="admin", reconnect_interval=0.1)
        student_transport = WebSocketTransport([url], peer_id="student", reconnect_interval=0.1)

        admin_peer = Peer(PeerConfig(peer_id="admin"), identity=Identity.generate(), transport=admin_transport)
        student_peer = Peer(PeerConfig(peer_id="student"), transport=student_transport)

        async with admin_peer, student_peer:
            await admin_transport.wait_connected()
            await student_transport.wait_connected()

            admin = AdminConsole(admin_peer)
            admin.import_roster('[{"id": "101", "name": "Alice"}, {"id": "102", "name": "Bob"}]')
            session = admin.start_session()

            link = parse_checkin_link(admin.checkin_link("https://attend.example/"))
            checkin = StudentCheckIn(student_peer, link)
            await checkin.open()
            await wait_for(
                lambda: len(checkin.roster()) == 2
                and checkin.session_status() is SessionStatus.ACTIVE
            )

            checkin.submit_attendance("101", latitude=52.52, longitude=13.405)
            await wait_for(lambda: len(admin.attendance(session.session_id)) == 1)

            report = admin.report()
            assert report.present_count == 1
            assert report.row("101").record.has_location
