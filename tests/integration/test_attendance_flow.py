"""
Integration tests for the attendance flow across peers.

Tests cover:
- Roster sync, session lifecycle and check-in between an admin and students
- Session isolation across consecutive sessions
- Live flag on attendance views
- Student-side session status
- Strict signature mode and hostile attendance records
- Late admin devices fetching state from peers
- Reload from the SQLite log
"""

import tempfile

import pytest
import pytest_asyncio

from mesh.attendance_sync.attendance import (
    AdminConsole,
    SessionStatus,
    StudentCheckIn,
    export_csv,
    parse_checkin_link,
    submit_attendance,
)
from mesh.attendance_sync.config import PeerConfig, StorageConfig, TransportConfig
from mesh.attendance_sync.errors import (
    MalformedInputError,
    PreconditionError,
    SessionClosedError,
    UnknownStudentError,
)
from mesh.attendance_sync.graph import APP_NAMESPACE
from mesh.attendance_sync.identity import Identity
from mesh.attendance_sync.peer import Peer
from mesh.attendance_sync.transport import InMemoryRelay

BASE_URL = "https://attend.example/app"
ROSTER = '[{"id": "101", "name": "Alice"}, {"id": "102", "name": "Bob"}]'


async def settle(*peers, rounds=3):
    """Run sends, deliveries and subscription callbacks until quiet."""
    for _ in range(rounds):
        for peer in peers:
            await peer.sync.flush()
        for peer in peers:
            await peer.transport.wait_idle()
        for peer in peers:
            await peer.engine.drain()


@pytest.fixture(scope="module")
def admin_identity():
    return Identity.generate(alias="organizer")


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest_asyncio.fixture
async def admin_peer(relay, admin_identity):
    peer = Peer(PeerConfig(peer_id="admin"), identity=admin_identity, relay=relay)
    await peer.start()
    yield peer
    await peer.stop()


@pytest_asyncio.fixture
async def student_peer(relay):
    peer = Peer(PeerConfig(peer_id="student"), relay=relay)
    await peer.start()
    yield peer
    await peer.stop()


@pytest.fixture
def admin(admin_peer):
    console = AdminConsole(admin_peer)
    console.import_roster(ROSTER)
    return console


async def open_checkin(peer, admin, *others, on_status=None):
    checkin = StudentCheckIn(peer, parse_checkin_link(admin.checkin_link(BASE_URL)))
    await checkin.open(on_status=on_status)
    await settle(peer, admin.peer, *others)
    return checkin


class TestSessionFlow:
    """Admin and student peers over one relay."""

    @pytest.mark.asyncio
    async def test_two_sessions_do_not_mix(self, admin, admin_peer, student_peer):
        """Attendance stays with the session it was submitted to."""
        seen = []
        s1 = admin.start_session()
        await admin.watch_attendance(s1.session_id, lambda record, live: seen.append((record, live)))
        checkin = await open_checkin(student_peer, admin)

        assert [s.name for s in checkin.roster()] == ["Alice", "Bob"]
        checkin.submit_attendance("101", timestamp=1000)
        await settle(student_peer, admin_peer)

        live = admin.report()
        assert (live.present_count, live.absent_count) == (1, 1)
        assert [(r.student_id, live_flag) for r, live_flag in seen] == [("101", True)]

        admin.stop_session()
        s2 = admin.start_session()
        assert s2.session_id != s1.session_id
        second = await open_checkin(student_peer, admin)
        second.submit_attendance("101", timestamp=2000)
        await settle(student_peer, admin_peer)

        report_s1 = admin.report(s1.session_id)
        report_s2 = admin.report(s2.session_id)
        assert [r.timestamp for r in admin.attendance(s1.session_id)] == [1000]
        assert [r.timestamp for r in admin.attendance(s2.session_id)] == [2000]
        assert report_s1.row("101").record.timestamp == 1000
        assert report_s2.row("101").record.timestamp == 2000
        assert report_s2.present_count == 1

    @pytest.mark.asyncio
    async def test_repeat_check_in_keeps_one_record(self, admin, admin_peer, student_peer):
        """Submitting twice for the same student leaves one record per session."""
        session = admin.start_session()
        checkin = await open_checkin(student_peer, admin)

        checkin.submit_attendance("101", timestamp=1000)
        checkin.submit_attendance("101", latitude=52.52, longitude=13.405, timestamp=1500)
        await settle(student_peer, admin_peer)

        records = admin.attendance(session.session_id)
        assert len(records) == 1
        assert records[0].timestamp == 1500
        assert records[0].has_location

    @pytest.mark.asyncio
    async def test_records_after_stop_are_not_live(self, admin, admin_peer, student_peer):
        """A record arriving after the session stopped is delivered with live=False."""
        seen = []
        session = admin.start_session()
        await admin.watch_attendance(session.session_id, lambda record, live: seen.append(live))
        admin.stop_session()
        await settle(admin_peer, student_peer)

        submit_attendance(
            student_peer.store,
            session.session_id,
            "102",
            {"studentId": "102", "name": "Bob", "timestamp": 5000},
        )
        await settle(student_peer, admin_peer)

        assert seen == [False]
        assert admin.report(session.session_id).row("102").present

    @pytest.mark.asyncio
    async def test_watch_attendance_since_watermark(self, admin, admin_peer, student_peer):
        """A reopened view only replays records newer than its watermark."""
        session = admin.start_session()
        checkin = await open_checkin(student_peer, admin)
        checkin.submit_attendance("101", timestamp=1000)
        await settle(student_peer, admin_peer)

        first = await admin.watch_attendance(session.session_id, lambda record, live: None)
        admin.unwatch(first)
        checkin.submit_attendance("102", timestamp=2000)
        await settle(student_peer, admin_peer)

        seen = []
        await admin.watch_attendance(
            session.session_id,
            lambda record, live: seen.append(record.student_id),
            since=first.watermark,
        )
        assert seen == ["102"]

    @pytest.mark.asyncio
    async def test_session_history(self, admin):
        """Stopped sessions stay in the history with their stop time."""
        s1 = admin.start_session()
        s2 = admin.start_session()

        history = {s.session_id: s for s in admin.session_history()}
        assert not history[s1.session_id].active
        assert history[s1.session_id].stopped_at is not None
        assert history[s2.session_id].active
        assert admin.current_session().session_id == s2.session_id

    @pytest.mark.asyncio
    async def test_admin_preconditions(self, admin):
        """Reports and links need a session; links need an active one."""
        with pytest.raises(PreconditionError):
            admin.report()
        with pytest.raises(PreconditionError):
            admin.checkin_link(BASE_URL)

        admin.start_session()
        assert admin.stop_session() is not None
        assert admin.stop_session() is None
        with pytest.raises(SessionClosedError):
            admin.checkin_link(BASE_URL)

    @pytest.mark.asyncio
    async def test_add_student_syncs_to_watchers(self, admin, admin_peer, student_peer):
        """Roster watchers see existing entries, then new ones."""
        names = []
        await admin.watch_roster(lambda student: names.append(student.name))
        admin.add_student("103", "Carol")
        await settle(admin_peer)

        assert sorted(names) == ["Alice", "Bob", "Carol"]
        with pytest.raises(MalformedInputError):
            admin.add_student("", "Nobody")


class TestStudentCheckIn:
    """Student-side status and refusals."""

    @pytest.mark.asyncio
    async def test_status_follows_admin_pointer(self, admin, admin_peer, student_peer):
        """UNKNOWN before the pointer arrives, ACTIVE while running, ENDED after stop."""
        statuses = []
        session = admin.start_session()
        link = parse_checkin_link(admin.checkin_link(BASE_URL))
        lonely = StudentCheckIn(Peer(PeerConfig(peer_id="offline")), link)
        assert lonely.session_status() is SessionStatus.UNKNOWN
        with pytest.raises(SessionClosedError):
            lonely.submit_attendance("101")

        checkin = await open_checkin(student_peer, admin, on_status=statuses.append)
        assert checkin.session_status() is SessionStatus.ACTIVE
        assert checkin.session_id == session.session_id

        admin.stop_session()
        await settle(admin_peer, student_peer)

        assert checkin.session_status() is SessionStatus.ENDED
        assert statuses[-1] is SessionStatus.ENDED
        with pytest.raises(SessionClosedError):
            checkin.submit_attendance("101")

    @pytest.mark.asyncio
    async def test_refusals(self, admin, student_peer):
        """Unknown students and half coordinates are refused before writing."""
        session = admin.start_session()
        checkin = await open_checkin(student_peer, admin)

        with pytest.raises(UnknownStudentError):
            checkin.submit_attendance("999")
        with pytest.raises(MalformedInputError):
            checkin.submit_attendance("101", latitude=1.0)
        record = checkin.submit_attendance("999", name="Walk-in")

        assert record.name == "Walk-in"
        assert admin.report(session.session_id).row("999") is None

    @pytest.mark.asyncio
    async def test_close_stops_status_updates(self, admin, admin_peer, student_peer):
        statuses = []
        admin.start_session()
        checkin = await open_checkin(student_peer, admin, on_status=statuses.append)
        checkin.close()
        count = len(statuses)

        admin.stop_session()
        await settle(admin_peer, student_peer)

        assert len(statuses) == count


class TestSecurityAndRecovery:
    """Strict signatures, late devices and restarts."""

    @pytest.mark.asyncio
    async def test_strict_peer_ignores_forged_roster(self, admin_identity):
        """Unsigned writes into the admin namespace never reach a strict peer."""
        relay = InMemoryRelay()
        strict_config = PeerConfig(peer_id="admin", transport=TransportConfig(strict_signatures=True))
        admin_peer = Peer(strict_config, identity=admin_identity, relay=relay)
        forger = Peer(PeerConfig(peer_id="forger"), relay=relay)

        async with admin_peer, forger:
            admin = AdminConsole(admin_peer)
            admin.import_roster(ROSTER)
            await settle(admin_peer, forger)

            forged_path = (admin_identity.root, APP_NAMESPACE, "class_list", "666")
            forger.store.put(forged_path, {"studentId": "666", "name": "Mallory"})
            await settle(forger, admin_peer)

            assert [s.id for s in admin.roster()] == ["101", "102"]
            assert admin_peer.sync.stats["rejected"] == 2

    @pytest.mark.asyncio
    async def test_hostile_attendance_does_not_break_report(self, admin, admin_peer, student_peer):
        """Garbage written to the public attendance path is skipped, not fatal."""
        session = admin.start_session()
        checkin = await open_checkin(student_peer, admin)
        checkin.submit_attendance("101", latitude=52.52, longitude=13.405, timestamp=1000)

        submit_attendance(
            student_peer.store,
            session.session_id,
            "102",
            {"studentId": "102", "name": "Bob", "timestamp": "soon"},
        )
        submit_attendance(
            student_peer.store,
            session.session_id,
            "666",
            {"studentId": "666", "name": "Mallory", "timestamp": 2000, "latitude": "x"},
        )
        await settle(student_peer, admin_peer)

        report = admin.report()
        assert (report.present_count, report.absent_count) == (1, 1)
        assert [r.student_id for r in report.unlisted] == ["666"]
        assert not report.unlisted[0].has_location

        rows = export_csv(report).splitlines()
        assert rows[1] == "101,Alice,00:00:01,Present,\"52.5200, 13.4050\""
        assert rows[2] == "102,Bob,-,Absent,N/A"

    @pytest.mark.asyncio
    async def test_second_admin_device_fetches_state(self, admin_identity):
        """A device joining later gets the roster and pointer by asking for them."""
        relay = InMemoryRelay(buffer_size=0)
        async with Peer(PeerConfig(peer_id="laptop"), identity=admin_identity, relay=relay) as laptop:
            first = AdminConsole(laptop)
            first.import_roster(ROSTER)
            session = first.start_session()
            await settle(laptop)

            async with Peer(PeerConfig(peer_id="phone"), identity=admin_identity, relay=relay) as phone:
                second = AdminConsole(phone)
                await second.open()
                await settle(laptop, phone)

                assert [s.id for s in second.roster()] == ["101", "102"]
                assert second.current_session().session_id == session.session_id
                assert [s.session_id for s in second.session_history()] == [session.session_id]

    @pytest.mark.asyncio
    async def test_second_admin_device_fetches_attendance(self, admin_identity):
        """Check-ins made before a device joined reach its report and live view."""
        relay = InMemoryRelay(buffer_size=0)
        laptop = Peer(PeerConfig(peer_id="laptop"), identity=admin_identity, relay=relay)
        student = Peer(PeerConfig(peer_id="student"), relay=relay)

        async with laptop, student:
            first = AdminConsole(laptop)
            first.import_roster(ROSTER)
            session = first.start_session()
            checkin = await open_checkin(student, first)
            checkin.submit_attendance("101", timestamp=1000)
            await settle(student, laptop)
            assert first.report().present_count == 1

            async with Peer(PeerConfig(peer_id="phone"), identity=admin_identity, relay=relay) as phone:
                second = AdminConsole(phone)
                await second.open()
                await settle(laptop, student, phone)
                assert second.report().present_count == 0

                watched = []
                await second.watch_attendance(
                    session.session_id, lambda record, live: watched.append((record.student_id, live))
                )
                await settle(laptop, student, phone)

                assert watched == [("101", True)]
                assert second.report().present_count == 1

    @pytest.mark.asyncio
    async def test_fetch_attendance_for_current_session(self, admin_identity):
        relay = InMemoryRelay(buffer_size=0)
        laptop = Peer(PeerConfig(peer_id="laptop"), identity=admin_identity, relay=relay)
        student = Peer(PeerConfig(peer_id="student"), relay=relay)

        async with laptop, student:
            first = AdminConsole(laptop)
            first.import_roster(ROSTER)
            first.start_session()
            checkin = await open_checkin(student, first)
            checkin.submit_attendance("102", timestamp=1000)
            await settle(student, laptop)

            async with Peer(PeerConfig(peer_id="phone"), identity=admin_identity, relay=relay) as phone:
                second = AdminConsole(phone)
                with pytest.raises(PreconditionError):
                    await second.fetch_attendance()
                await second.open()
                await settle(laptop, student, phone)

                await second.fetch_attendance()
                await settle(laptop, student, phone)

                assert second.report().row("102").present

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, admin_identity):
        """A persisted peer reloads its roster and session on the next start."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = PeerConfig(
                peer_id="admin",
                storage=StorageConfig(data_dir=tmpdir, persist_enabled=True, wal_mode=False),
            )
            async with Peer(config, identity=admin_identity, relay=InMemoryRelay()) as peer:
                admin = AdminConsole(peer)
                admin.import_roster(ROSTER)
                session = admin.start_session()

            async with Peer(config, identity=admin_identity, relay=InMemoryRelay()) as peer:
                admin = AdminConsole(peer)

                assert [s.name for s in admin.roster()] == ["Alice", "Bob"]
                assert admin.current_session() == session
