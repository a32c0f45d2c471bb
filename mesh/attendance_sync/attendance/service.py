"""
Session and roster domain services.

AdminConsole is what an organizer's UI drives: roster maintenance, the
session state machine and live views. StudentCheckIn is what a student's
UI drives after scanning a check-in link.

Session state machine (admin namespace):

    NoSession --start--> Active --stop--> Stopped --start--> Active (new id) ...

Every transition is a single idempotent field-level write, so there is no
multi-step transaction to roll back: a failed write can simply be retried.

Invariants:
    - start_session always mints a fresh uuid4 session id
    - stop_session only writes ``active: false``; sessionId and createdAt
      stay readable on the pointer and the session record
    - Attendance is written to the public per-session path regardless of
      session state; check-in refuses locally when the session is not active
    - Attendance views mark records ``live`` only while the referenced
      session is the admin's active one

How to change safely:
    - New record fields must be scalars (field-level merge)
    - Never reuse a session id; it is the isolation boundary between sessions
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, List, Mapping, Optional, Union

from ..errors import MalformedInputError, PreconditionError, SessionClosedError, UnknownStudentError
from ..graph.store import GraphStore, Node, PutResult
from ..merge.clock import wall_ms
from ..peer import Peer
from ..subscribe.engine import SubscriptionHandle
from .links import CheckInLink, build_checkin_link
from .report import AttendanceReport, build_report
from .schema import (
    ACTIVE_SESSION,
    AttendanceRecord,
    SessionData,
    SessionStatus,
    Student,
    attendance_path,
    attendance_prefix,
    descriptor_path,
    parse_roster_import,
    roster_entry_key,
    roster_prefix,
    session_history_prefix,
    session_record_key,
    validate_student,
)

logger = logging.getLogger(__name__)

MaybeAwaitable = Union[None, Awaitable[None]]


def _now_ms() -> int:
    return int(wall_ms())


def submit_attendance(
    store: GraphStore,
    session_id: str,
    student_id: str,
    fields: Mapping[str, Any],
) -> PutResult:
    """Write an attendance record to the public session path.

    This is the raw write with no session or roster check; repeated calls
    for the same (session, student) merge into one record.
    """
    return store.put(attendance_path(session_id, student_id), fields)


def _students(store: GraphStore, admin_pub: str) -> List[Student]:
    students = []
    for _, node in store.children(roster_prefix(admin_pub)):
        student = Student.from_node(node)
        if student is not None:
            students.append(student)
    return sorted(students, key=lambda s: (s.name.lower(), s.id))


def _records(store: GraphStore, session_id: str) -> List[AttendanceRecord]:
    records = []
    for _, node in store.children(attendance_prefix(session_id)):
        record = AttendanceRecord.from_node(node)
        if record is not None:
            records.append(record)
    return sorted(records, key=lambda r: r.timestamp)


class AdminConsole:
    """Organizer-side operations.

    Example:
        >>> admin = AdminConsole(peer)
        >>> admin.import_roster('[{"id": "101", "name": "Alice"}]')
        1
        >>> session = admin.start_session()
        >>> admin.checkin_link("https://attend.example/app")
        'https://attend.example/app#/checkin?session=...&pub=...'
    """

    def __init__(self, peer: Peer) -> None:
        """Bind the console to a peer.

        Raises:
            IdentityError: If the peer has no signing identity
        """
        self.peer = peer
        self.writer = peer.writer()
        self.admin_pub = self.writer.identity.pub

    @property
    def store(self) -> GraphStore:
        return self.peer.store

    async def open(self) -> None:
        """Ask peers for this admin's roster, pointer and session history.

        Only needed on a device that does not hold the admin's data yet.
        """
        await self.peer.sync.request(roster_prefix(self.admin_pub), children=True)
        await self.peer.sync.request(descriptor_path(self.admin_pub))
        await self.peer.sync.request(session_history_prefix(self.admin_pub), children=True)

    # Roster

    def add_student(self, student_id: str, name: str) -> Student:
        """Add or overwrite one roster entry.

        Raises:
            MalformedInputError: If the id or name is blank or invalid
        """
        student = validate_student(student_id, name)
        self.writer.put(roster_entry_key(student.id), student.to_fields())
        logger.info("Student added", extra={"student_id": student.id})
        return student

    def import_roster(self, payload: str) -> int:
        """Bulk import a JSON array of ``{"id", "name"}`` objects.

        The whole payload is validated before anything is written.

        Returns:
            Number of entries written

        Raises:
            MalformedInputError: If the payload or any entry is invalid
        """
        students = parse_roster_import(payload)
        for student in students:
            self.writer.put(roster_entry_key(student.id), student.to_fields())
        logger.info("Roster imported", extra={"count": len(students)})
        return len(students)

    def roster(self) -> List[Student]:
        """Current roster, sorted by name."""
        return _students(self.store, self.admin_pub)

    # Sessions

    def current_session(self) -> Optional[SessionData]:
        """The session the pointer references (active or stopped)."""
        return SessionData.from_node(self.store.get(descriptor_path(self.admin_pub)))

    def session_history(self) -> List[SessionData]:
        """Every recorded session, oldest first."""
        sessions = []
        for _, node in self.store.children(session_history_prefix(self.admin_pub)):
            session = SessionData.from_node(node)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: (s.created_at, s.session_id))

    def start_session(self) -> SessionData:
        """Open a new session.

        A session that is still active is stopped first, so at most one
        session record is ever active.
        """
        previous = self.current_session()
        if previous is not None and previous.active:
            self._stamp_stopped(previous.session_id)

        session = SessionData(
            session_id=str(uuid.uuid4()),
            created_at=_now_ms(),
            active=True,
        )
        self.writer.put((ACTIVE_SESSION,), session.to_fields())
        self.writer.put(session_record_key(session.session_id), session.to_fields())
        logger.info("Session started", extra={"session_id": session.session_id})
        return session

    def stop_session(self) -> Optional[SessionData]:
        """Stop the active session.

        Returns:
            The stopped session, or None if no session was active
        """
        current = self.current_session()
        if current is None or not current.active:
            logger.info("No active session to stop")
            return None

        self.writer.put((ACTIVE_SESSION,), {"active": False})
        stopped_at = self._stamp_stopped(current.session_id)
        logger.info("Session stopped", extra={"session_id": current.session_id})
        return SessionData(
            session_id=current.session_id,
            created_at=current.created_at,
            active=False,
            stopped_at=stopped_at,
        )

    def _stamp_stopped(self, session_id: str) -> int:
        stopped_at = _now_ms()
        self.writer.put(session_record_key(session_id), {"active": False, "stoppedAt": stopped_at})
        return stopped_at

    def is_live(self, session_id: str) -> bool:
        current = self.current_session()
        return current is not None and current.active and current.session_id == session_id

    # Attendance

    def attendance(self, session_id: str) -> List[AttendanceRecord]:
        """Records submitted for one session, oldest first."""
        return _records(self.store, session_id)

    async def fetch_attendance(self, session_id: Optional[str] = None) -> str:
        """Ask peers for one session's attendance records.

        Records written before this device joined only arrive this way
        when the relay no longer replays them.

        Returns:
            The session id requested

        Raises:
            PreconditionError: If no session id is given and none exists
        """
        if session_id is None:
            current = self.current_session()
            if current is None:
                raise PreconditionError("No session to fetch", code="NO_SESSION")
            session_id = current.session_id
        await self.peer.sync.request(attendance_prefix(session_id), children=True)
        return session_id

    def report(self, session_id: Optional[str] = None) -> AttendanceReport:
        """Roster joined with one session's attendance.

        Args:
            session_id: Session to report on (defaults to the current one)

        Raises:
            PreconditionError: If no session id is given and none exists
        """
        if session_id is None:
            current = self.current_session()
            if current is None:
                raise PreconditionError("No session to report on", code="NO_SESSION")
            session_id = current.session_id
        return build_report(self.roster(), self.attendance(session_id), session_id)

    def checkin_link(self, base_url: str, session_id: Optional[str] = None) -> str:
        """Link to encode in the session QR code.

        Raises:
            PreconditionError: If no session id is given and no session exists
            SessionClosedError: If no session id is given and the current one is stopped
        """
        if session_id is None:
            current = self.current_session()
            if current is None:
                raise PreconditionError("No active session", code="NO_SESSION")
            if not current.active:
                raise SessionClosedError(current.session_id)
            session_id = current.session_id
        return build_checkin_link(base_url, session_id, self.admin_pub)

    # Live views

    async def watch_roster(
        self, callback: Callable[[Student], MaybeAwaitable]
    ) -> SubscriptionHandle:
        """Call back once per roster entry, then per new or changed entry."""

        def on_node(path: Any, node: Node) -> MaybeAwaitable:
            student = Student.from_node(node)
            if student is not None:
                return callback(student)
            return None

        return await self.peer.engine.subscribe_children(roster_prefix(self.admin_pub), on_node)

    async def watch_session(
        self, callback: Callable[[SessionData], MaybeAwaitable]
    ) -> SubscriptionHandle:
        """Call back with the session pointer, then on every change to it."""

        def on_node(path: Any, node: Node) -> MaybeAwaitable:
            session = SessionData.from_node(node)
            if session is not None:
                return callback(session)
            return None

        return await self.peer.engine.subscribe(descriptor_path(self.admin_pub), on_node)

    async def watch_attendance(
        self,
        session_id: str,
        callback: Callable[[AttendanceRecord, bool], MaybeAwaitable],
        since: Optional[float] = None,
    ) -> SubscriptionHandle:
        """Call back per attendance record of one session.

        The second callback argument is True while the session is the
        admin's active one; records arriving after a stop are delivered
        with live=False.
        """

        def on_node(path: Any, node: Node) -> MaybeAwaitable:
            record = AttendanceRecord.from_node(node)
            if record is not None:
                return callback(record, self.is_live(session_id))
            return None

        handle = await self.peer.engine.subscribe_children(
            attendance_prefix(session_id), on_node, since=since
        )
        await self.fetch_attendance(session_id)
        return handle

    def unwatch(self, handle: SubscriptionHandle) -> None:
        self.peer.engine.unsubscribe(handle)
        self.peer.sync.forget(handle.path, children=handle.children)


class StudentCheckIn:
    """Student-side check-in for one scanned link.

    Example:
        >>> checkin = StudentCheckIn(peer, parse_checkin_link(scanned_url))
        >>> await checkin.open()
        >>> if checkin.session_status() is SessionStatus.ACTIVE:
        ...     checkin.submit_attendance("101", latitude=52.52, longitude=13.405)
    """

    def __init__(self, peer: Peer, link: CheckInLink) -> None:
        self.peer = peer
        self.link = link
        self._handles: List[SubscriptionHandle] = []

    @property
    def store(self) -> GraphStore:
        return self.peer.store

    @property
    def session_id(self) -> str:
        return self.link.session_id

    async def open(
        self,
        on_status: Optional[Callable[[SessionStatus], MaybeAwaitable]] = None,
    ) -> None:
        """Watch the admin's roster and session pointer and fetch them from peers.

        Args:
            on_status: Called with the session status whenever the pointer changes
        """
        admin_pub = self.link.admin_pub
        if on_status is not None:

            def on_descriptor(path: Any, node: Node) -> MaybeAwaitable:
                return on_status(self.session_status())

            self._handles.append(
                await self.peer.engine.subscribe(descriptor_path(admin_pub), on_descriptor)
            )

        await self.peer.sync.request(roster_prefix(admin_pub), children=True)
        await self.peer.sync.request(descriptor_path(admin_pub))
        logger.info(
            "Check-in opened",
            extra={"session_id": self.session_id, "admin_pub": admin_pub},
        )

    def close(self) -> None:
        for handle in self._handles:
            self.peer.engine.unsubscribe(handle)
        self._handles.clear()
        self.peer.sync.forget(roster_prefix(self.link.admin_pub), children=True)
        self.peer.sync.forget(descriptor_path(self.link.admin_pub))

    def roster(self) -> List[Student]:
        return _students(self.store, self.link.admin_pub)

    def session_status(self) -> SessionStatus:
        """ACTIVE if the admin's pointer references this session and is active.

        UNKNOWN until the pointer has been received from a peer.
        """
        session = SessionData.from_node(self.store.get(descriptor_path(self.link.admin_pub)))
        if session is None:
            return SessionStatus.UNKNOWN
        if session.session_id == self.session_id and session.active:
            return SessionStatus.ACTIVE
        return SessionStatus.ENDED

    def submit_attendance(
        self,
        student_id: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        timestamp: Optional[int] = None,
        name: Optional[str] = None,
    ) -> AttendanceRecord:
        """Check a student in to this session.

        Args:
            student_id: Roster id of the student
            latitude: Optional latitude (must come with longitude)
            longitude: Optional longitude (must come with latitude)
            timestamp: Submission time in Unix ms (defaults to now)
            name: Display name for a student not (yet) on the local roster

        Raises:
            SessionClosedError: If the session is not the admin's active one
            UnknownStudentError: If the student is not on the roster and no name was given
            MalformedInputError: If only one coordinate is given
        """
        if self.session_status() is not SessionStatus.ACTIVE:
            raise SessionClosedError(self.session_id)

        if (latitude is None) != (longitude is None):
            raise MalformedInputError("Latitude and longitude must be given together")

        student = next((s for s in self.roster() if s.id == student_id), None)
        if student is None:
            if not name:
                raise UnknownStudentError(student_id)
            student = validate_student(student_id, name)

        record = AttendanceRecord(
            student_id=student.id,
            name=student.name,
            timestamp=timestamp if timestamp is not None else _now_ms(),
            latitude=latitude,
            longitude=longitude,
        )
        submit_attendance(self.store, self.session_id, student.id, record.to_fields())
        logger.info(
            "Attendance submitted",
            extra={"session_id": self.session_id, "student_id": student.id},
        )
        return record
