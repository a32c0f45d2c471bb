"""
Attendance data model and graph layout.

Graph layout (``APP`` is APP_NAMESPACE, ``~pub`` the admin's namespace):

    ~pub/APP/class_list/{studentId}       roster entry {studentId, name}
    ~pub/APP/active_session               current-session pointer
                                          {sessionId, createdAt, active}
    ~pub/APP/session_history/{sessionId}  session record
                                          {sessionId, createdAt, active, stoppedAt?}
    APP/sessions/{sessionId}/attendance/{studentId}
                                          attendance record (public path)
                                          {studentId, name, timestamp, latitude?, longitude?}

Invariants:
    - The attendance path is the dedup key: one record per (session, student)
    - Roster entries carrying a truthy ``_tombstone`` field are not listed
    - Session ids are never reused, so sessions never share attendance
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from ..errors import MalformedInputError
from ..graph.path import APP_NAMESPACE, SEPARATOR, Path, namespace_root
from ..graph.store import Node

CLASS_LIST = "class_list"
ACTIVE_SESSION = "active_session"
SESSION_HISTORY = "session_history"
SESSIONS = "sessions"
ATTENDANCE = "attendance"
TOMBSTONE_FIELD = "_tombstone"


# Paths relative to the admin namespace (for ScopedWriter.put)

def roster_entry_key(student_id: str) -> Path:
    return (CLASS_LIST, student_id)


def session_record_key(session_id: str) -> Path:
    return (SESSION_HISTORY, session_id)


# Absolute paths

def roster_prefix(admin_pub: str) -> Path:
    return (namespace_root(admin_pub), APP_NAMESPACE, CLASS_LIST)


def descriptor_path(admin_pub: str) -> Path:
    return (namespace_root(admin_pub), APP_NAMESPACE, ACTIVE_SESSION)


def session_history_prefix(admin_pub: str) -> Path:
    return (namespace_root(admin_pub), APP_NAMESPACE, SESSION_HISTORY)


def attendance_prefix(session_id: str) -> Path:
    return (APP_NAMESPACE, SESSIONS, session_id, ATTENDANCE)


def attendance_path(session_id: str, student_id: str) -> Path:
    return attendance_prefix(session_id) + (student_id,)


# Unix ms beyond this cannot be rendered as a date
MAX_TIMESTAMP_MS = 253402300799999


def _number(value: Any) -> Optional[float]:
    """A finite int or float field value, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


class SessionStatus(Enum):
    """Session state as seen by a student holding a check-in link."""

    ACTIVE = "active"
    ENDED = "ended"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Student:
    """Roster entry."""
    id: str
    name: str

    @classmethod
    def from_node(cls, node: Node) -> Optional[Student]:
        """Roster entry for a node, or None for incomplete or tombstoned nodes."""
        if node.get(TOMBSTONE_FIELD) or not node.get("name"):
            return None
        return cls(id=str(node.get("studentId") or node.key), name=str(node.get("name")))

    def to_fields(self) -> Dict[str, Any]:
        return {"studentId": self.id, "name": self.name}


@dataclass(frozen=True)
class SessionData:
    """Session descriptor or session record.

    Attributes:
        session_id: Unique session id (uuid4)
        created_at: Creation time, Unix ms
        active: Whether the session accepts check-ins
        stopped_at: Stop time, Unix ms (session records only)
    """
    session_id: str
    created_at: int
    active: bool
    stopped_at: Optional[int] = None

    @classmethod
    def from_node(cls, node: Optional[Node]) -> Optional[SessionData]:
        if node is None or not node.get("sessionId"):
            return None
        stopped_at = _number(node.get("stoppedAt"))
        return cls(
            session_id=str(node.get("sessionId")),
            created_at=int(_number(node.get("createdAt")) or 0),
            active=bool(node.get("active")),
            stopped_at=int(stopped_at) if stopped_at is not None else None,
        )

    def to_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "active": self.active,
        }
        if self.stopped_at is not None:
            fields["stoppedAt"] = self.stopped_at
        return fields


@dataclass(frozen=True)
class AttendanceRecord:
    """One student's check-in for one session.

    Attributes:
        student_id: Roster id
        name: Display name at submission time
        timestamp: Submission time, Unix ms
        latitude: Optional latitude in degrees
        longitude: Optional longitude in degrees
    """
    student_id: str
    name: str
    timestamp: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_node(cls, node: Node) -> Optional[AttendanceRecord]:
        """Record for a node, or None if the node is not a usable record.

        Attendance paths are writable by anyone. A timestamp that is not a
        finite number of Unix ms rejects the record; coordinates that are
        not both numbers within range are dropped.
        """
        if not node.get("studentId"):
            return None
        raw_timestamp = node.get("timestamp")
        timestamp = 0 if raw_timestamp is None else _number(raw_timestamp)
        if timestamp is None or not 0 <= timestamp <= MAX_TIMESTAMP_MS:
            return None
        latitude = _number(node.get("latitude"))
        longitude = _number(node.get("longitude"))
        if latitude is None or longitude is None or not (
            -90 <= latitude <= 90 and -180 <= longitude <= 180
        ):
            latitude = longitude = None
        return cls(
            student_id=str(node.get("studentId")),
            name=str(node.get("name") or ""),
            timestamp=int(timestamp),
            latitude=latitude,
            longitude=longitude,
        )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "studentId": self.student_id,
            "name": self.name,
            "timestamp": self.timestamp,
        }
        if self.has_location:
            fields["latitude"] = self.latitude
            fields["longitude"] = self.longitude
        return fields


class RosterImportEntry(BaseModel):
    """One entry of a bulk roster import: ``{"id": "101", "name": "Alice"}``."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Union[str, int]) -> Union[str, int]:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must not be blank")
        if SEPARATOR in value:
            raise ValueError(f"id must not contain '{SEPARATOR}'")
        return value

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    def to_student(self) -> Student:
        return Student(id=self.id, name=self.name)


_roster_adapter = TypeAdapter(List[RosterImportEntry])


def parse_roster_import(payload: str) -> List[Student]:
    """Parse a JSON roster import.

    The payload must be a JSON array of ``{"id", "name"}`` objects. Any
    invalid entry rejects the whole payload.

    Raises:
        MalformedInputError: If the payload is not valid JSON or any entry is invalid
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedInputError(
            'Invalid JSON format. Expected: [{"id": "1", "name": "John"}]',
            errors=[str(e)],
        ) from e

    try:
        entries = _roster_adapter.validate_python(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise MalformedInputError("Roster import rejected", errors=errors) from e

    return [entry.to_student() for entry in entries]


def validate_student(student_id: str, name: str) -> Student:
    """Validate a single roster entry.

    Raises:
        MalformedInputError: If the id or name is invalid
    """
    try:
        return RosterImportEntry(id=student_id, name=name).to_student()
    except ValidationError as e:
        raise MalformedInputError(
            "Invalid roster entry",
            errors=[f"{err['loc'][0]}: {err['msg']}" for err in e.errors()],
        ) from e
