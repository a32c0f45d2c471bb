"""
Error types for attendance-sync.

This module defines every exception a caller of the core can see:
- AttendanceSyncError: Base exception
- IdentityError: Missing or invalid keypair
- TransportError: Peer/relay unreachable (handled inside the sync layer)
- MalformedInputError: Input rejected before it reaches the graph store
- PreconditionError: Local precondition failed (address, session state)

Invariants:
    - All errors inherit from AttendanceSyncError
    - Transport errors are never raised to domain callers
    - Conflict outcomes are values, not exceptions (see merge.resolver)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class AttendanceSyncError(Exception):
    """Base exception for all attendance-sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ATTENDANCE_SYNC_ERROR"
        self.details = details or {}


class IdentityError(AttendanceSyncError):
    """Keypair is missing or invalid.

    Raised when:
    - A scoped write is attempted without a private key
    - A public key string cannot be decoded
    - A PEM file cannot be loaded
    """

    def __init__(self, message: str, pub: Optional[str] = None) -> None:
        super().__init__(message, code="IDENTITY_ERROR", details={"pub": pub})
        self.pub = pub


class TransportError(AttendanceSyncError):
    """Peer or relay could not be reached.

    Recoverable: the sync layer queues the message and retries on the next
    connection event.
    """

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message, code="TRANSPORT_ERROR", details={"address": address})
        self.address = address


class TransportConnectionError(TransportError):
    """Connecting to a relay failed."""
    pass


class TransportClosedError(TransportError):
    """Send attempted on a transport that is not connected."""
    pass


class MalformedInputError(AttendanceSyncError):
    """Input could not be accepted.

    Raised when:
    - A path is empty or has invalid segments
    - A field value is not a scalar
    - A bulk roster import cannot be parsed or validated
    - A wire frame cannot be decoded
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="MALFORMED_INPUT",
            details={"errors": errors or []},
        )
        self.errors = errors or []


class PreconditionError(AttendanceSyncError):
    """A local precondition of a domain operation failed."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "PRECONDITION_FAILED", details=details)


class MissingAddressError(PreconditionError):
    """Check-in link lacks the session id or the admin public key."""

    def __init__(self, message: str, missing: Optional[List[str]] = None) -> None:
        super().__init__(
            message,
            code="MISSING_ADDRESS",
            details={"missing": missing or []},
        )
        self.missing = missing or []


class SessionClosedError(PreconditionError):
    """The admin's descriptor does not reference an active session with this id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} is not active",
            code="SESSION_CLOSED",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class UnknownStudentError(PreconditionError):
    """Student id is not on the admin's roster."""

    def __init__(self, student_id: str) -> None:
        super().__init__(
            f"Student {student_id} is not on the roster",
            code="UNKNOWN_STUDENT",
            details={"student_id": student_id},
        )
        self.student_id = student_id
