"""
Attendance module - roster, sessions, check-in and reports.

Domain code only reads and writes the local GraphStore and registers
subscriptions; propagation to other peers is the sync layer's job.
"""

from .links import CheckInLink, build_checkin_link, parse_checkin_link
from .report import AttendanceReport, ReportRow, build_report, export_csv, report_filename
from .schema import (
    AttendanceRecord,
    SessionData,
    SessionStatus,
    Student,
    attendance_path,
    parse_roster_import,
)
from .service import AdminConsole, StudentCheckIn, submit_attendance

__all__ = [
    "AdminConsole",
    "AttendanceRecord",
    "AttendanceReport",
    "CheckInLink",
    "ReportRow",
    "SessionData",
    "SessionStatus",
    "Student",
    "StudentCheckIn",
    "attendance_path",
    "build_checkin_link",
    "build_report",
    "export_csv",
    "parse_checkin_link",
    "parse_roster_import",
    "report_filename",
    "submit_attendance",
]
