"""
Attendance reports: roster joined with one session's attendance.

Invariants:
    - One row per roster student; a student is never reported twice
    - Records from other sessions never enter a report (callers pass the
      records of exactly one session)
    - Attendance from students missing from the roster is kept apart in
      ``unlisted`` rather than silently dropped
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Dict, Iterable, List, Optional

from .schema import AttendanceRecord, Student

PRESENT = "Present"
ABSENT = "Absent"
CSV_HEADERS = ["Student ID", "Name", "Time", "Status", "Location"]


@dataclass(frozen=True)
class ReportRow:
    student_id: str
    name: str
    record: Optional[AttendanceRecord] = None

    @property
    def present(self) -> bool:
        return self.record is not None

    @property
    def status(self) -> str:
        return PRESENT if self.present else ABSENT


@dataclass
class AttendanceReport:
    """Attendance for one session.

    Attributes:
        session_id: Session the report covers
        rows: One row per roster student, in roster order
        unlisted: Records from students not on the roster
    """
    session_id: str
    rows: List[ReportRow] = field(default_factory=list)
    unlisted: List[AttendanceRecord] = field(default_factory=list)

    @property
    def present_count(self) -> int:
        return sum(1 for row in self.rows if row.present)

    @property
    def absent_count(self) -> int:
        return len(self.rows) - self.present_count

    def row(self, student_id: str) -> Optional[ReportRow]:
        for row in self.rows:
            if row.student_id == student_id:
                return row
        return None


def build_report(
    roster: Iterable[Student],
    records: Iterable[AttendanceRecord],
    session_id: str,
) -> AttendanceReport:
    """Join a roster with one session's attendance records."""
    by_student: Dict[str, AttendanceRecord] = {}
    for record in records:
        existing = by_student.get(record.student_id)
        if existing is None or record.timestamp > existing.timestamp:
            by_student[record.student_id] = record

    report = AttendanceReport(session_id=session_id)
    listed = set()
    for student in roster:
        if student.id in listed:
            continue
        listed.add(student.id)
        report.rows.append(
            ReportRow(student_id=student.id, name=student.name, record=by_student.get(student.id))
        )

    report.unlisted = sorted(
        (r for sid, r in by_student.items() if sid not in listed),
        key=lambda r: r.timestamp,
    )
    return report


def format_time(timestamp_ms: int, tz: tzinfo = timezone.utc) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=tz).strftime("%H:%M:%S")


def format_location(record: Optional[AttendanceRecord]) -> str:
    if record is None or not record.has_location:
        return "N/A"
    return f"{record.latitude:.4f}, {record.longitude:.4f}"


def export_csv(report: AttendanceReport, tz: tzinfo = timezone.utc) -> str:
    """Render a report as CSV text.

    Columns: Student ID, Name, Time, Status, Location. Absent students get
    ``-`` as time and ``N/A`` as location.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in report.rows:
        writer.writerow([
            row.student_id,
            row.name,
            format_time(row.record.timestamp, tz) if row.record else "-",
            row.status,
            format_location(row.record),
        ])
    return buffer.getvalue()


def report_filename(session_id: Optional[str]) -> str:
    return f"attendance_{session_id or 'report'}.csv"
