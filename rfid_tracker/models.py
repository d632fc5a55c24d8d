from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass
class Student:
    uid: str
    student_id: str
    full_name: str
    grade: Optional[int] = None

    def to_dict(self):
        return {
            "uid": self.uid,
            "student_id": self.student_id,
            "full_name": self.full_name,
            "grade": self.grade,
        }


@dataclass
class AttendanceRecord:
    uid: str
    student_id: str
    full_name: str
    status: str
    scanned_at: datetime

    def to_event(self) -> dict:
        """Payload broadcast to dashboards for a scan."""
        return {
            "uid": self.uid,
            "date": self.scanned_at.strftime("%Y-%m-%d"),
            "time": self.scanned_at.strftime("%H:%M:%S"),
            "studentId": self.student_id,
            "fullName": self.full_name,
            "status": self.status,
        }


@dataclass
class ModeState:
    registration_mode: bool = False
    scanning_paused: bool = False
    pending_registration: Optional[str] = None


# router actions

@dataclass(frozen=True)
class Ignore:
    reason: str = ""


@dataclass(frozen=True)
class EmitPendingRegistration:
    uid: str


@dataclass(frozen=True)
class RecordAttendance:
    uid: str


Action = Union[Ignore, EmitPendingRegistration, RecordAttendance]


@dataclass
class ScanResult:
    action: Action
    record: Optional[AttendanceRecord] = None
    saved: bool = False
    error: Optional[str] = None
