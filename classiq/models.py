from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from .database import utcnow


class Role(str, Enum):
    student = "student"
    faculty = "faculty"
    admin = "admin"


class SessionStatus(str, Enum):
    scheduled = "scheduled"
    ongoing = "ongoing"
    completed = "completed"


class WindowMethod(str, Enum):
    face = "face"
    qr = "qr"
    both = "both"


class AttendanceStatus(str, Enum):
    present = "present"
    absent = "absent"
    late = "late"
    excused = "excused"


class MarkedBy(str, Enum):
    manual = "manual"
    qr = "qr"
    facial = "facial"


class ScanResult(str, Enum):
    success = "success"
    no_match = "no_match"
    liveness_fail = "liveness_fail"
    error = "error"


# Owned by the class/enrollment service; read-only here.
class Class(SQLModel, table=True):
    __tablename__ = "classes"

    id: Optional[int] = Field(default=None, primary_key=True)
    faculty_id: int = Field(index=True)
    day_of_week: str  # "Monday" ... "Sunday"
    start_time: time
    end_time: time
    room_no: Optional[str] = None
    section: Optional[str] = None
    is_active: bool = True


class Enrollment(SQLModel, table=True):
    __tablename__ = "student_classes"
    __table_args__ = (UniqueConstraint("student_id", "class_id", name="uq_student_class"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(index=True)
    class_id: int = Field(foreign_key="classes.id", index=True)


class ClassSession(SQLModel, table=True):
    __tablename__ = "class_sessions"
    __table_args__ = (UniqueConstraint("class_id", "session_date", name="uq_class_session_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    class_id: int = Field(foreign_key="classes.id", index=True)
    session_date: date
    topic: Optional[str] = None
    status: SessionStatus = SessionStatus.scheduled  # advisory only
    created_at: datetime = Field(default_factory=utcnow)


class AttendanceWindow(SQLModel, table=True):
    __tablename__ = "attendance_windows"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="class_sessions.id", index=True)
    opened_by: int
    method: WindowMethod = WindowMethod.face
    opens_at: datetime = Field(default_factory=utcnow)
    closes_at: Optional[datetime] = None  # None: closed manually only
    is_active: bool = Field(default=True, index=True)
    allowed_network: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_open(self, now: datetime) -> bool:
        return self.is_active and (self.closes_at is None or self.closes_at > now)

    def accepts(self, method: WindowMethod) -> bool:
        return self.method in (WindowMethod.both, method)


class QrToken(SQLModel, table=True):
    __tablename__ = "qr_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="class_sessions.id", index=True)
    token: str = Field(index=True, unique=True)
    expires_at: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class FaceEmbedding(SQLModel, table=True):
    __tablename__ = "face_embeddings"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    embedding_json: str  # JSON list of floats
    photo_data: Optional[str] = None
    label: str
    is_primary: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class FaceScanLog(SQLModel, table=True):
    """Append-only; rows outlive the sessions they point at."""

    __tablename__ = "face_scan_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    session_id: Optional[int] = Field(default=None, index=True)
    match_score: float = 0.0
    liveness_passed: bool = False
    result: ScanResult
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    scan_photo: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class AttendanceRecord(SQLModel, table=True):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("session_id", "student_id", name="uq_session_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="class_sessions.id", index=True)
    student_id: int = Field(index=True)
    status: AttendanceStatus = AttendanceStatus.present
    marked_by: MarkedBy = MarkedBy.manual
    marked_at: datetime = Field(default_factory=utcnow)
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
