from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import AttendanceRecord, AttendanceStatus, AttendanceWindow, ClassSession, WindowMethod


def iso_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"


class OpenWindowIn(BaseModel):
    session_id: int
    method: WindowMethod = WindowMethod.face
    duration_minutes: Optional[int] = None
    allowed_network: Optional[str] = None


class CloseWindowIn(BaseModel):
    session_id: int


class QrGenerateIn(BaseModel):
    session_id: int
    expiry_seconds: Optional[int] = None


class QrValidateIn(BaseModel):
    qr_token: str = Field(min_length=1)


class FaceCapture(BaseModel):
    descriptor: List[float]
    label: Optional[str] = None
    photo: Optional[str] = None


class FaceRegisterIn(BaseModel):
    embeddings: List[FaceCapture]


class FaceVerifyIn(BaseModel):
    descriptor: List[float]
    session_id: int
    liveness_passed: bool = False
    scan_photo: Optional[str] = None


class StartSessionIn(BaseModel):
    session_date: Optional[date] = None
    topic: Optional[str] = None


class MarkIn(BaseModel):
    session_id: int
    student_id: int
    status: AttendanceStatus = AttendanceStatus.present


class BulkEntry(BaseModel):
    student_id: int
    status: AttendanceStatus = AttendanceStatus.present


class BulkMarkIn(BaseModel):
    session_id: int
    records: List[BulkEntry]


class StatusUpdateIn(BaseModel):
    status: AttendanceStatus


def window_out(window: AttendanceWindow) -> dict:
    return {
        "id": window.id,
        "session_id": window.session_id,
        "method": window.method.value,
        "opens_at": iso_utc(window.opens_at),
        "closes_at": iso_utc(window.closes_at),
        "allowed_network": window.allowed_network,
        "opened_by": window.opened_by,
    }


def record_out(record: AttendanceRecord, session: Optional[ClassSession] = None) -> dict:
    out = {
        "id": record.id,
        "session_id": record.session_id,
        "student_id": record.student_id,
        "status": record.status.value,
        "marked_by": record.marked_by.value,
        "marked_at": iso_utc(record.marked_at),
    }
    if session is not None:
        out["session_date"] = session.session_date.isoformat()
        out["class_id"] = session.class_id
        out["topic"] = session.topic
    return out
