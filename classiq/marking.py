import logging
from typing import Dict, Iterable, Optional, Tuple

from .auth import Principal
from .enrollment import EnrollmentDirectory
from .errors import Forbidden, Gone, NotFound, ValidationFailed
from .models import AttendanceRecord, AttendanceStatus, Class, ClassSession, MarkedBy, SessionStatus
from .records import RecordStore
from .sessions import SessionManager

logger = logging.getLogger(__name__)


class ManualMarking:
    """Faculty-facing marking. Gated by ownership and the advisory session
    status, not by attendance windows."""

    def __init__(self, sessions: SessionManager, directory: EnrollmentDirectory, records: RecordStore):
        self.sessions = sessions
        self.directory = directory
        self.records = records

    def _owned(self, principal: Principal, session_id: int) -> Tuple[ClassSession, Class]:
        session = self.sessions.store.get(session_id)
        if session is None:
            raise NotFound("Session not found.")
        klass = self.directory.get_class(session.class_id)
        if klass is None or not self.directory.can_manage(principal, klass):
            raise Forbidden("You can only mark attendance for your own sessions.")
        return session, klass

    def _check_enrolled(self, student_ids: Iterable[int], klass: Class) -> None:
        enrolled = set(self.directory.enrolled_student_ids(klass.id))
        missing = sorted(set(student_ids) - enrolled)
        if missing:
            raise ValidationFailed("Some students are not enrolled in this class.", student_ids=missing)

    def mark(
        self,
        principal: Principal,
        session_id: int,
        student_id: int,
        status: AttendanceStatus = AttendanceStatus.present,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AttendanceRecord:
        session, klass = self._owned(principal, session_id)
        if self.sessions.status_of(session, klass) == SessionStatus.completed:
            raise Gone("Session already completed.")
        self._check_enrolled([student_id], klass)
        record = self.records.upsert(session_id, student_id, status, MarkedBy.manual, ip_address, device_info)
        logger.info("Student %s marked %s on session %s by %s", student_id, status.value, session_id, principal.id)
        return record

    def mark_bulk(
        self, principal: Principal, session_id: int, entries: Iterable[Tuple[int, AttendanceStatus]]
    ) -> Dict[str, int]:
        entries = list(entries)
        _, klass = self._owned(principal, session_id)
        self._check_enrolled([student_id for student_id, _ in entries], klass)
        counts = self.records.bulk_mark(session_id, entries)
        logger.info("Bulk mark on session %s by %s: %s", session_id, principal.id, counts)
        return counts

    def correct(self, principal: Principal, record_id: int, status: AttendanceStatus) -> AttendanceRecord:
        record = self.records.get_by_id(record_id)
        if record is None:
            raise NotFound("Attendance record not found.")
        self._owned(principal, record.session_id)
        return self.records.set_status(record, status)
