import io
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from .database import utcnow
from .schemas import iso_utc
from .models import AttendanceRecord, AttendanceStatus, ClassSession, Enrollment, MarkedBy

logger = logging.getLogger(__name__)


class RecordStore:
    """The only writer of attendance_records.

    One row per (session, student). Every write is an upsert and the last
    writer wins; the row keeps no history of earlier marks.
    """

    def __init__(self, db: Session, clock: Callable = utcnow):
        self.db = db
        self.clock = clock

    def get(self, session_id: int, student_id: int) -> Optional[AttendanceRecord]:
        q = select(AttendanceRecord).where(
            AttendanceRecord.session_id == session_id, AttendanceRecord.student_id == student_id
        )
        return self.db.exec(q).first()

    def get_by_id(self, record_id: int) -> Optional[AttendanceRecord]:
        return self.db.get(AttendanceRecord, record_id)

    def upsert(
        self,
        session_id: int,
        student_id: int,
        status: AttendanceStatus,
        marked_by: MarkedBy,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AttendanceRecord:
        fields = dict(status=status, marked_by=marked_by, ip_address=ip_address, device_info=device_info)
        try:
            return self._write(session_id, student_id, **fields)
        except IntegrityError:
            # another request inserted the pair between our read and our commit
            self.db.rollback()
            return self._write(session_id, student_id, **fields)

    def _write(self, session_id: int, student_id: int, **fields) -> AttendanceRecord:
        record = self.get(session_id, student_id)
        if record is None:
            record = AttendanceRecord(session_id=session_id, student_id=student_id)
        for key, value in fields.items():
            setattr(record, key, value)
        record.marked_at = self.clock()
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def bulk_mark(self, session_id: int, entries: Iterable[Tuple[int, AttendanceStatus]]) -> Dict[str, int]:
        """Manual roster save. Rows whose status is unchanged keep their
        marked_by/marked_at."""
        entries = list(entries)
        try:
            return self._apply_batch(session_id, entries)
        except IntegrityError:
            # a scan inserted one of the students mid-batch; replay against the fresh rows
            self.db.rollback()
            logger.info("bulk mark for session %s replayed after a concurrent insert", session_id)
            return self._apply_batch(session_id, entries)

    def _apply_batch(self, session_id: int, entries: List[Tuple[int, AttendanceStatus]]) -> Dict[str, int]:
        counts = {"created": 0, "updated": 0, "unchanged": 0}
        now = self.clock()
        for student_id, status in entries:
            record = self.get(session_id, student_id)
            if record is None:
                self.db.add(AttendanceRecord(
                    session_id=session_id, student_id=student_id, status=status,
                    marked_by=MarkedBy.manual, marked_at=now,
                ))
                counts["created"] += 1
            elif record.status != status:
                record.status = status
                record.marked_by = MarkedBy.manual
                record.marked_at = now
                self.db.add(record)
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1
        self.db.commit()
        return counts

    def set_status(self, record: AttendanceRecord, status: AttendanceStatus) -> AttendanceRecord:
        record.status = status
        record.marked_by = MarkedBy.manual
        record.marked_at = self.clock()
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def count_marked(self, session_id: int, class_id: int) -> int:
        enrolled = select(Enrollment.student_id).where(Enrollment.class_id == class_id)
        q = select(func.count()).select_from(AttendanceRecord).where(
            AttendanceRecord.session_id == session_id, AttendanceRecord.student_id.in_(enrolled)
        )
        return int(self.db.exec(q).one())

    def count_present(self, session_id: int, student_id: Optional[int] = None) -> int:
        q = select(func.count()).select_from(AttendanceRecord).where(
            AttendanceRecord.session_id == session_id, AttendanceRecord.status == AttendanceStatus.present
        )
        if student_id is not None:
            q = q.where(AttendanceRecord.student_id == student_id)
        return int(self.db.exec(q).one())

    def for_session(self, session_id: int) -> List[AttendanceRecord]:
        q = select(AttendanceRecord).where(AttendanceRecord.session_id == session_id)
        return list(self.db.exec(q.order_by(AttendanceRecord.student_id)).all())

    def for_student(self, student_id: int) -> List[Tuple[AttendanceRecord, ClassSession]]:
        q = (
            select(AttendanceRecord, ClassSession)
            .where(AttendanceRecord.session_id == ClassSession.id, AttendanceRecord.student_id == student_id)
            .order_by(ClassSession.session_date.desc())
        )
        return list(self.db.exec(q).all())

    def export_csv(self, session_id: int) -> str:
        rows = [
            {
                "session_id": r.session_id,
                "student_id": r.student_id,
                "status": r.status.value,
                "marked_by": r.marked_by.value,
                "marked_at": iso_utc(r.marked_at),
            }
            for r in self.for_session(session_id)
        ]
        df = pd.DataFrame(rows, columns=["session_id", "student_id", "status", "marked_by", "marked_at"])
        stream = io.StringIO()
        df.to_csv(stream, index=False)
        return stream.getvalue()
