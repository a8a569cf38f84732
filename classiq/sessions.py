import logging
from datetime import date, datetime, time, timezone
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .auth import Principal
from .config import settings
from .database import utcnow
from .enrollment import EnrollmentDirectory
from .errors import Forbidden, NotFound
from .models import Class, ClassSession, Role, SessionStatus
from .records import RecordStore

logger = logging.getLogger(__name__)


def to_local(utc_now: datetime, tz_name: str) -> datetime:
    """Convert a UTC timestamp to the institution's wall clock."""
    if utc_now.tzinfo is None:
        utc_now = utc_now.replace(tzinfo=timezone.utc)
    return utc_now.astimezone(ZoneInfo(tz_name))


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def compute_status(session_date: date, start: time, end: time, now_local: datetime) -> SessionStatus:
    """Advisory status of a session as seen at ``now_local``.

    Same-day sessions use the half-open interval [start, end). A class whose
    end is earlier than its start runs past midnight and stays ongoing from
    start until the day rolls over.
    """
    today = now_local.date()
    if session_date < today:
        return SessionStatus.completed
    if session_date > today:
        return SessionStatus.scheduled

    now_min = now_local.hour * 60 + now_local.minute
    start_min, end_min = _minutes(start), _minutes(end)
    if end_min < start_min:
        return SessionStatus.ongoing if now_min >= start_min else SessionStatus.scheduled
    if start_min <= now_min < end_min:
        return SessionStatus.ongoing
    if now_min >= end_min:
        return SessionStatus.completed
    return SessionStatus.scheduled


class SessionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: int) -> Optional[ClassSession]:
        return self.db.get(ClassSession, session_id)

    def find(self, class_id: int, session_date: date) -> Optional[ClassSession]:
        q = select(ClassSession).where(ClassSession.class_id == class_id, ClassSession.session_date == session_date)
        return self.db.exec(q).first()

    def lock(self, session_id: int) -> Optional[ClassSession]:
        """Row-lock a session so writers of its children run one at a time.
        SQLite ignores FOR UPDATE and serializes writers on its own."""
        q = select(ClassSession).where(ClassSession.id == session_id).with_for_update()
        return self.db.exec(q).first()

    def insert_ignore(self, class_id: int, session_date: date, **fields) -> Tuple[ClassSession, bool]:
        """Insert the (class, date) session or fetch the one that won the race."""
        existing = self.find(class_id, session_date)
        if existing is not None:
            return existing, False
        row = ClassSession(class_id=class_id, session_date=session_date, **fields)
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self.find(class_id, session_date), False
        self.db.refresh(row)
        return row, True

    def for_class(self, class_id: int, limit: int = 50) -> List[ClassSession]:
        q = (
            select(ClassSession)
            .where(ClassSession.class_id == class_id)
            .order_by(ClassSession.session_date.desc())
            .limit(limit)
        )
        return list(self.db.exec(q).all())

    def save(self, row: ClassSession) -> None:
        self.db.add(row)
        self.db.commit()


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        directory: EnrollmentDirectory,
        records: RecordStore,
        clock: Callable = utcnow,
        tz_name: str = settings.institution_timezone,
    ):
        self.store = store
        self.directory = directory
        self.records = records
        self.clock = clock
        self.tz_name = tz_name

    def local_now(self) -> datetime:
        return to_local(self.clock(), self.tz_name)

    def today(self) -> date:
        return self.local_now().date()

    def ensure_today_session(self, klass: Class) -> ClassSession:
        row, created = self.store.insert_ignore(klass.id, self.today(), status=SessionStatus.scheduled)
        if created:
            logger.info("Created session %s for class %s on %s", row.id, klass.id, row.session_date)
        return row

    def start_session(
        self, principal: Principal, class_id: int, session_date: Optional[date] = None, topic: Optional[str] = None
    ) -> Tuple[ClassSession, bool]:
        klass = self.directory.get_class(class_id)
        if klass is None:
            raise NotFound("Class not found.")
        if not self.directory.can_manage(principal, klass):
            raise Forbidden("You can only start sessions for your own classes.")
        row, created = self.store.insert_ignore(
            class_id, session_date or self.today(), topic=topic, status=SessionStatus.ongoing
        )
        if created:
            logger.info("Session %s started by %s for class %s", row.id, principal.id, class_id)
        return row, created

    def status_of(self, row: ClassSession, klass: Optional[Class] = None) -> SessionStatus:
        klass = klass or self.directory.get_class(row.class_id)
        return compute_status(row.session_date, klass.start_time, klass.end_time, self.local_now())

    def describe(self, row: ClassSession, klass: Class, principal: Optional[Principal] = None) -> dict:
        computed = self.status_of(row, klass)
        if row.status != computed:
            row.status = computed
            self.store.save(row)
        out = {
            "session_id": row.id,
            "class_id": klass.id,
            "session_date": row.session_date.isoformat(),
            "topic": row.topic,
            "start_time": klass.start_time.strftime("%H:%M"),
            "end_time": klass.end_time.strftime("%H:%M"),
            "room_no": klass.room_no,
            "section": klass.section,
            "faculty_id": klass.faculty_id,
            "computed_status": computed.value,
            "total_students": self.directory.count_enrolled(klass.id),
            "present_count": self.records.count_present(row.id),
        }
        if principal is not None and principal.role == Role.student:
            out["student_present"] = self.records.count_present(row.id, principal.id)
        return out

    def today_sessions(self, principal: Principal, target: Optional[date] = None) -> List[dict]:
        today = self.today()
        target = target or today
        out = []
        for klass in self.directory.classes_on(target.strftime("%A"), principal):
            if target == today:
                row = self.ensure_today_session(klass)
            else:
                row = self.store.find(klass.id, target)
                if row is None:
                    continue
            out.append(self.describe(row, klass, principal))
        return out

    def class_sessions(self, class_id: int) -> List[dict]:
        klass = self.directory.get_class(class_id)
        if klass is None:
            raise NotFound("Class not found.")
        return [self.describe(row, klass) for row in self.store.for_class(class_id)]
