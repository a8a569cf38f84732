import ipaddress
import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlmodel import Session, select, update

from .auth import Principal
from .database import utcnow
from .enrollment import EnrollmentDirectory
from .errors import Forbidden, Gone, NotFound, ValidationFailed
from .models import AttendanceWindow, ClassSession, WindowMethod
from .records import RecordStore
from .sessions import SessionStore

logger = logging.getLogger(__name__)


class WindowStore:
    def __init__(self, db: Session):
        self.db = db

    def active_for(self, session_id: int) -> Optional[AttendanceWindow]:
        """The window flagged active, whether or not its closes_at has passed."""
        q = (
            select(AttendanceWindow)
            .where(AttendanceWindow.session_id == session_id, AttendanceWindow.is_active == True)  # noqa: E712
            .order_by(AttendanceWindow.id.desc())
        )
        return self.db.exec(q).first()

    def deactivate_all(self, session_id: int) -> int:
        """Retire every active window of the session with a single UPDATE.
        The write lock it takes is held until the caller commits."""
        q = (
            update(AttendanceWindow)
            .where(AttendanceWindow.session_id == session_id, AttendanceWindow.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        return self.db.exec(q).rowcount

    def add(self, window: AttendanceWindow) -> AttendanceWindow:
        self.db.add(window)
        self.db.commit()
        self.db.refresh(window)
        return window


class WindowController:
    """Opens and closes the per-session marking window.

    A window counts as open only while ``is_active`` is set and ``closes_at``
    has not passed. Expiry is evaluated on every read; nothing sweeps stale
    rows. Both verification methods call :meth:`require_open` at the moment
    they mark, never relying on what the client saw earlier.
    """

    def __init__(
        self,
        store: WindowStore,
        sessions: SessionStore,
        directory: EnrollmentDirectory,
        records: RecordStore,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.directory = directory
        self.records = records
        self.clock = clock

    def _owned_session(self, principal: Principal, session_id: int, verb: str) -> ClassSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found.")
        klass = self.directory.get_class(session.class_id)
        if klass is None or not self.directory.can_manage(principal, klass):
            raise Forbidden(f"You can only {verb} windows for your own sessions.")
        return session

    def open(
        self,
        principal: Principal,
        session_id: int,
        method: WindowMethod = WindowMethod.face,
        duration_minutes: Optional[int] = None,
        allowed_network: Optional[str] = None,
    ) -> AttendanceWindow:
        if allowed_network:
            try:
                ipaddress.ip_network(allowed_network.strip(), strict=False)
            except ValueError:
                raise ValidationFailed("allowed_network must be an IP address or CIDR range.")
        self._owned_session(principal, session_id, "open")

        now = self.clock()
        closes_at = now + timedelta(minutes=duration_minutes) if duration_minutes and duration_minutes > 0 else None

        # one transaction: lock the session, retire the old window, insert the new one
        self.sessions.lock(session_id)
        retired = self.store.deactivate_all(session_id)
        window = self.store.add(AttendanceWindow(
            session_id=session_id,
            opened_by=principal.id,
            method=method,
            opens_at=now,
            closes_at=closes_at,
            is_active=True,
            allowed_network=allowed_network.strip() if allowed_network else None,
        ))
        logger.info(
            "Window %s opened on session %s by %s (method=%s, closes_at=%s, retired=%d)",
            window.id, session_id, principal.id, method.value, closes_at, retired,
        )
        return window

    def close(self, principal: Principal, session_id: int) -> AttendanceWindow:
        self._owned_session(principal, session_id, "close")
        window = self.store.active_for(session_id)
        if window is None:
            raise NotFound("No active window found for this session.")
        now = self.clock()
        window.is_active = False
        if window.closes_at is None or window.closes_at > now:
            window.closes_at = now
        self.store.add(window)
        logger.info("Window %s on session %s closed by %s", window.id, session_id, principal.id)
        return window

    def current(self, session_id: int) -> Optional[AttendanceWindow]:
        window = self.store.active_for(session_id)
        if window is None or not window.is_open(self.clock()):
            return None
        return window

    def status(self, session_id: int) -> dict:
        window = self.current(session_id)
        marked = total = 0
        session = self.sessions.get(session_id)
        if session is not None:
            marked = self.records.count_marked(session_id, session.class_id)
            total = self.directory.count_enrolled(session.class_id)
        return {"active": window is not None, "window": window, "marked": marked, "total_students": total}

    def require_open(self, session_id: int, method: WindowMethod) -> AttendanceWindow:
        window = self.current(session_id)
        if window is None:
            raise Gone("Attendance window is closed.")
        if not window.accepts(method):
            only = "QR" if window.method == WindowMethod.qr else "face"
            raise ValidationFailed(f"This session only accepts {only}-based attendance.")
        return window
