import base64
import io
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import orjson
import qrcode
from sqlmodel import Session, select, update

from .auth import Principal
from .config import settings
from .database import utcnow
from .enrollment import EnrollmentDirectory
from .errors import Forbidden, Gone, NotFound, ValidationFailed
from .models import AttendanceStatus, MarkedBy, QrToken, WindowMethod
from .records import RecordStore
from .schemas import iso_utc
from .sessions import SessionStore
from .windows import WindowController

logger = logging.getLogger(__name__)


def render_qr(payload: dict) -> str:
    """PNG data URL of a QR code carrying ``payload`` as JSON."""
    qr = qrcode.QRCode(border=2, box_size=10)
    qr.add_data(orjson.dumps(payload).decode())
    qr.make(fit=True)
    img = qr.make_image(fill_color="#1a1a2e", back_color="#ffffff")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


class TokenStore:
    def __init__(self, db: Session):
        self.db = db

    def by_token(self, token: str) -> Optional[QrToken]:
        return self.db.exec(select(QrToken).where(QrToken.token == token)).first()

    def live_for(self, session_id: int, now: datetime) -> Optional[QrToken]:
        q = (
            select(QrToken)
            .where(QrToken.session_id == session_id, QrToken.is_active == True, QrToken.expires_at > now)  # noqa: E712
            .order_by(QrToken.id.desc())
        )
        return self.db.exec(q).first()

    def deactivate_all(self, session_id: int) -> int:
        q = (
            update(QrToken)
            .where(QrToken.session_id == session_id, QrToken.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        return self.db.exec(q).rowcount

    def save(self, row: QrToken) -> QrToken:
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row


class QrTokenService:
    """Issues the one live QR token of a session and redeems scans of it.

    A token is not consumed by a successful scan; every enrolled student may
    redeem it until it expires or a newer token replaces it.
    """

    def __init__(
        self,
        store: TokenStore,
        sessions: SessionStore,
        directory: EnrollmentDirectory,
        windows: WindowController,
        records: RecordStore,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.directory = directory
        self.windows = windows
        self.records = records
        self.clock = clock

    def issue(self, principal: Principal, session_id: int, expiry_seconds: Optional[int] = None) -> dict:
        expiry_seconds = settings.qr_default_expiry_seconds if expiry_seconds is None else expiry_seconds
        if expiry_seconds <= 0:
            raise ValidationFailed("expiry_seconds must be positive.")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found.")
        klass = self.directory.get_class(session.class_id)
        if klass is None or not self.directory.can_manage(principal, klass):
            raise Forbidden("You can only generate QR codes for your own sessions.")

        self.sessions.lock(session_id)
        superseded = self.store.deactivate_all(session_id)
        row = self.store.save(QrToken(
            session_id=session_id,
            token=secrets.token_hex(settings.qr_token_bytes),
            expires_at=self.clock() + timedelta(seconds=expiry_seconds),
            is_active=True,
        ))
        logger.info("QR token %s issued for session %s (expires %s, superseded=%d)",
                    row.id, session_id, row.expires_at, superseded)
        payload = {"token": row.token, "session_id": session_id, "expires_at": iso_utc(row.expires_at)}
        return {
            "qr_id": row.id,
            "qr_token": row.token,
            "expires_at": payload["expires_at"],
            "expiry_seconds": expiry_seconds,
            "payload": payload,
        }

    def live(self, session_id: int) -> Optional[QrToken]:
        return self.store.live_for(session_id, self.clock())

    def validate(
        self, principal: Principal, token: str, ip_address: Optional[str] = None, device_info: Optional[str] = None
    ) -> int:
        row = self.store.by_token(token)
        if row is None:
            raise NotFound("Invalid QR code.")
        if row.is_expired(self.clock()):
            if row.is_active:
                row.is_active = False
                self.store.save(row)
                logger.info("QR token %s for session %s expired", row.id, row.session_id)
            raise Gone("QR code has expired. Please scan a new one.")
        if not row.is_active:
            raise NotFound("Invalid or expired QR code.")

        session = self.sessions.get(row.session_id)
        if session is None:
            raise NotFound("Class session not found.")
        self.windows.require_open(session.id, WindowMethod.qr)
        if not self.directory.is_enrolled(principal.id, session.class_id):
            raise Forbidden("You are not enrolled in this class.")

        self.records.upsert(session.id, principal.id, AttendanceStatus.present, MarkedBy.qr, ip_address, device_info)
        logger.info("Student %s marked present on session %s via QR", principal.id, session.id)
        return session.id
