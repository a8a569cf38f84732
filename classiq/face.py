import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
import orjson
from sqlmodel import Session, func, select

from .auth import Principal
from .config import settings
from .database import utcnow
from .enrollment import EnrollmentDirectory
from .errors import AttendanceError, Forbidden, NotFound, ValidationFailed
from .models import AttendanceStatus, FaceEmbedding, FaceScanLog, MarkedBy, ScanResult, WindowMethod
from .network import is_allowed
from .records import RecordStore
from .sessions import SessionStore
from .windows import WindowController

logger = logging.getLogger(__name__)


def as_descriptor(values, dim: int = settings.descriptor_dim) -> np.ndarray:
    try:
        vec = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError):
        raise ValidationFailed(f"Valid {dim}-dimensional face descriptor is required.")
    if vec.shape != (dim,) or not np.all(np.isfinite(vec)):
        raise ValidationFailed(f"Valid {dim}-dimensional face descriptor is required.")
    return vec


def euclidean_distances(descriptor: np.ndarray, stored: np.ndarray) -> np.ndarray:
    return np.linalg.norm(stored - descriptor, axis=1)


def similarity(distance):
    """Map a Euclidean distance to a 0..1 score; 0 apart scores 1."""
    return np.maximum(0.0, 1.0 - np.asarray(distance) / 2.0)


def best_match_score(descriptor: np.ndarray, stored: Sequence[np.ndarray]) -> float:
    # best-of-N: any one enrolled capture may match
    if len(stored) == 0:
        return 0.0
    return float(similarity(euclidean_distances(descriptor, np.vstack(stored))).max())


def encode_embedding(vec: np.ndarray) -> str:
    return orjson.dumps(vec.tolist()).decode()


def decode_embedding(raw: str) -> np.ndarray:
    return np.asarray(orjson.loads(raw), dtype=np.float64)


class EmbeddingStore:
    def __init__(self, db: Session):
        self.db = db

    def for_user(self, user_id: int) -> List[FaceEmbedding]:
        return list(self.db.exec(select(FaceEmbedding).where(FaceEmbedding.user_id == user_id)).all())

    def count(self, user_id: int) -> int:
        q = select(func.count()).select_from(FaceEmbedding).where(FaceEmbedding.user_id == user_id)
        return int(self.db.exec(q).one())

    def _drop(self, user_id: int) -> int:
        rows = self.for_user(user_id)
        for row in rows:
            self.db.delete(row)
        self.db.flush()
        return len(rows)

    def replace(self, user_id: int, rows: List[FaceEmbedding]) -> None:
        """Swap the user's whole capture set in one transaction."""
        self._drop(user_id)
        for row in rows:
            self.db.add(row)
        self.db.commit()

    def delete_for(self, user_id: int) -> int:
        removed = self._drop(user_id)
        self.db.commit()
        return removed


class ScanLogStore:
    """Append-only; rows are never updated or removed."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, row: FaceScanLog) -> FaceScanLog:
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def for_user(self, user_id: int) -> List[FaceScanLog]:
        q = select(FaceScanLog).where(FaceScanLog.user_id == user_id).order_by(FaceScanLog.id)
        return list(self.db.exec(q).all())


class FaceVerificationEngine:
    """1:1 face verification of the authenticated user against their own captures.

    ``liveness_passed`` comes from blink detection run on the client and is
    taken as given: nothing here re-derives it, so a replayed ``true`` is
    accepted. Every verification that gets past descriptor validation leaves
    exactly one scan-log row, whatever the outcome.
    """

    def __init__(
        self,
        embeddings: EmbeddingStore,
        scan_logs: ScanLogStore,
        sessions: SessionStore,
        directory: EnrollmentDirectory,
        windows: WindowController,
        records: RecordStore,
        clock: Callable = utcnow,
        threshold: float = settings.match_threshold,
    ):
        self.embeddings = embeddings
        self.scan_logs = scan_logs
        self.sessions = sessions
        self.directory = directory
        self.windows = windows
        self.records = records
        self.clock = clock
        self.threshold = threshold

    def register(self, principal: Principal, captures: Sequence[dict]) -> int:
        if not captures:
            raise ValidationFailed("At least one face embedding is required.")
        if len(captures) < settings.min_face_captures:
            raise ValidationFailed(
                f"Please provide at least {settings.min_face_captures} face captures for accuracy."
            )
        if len(captures) > settings.max_face_captures:
            raise ValidationFailed(f"Maximum {settings.max_face_captures} face captures allowed.")
        vectors = [as_descriptor(c.get("descriptor")) for c in captures]

        now = self.clock()
        rows = [
            FaceEmbedding(
                user_id=principal.id,
                embedding_json=encode_embedding(vec),
                photo_data=capture.get("photo"),
                label=capture.get("label") or f"capture_{i + 1}",
                is_primary=(i == 0),
                created_at=now,
            )
            for i, (capture, vec) in enumerate(zip(captures, vectors))
        ]
        self.embeddings.replace(principal.id, rows)
        logger.info("Registered %d face captures for user %s", len(rows), principal.id)
        return len(rows)

    def status(self, user_id: int) -> dict:
        count = self.embeddings.count(user_id)
        return {"registered": count > 0, "count": count}

    def reset(self, principal: Principal, user_id: Optional[int] = None) -> int:
        target = principal.id if user_id is None else user_id
        if target != principal.id and not principal.is_admin:
            raise Forbidden("Only admins can reset other users' face data.")
        removed = self.embeddings.delete_for(target)
        logger.info("Face data of user %s reset by %s (%d captures removed)", target, principal.id, removed)
        return removed

    def _log(self, principal, session_id, result, score, liveness, ip_address, device_info, scan_photo):
        self.scan_logs.append(FaceScanLog(
            user_id=principal.id,
            session_id=session_id,
            match_score=score,
            liveness_passed=liveness,
            result=result,
            ip_address=ip_address,
            device_info=device_info,
            scan_photo=scan_photo,
            created_at=self.clock(),
        ))
        logger.info("Face scan user=%s session=%s result=%s score=%.4f",
                    principal.id, session_id, result.value, score)

    def verify(
        self,
        principal: Principal,
        descriptor,
        session_id: int,
        liveness_passed: bool,
        scan_photo: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> dict:
        vec = as_descriptor(descriptor)

        def log(result: ScanResult, score: float = 0.0):
            self._log(principal, session_id, result, score, liveness_passed, ip_address, device_info, scan_photo)

        if not liveness_passed:
            log(ScanResult.liveness_fail)
            raise Forbidden("Liveness check failed. Please blink when prompted.", result=ScanResult.liveness_fail.value)

        try:
            window = self.windows.require_open(session_id, WindowMethod.face)
            if window.allowed_network and not is_allowed(ip_address, window.allowed_network):
                raise Forbidden("This attendance window only accepts scans from the classroom network.")
            session = self.sessions.get(session_id)
            if session is None:
                raise NotFound("Session not found.")
            if not self.directory.is_enrolled(principal.id, session.class_id):
                raise Forbidden("You are not enrolled in this class.")
            stored = [decode_embedding(row.embedding_json) for row in self.embeddings.for_user(principal.id)]
            if not stored:
                raise NotFound("Face not registered. Please register your face first.")
        except AttendanceError:
            log(ScanResult.error)
            raise

        score = best_match_score(vec, stored)
        if score < self.threshold:
            log(ScanResult.no_match, score)
            raise Forbidden(
                "Face does not match registered profile.",
                result=ScanResult.no_match.value,
                score=round(score * 100),
                match_score=round(score, 4),
            )

        log(ScanResult.success, score)
        self.records.upsert(session_id, principal.id, AttendanceStatus.present, MarkedBy.facial, ip_address, device_info)
        return {"session_id": session_id, "score": round(score * 100), "match_score": round(score, 4)}
