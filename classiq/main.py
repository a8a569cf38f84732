from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlmodel import Session

from .auth import Principal, get_principal, require_role
from .config import configure_logging, settings
from .database import get_clock, get_db, init_db, utcnow
from .enrollment import EnrollmentDirectory
from .errors import Forbidden, NotFound, register_error_handlers
from .face import EmbeddingStore, FaceVerificationEngine, ScanLogStore
from .marking import ManualMarking
from .models import Role
from .network import client_ip, is_allowed, parse_networks, require_network
from .qr import QrTokenService, TokenStore, render_qr
from .records import RecordStore
from .schemas import (
    BulkMarkIn,
    CloseWindowIn,
    FaceRegisterIn,
    FaceVerifyIn,
    MarkIn,
    OpenWindowIn,
    QrGenerateIn,
    QrValidateIn,
    StartSessionIn,
    StatusUpdateIn,
    iso_utc,
    record_out,
    window_out,
)
from .sessions import SessionManager, SessionStore
from .windows import WindowController, WindowStore

configure_logging()

app = FastAPI(title="ClassIQ Attendance")
register_error_handlers(app)

init_db()

staff = require_role(Role.faculty, Role.admin)


class Services:
    """Per-request wiring of the components over one DB session and clock."""

    def __init__(self, db: Session, clock=utcnow):
        self.directory = EnrollmentDirectory(db)
        self.records = RecordStore(db, clock)
        self.session_store = SessionStore(db)
        self.sessions = SessionManager(
            self.session_store, self.directory, self.records, clock, settings.institution_timezone
        )
        self.windows = WindowController(WindowStore(db), self.session_store, self.directory, self.records, clock)
        self.qr = QrTokenService(TokenStore(db), self.session_store, self.directory, self.windows, self.records, clock)
        self.face = FaceVerificationEngine(
            EmbeddingStore(db), ScanLogStore(db), self.session_store, self.directory,
            self.windows, self.records, clock, settings.match_threshold,
        )
        self.marking = ManualMarking(self.sessions, self.directory, self.records)


def get_services(db: Session = Depends(get_db), clock=Depends(get_clock)) -> Services:
    return Services(db, clock)


def device_of(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


@app.get("/api/health")
def health():
    return {"status": "OK", "timestamp": iso_utc(utcnow())}


# ----------------- SESSIONS -----------------
@app.get("/api/classes/sessions/today")
def today_sessions(
    target: Optional[date] = Query(None, alias="date"),
    principal: Principal = Depends(get_principal),
    svc: Services = Depends(get_services),
):
    return {"ok": True, "sessions": svc.sessions.today_sessions(principal, target)}


@app.post("/api/classes/{class_id}/sessions")
def start_session(
    class_id: int,
    body: StartSessionIn,
    principal: Principal = Depends(staff),
    svc: Services = Depends(get_services),
):
    row, created = svc.sessions.start_session(principal, class_id, body.session_date, body.topic)
    message = "Session created." if created else "Session already exists."
    return JSONResponse(
        {"ok": True, "message": message, "session_id": row.id, "session_date": row.session_date.isoformat()},
        status_code=201 if created else 200,
    )


@app.get("/api/classes/{class_id}/sessions")
def class_sessions(class_id: int, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    return {"ok": True, "sessions": svc.sessions.class_sessions(class_id)}


# ----------------- ATTENDANCE WINDOW -----------------
@app.post("/api/attendance-window/open")
def open_window(body: OpenWindowIn, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    window = svc.windows.open(principal, body.session_id, body.method, body.duration_minutes, body.allowed_network)
    return {
        "ok": True,
        "message": "Attendance window opened!",
        "window_id": window.id,
        "method": window.method.value,
        "opens_at": iso_utc(window.opens_at),
        "closes_at": iso_utc(window.closes_at),
        "duration_minutes": body.duration_minutes if window.closes_at else "manual",
    }


@app.post("/api/attendance-window/close")
def close_window(body: CloseWindowIn, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    window = svc.windows.close(principal, body.session_id)
    return {"ok": True, "message": "Attendance window closed.", "window_id": window.id}


@app.get("/api/attendance-window/status/{session_id}")
def window_status(session_id: int, principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    status = svc.windows.status(session_id)
    window = status["window"]
    return {
        "ok": True,
        "active": status["active"],
        "window": window_out(window) if window is not None else None,
        "marked": status["marked"],
        "total_students": status["total_students"],
    }


# ----------------- QR -----------------
@app.post("/api/qr/generate")
def generate_qr(body: QrGenerateIn, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    issued = svc.qr.issue(principal, body.session_id, body.expiry_seconds)
    return {"ok": True, "qr_image": render_qr(issued.pop("payload")), **issued}


@app.post("/api/qr/validate")
def validate_qr(
    body: QrValidateIn,
    request: Request,
    principal: Principal = Depends(get_principal),
    svc: Services = Depends(get_services),
):
    session_id = svc.qr.validate(principal, body.qr_token, client_ip(request), device_of(request))
    return {"ok": True, "message": "Attendance marked successfully via QR code!", "session_id": session_id}


@app.get("/api/qr/active/{session_id}")
def active_qr(session_id: int, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    row = svc.qr.live(session_id)
    if row is None:
        return {"ok": True, "active": False}
    return {
        "ok": True,
        "active": True,
        "qr_token": row.token,
        "session_id": row.session_id,
        "expires_at": iso_utc(row.expires_at),
    }


# ----------------- FACE -----------------
@app.post("/api/face/register")
def register_face(body: FaceRegisterIn, principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    count = svc.face.register(principal, [c.model_dump() for c in body.embeddings])
    return {"ok": True, "message": "Face registered successfully!", "count": count}


@app.get("/api/face/status")
def face_status(principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    status = svc.face.status(principal.id)
    message = f"Face registered with {status['count']} captures." if status["registered"] else "Face not registered yet."
    return {"ok": True, "message": message, **status}


@app.post("/api/face/verify", dependencies=[Depends(require_network)])
def verify_face(
    body: FaceVerifyIn,
    request: Request,
    principal: Principal = Depends(get_principal),
    svc: Services = Depends(get_services),
):
    result = svc.face.verify(
        principal, body.descriptor, body.session_id, body.liveness_passed,
        body.scan_photo, client_ip(request), device_of(request),
    )
    return {"ok": True, "message": "Attendance marked successfully via face recognition!", **result}


@app.delete("/api/face/reset")
def reset_own_face(principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    svc.face.reset(principal)
    return {"ok": True, "message": "Face data reset successfully."}


@app.delete("/api/face/reset/{user_id}")
def reset_face(user_id: int, principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    svc.face.reset(principal, user_id)
    return {"ok": True, "message": "Face data reset successfully."}


@app.get("/api/face/network-check")
def network_check(request: Request, principal: Principal = Depends(get_principal)):
    ip = client_ip(request)
    networks = parse_networks(settings.allowed_networks)
    if not networks:
        return {"ok": True, "allowed": True, "ip": ip,
                "message": "No network restriction configured (development mode)."}
    allowed = is_allowed(ip)
    return {
        "ok": True,
        "allowed": allowed,
        "ip": ip,
        "required_networks": [str(n) for n in networks],
        "message": "You are on the allowed network." if allowed
        else "You are NOT on the college network. Connect to the college WiFi to mark attendance.",
    }


# ----------------- ATTENDANCE RECORDS -----------------
@app.post("/api/attendance/mark")
def mark_attendance(
    body: MarkIn, request: Request, principal: Principal = Depends(staff), svc: Services = Depends(get_services)
):
    record = svc.marking.mark(principal, body.session_id, body.student_id, body.status,
                              client_ip(request), device_of(request))
    return {"ok": True, "message": "Attendance marked successfully.", "record": record_out(record)}


@app.post("/api/attendance/mark-bulk")
def mark_bulk(body: BulkMarkIn, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    counts = svc.marking.mark_bulk(principal, body.session_id, [(r.student_id, r.status) for r in body.records])
    return {"ok": True, "message": f"Attendance marked for {len(body.records)} students.", **counts}


@app.get("/api/attendance/session/{session_id}")
def session_attendance(session_id: int, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    if svc.session_store.get(session_id) is None:
        raise NotFound("Session not found.")
    return {"ok": True, "records": [record_out(r) for r in svc.records.for_session(session_id)]}


@app.get("/api/attendance/session/{session_id}/export.csv")
def export_session(session_id: int, principal: Principal = Depends(staff), svc: Services = Depends(get_services)):
    if svc.session_store.get(session_id) is None:
        raise NotFound("Session not found.")
    csv_text = svc.records.export_csv(session_id)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=attendance_session_{session_id}.csv"},
    )


@app.get("/api/attendance/student/{student_id}")
def student_attendance(student_id: str, principal: Principal = Depends(get_principal), svc: Services = Depends(get_services)):
    if student_id == "me":
        target = principal.id
    else:
        try:
            target = int(student_id)
        except ValueError:
            raise NotFound("Student not found.")
    if principal.role == Role.student and target != principal.id:
        raise Forbidden("Students can only view their own attendance.")
    return {"ok": True, "records": [record_out(r, s) for r, s in svc.records.for_student(target)]}


@app.put("/api/attendance/{record_id}")
def update_attendance(
    record_id: int, body: StatusUpdateIn, principal: Principal = Depends(staff), svc: Services = Depends(get_services)
):
    record = svc.marking.correct(principal, record_id, body.status)
    return {"ok": True, "message": "Attendance updated.", "record": record_out(record)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
