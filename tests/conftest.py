import os
import tempfile
import threading
from datetime import date, datetime, time, timedelta, timezone

_tmp = tempfile.mkdtemp(prefix="classiq-test-")
os.environ.setdefault("CLASSIQ_DATABASE_URL", "sqlite://")
os.environ.setdefault("CLASSIQ_LOG_PATH", os.path.join(_tmp, "classiq.log"))
os.environ.setdefault("CLASSIQ_JWT_SECRET", "classiq-test-secret-0123456789abcdef")
os.environ.setdefault("CLASSIQ_TIMEZONE", "Asia/Kolkata")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from classiq.auth import issue_token
from classiq.database import get_clock, get_db, init_db, make_engine
from classiq.main import app
from classiq.models import Class, ClassSession, Enrollment, Role

# Monday 2026-03-02, 10:30 in Asia/Kolkata
T0 = datetime(2026, 3, 2, 5, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 2)

FACULTY_ID = 100
OTHER_FACULTY_ID = 101
ADMIN_ID = 900
STUDENTS = (1, 2, 3)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def client(db_engine, clock):
    def _get_db():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def headers(user_id: int, role: Role = Role.student) -> dict:
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


def faculty_headers(user_id: int = FACULTY_ID) -> dict:
    return headers(user_id, Role.faculty)


def add_class(db, faculty_id=FACULTY_ID, day="Monday", start=time(10, 0), end=time(11, 0), students=STUDENTS):
    klass = Class(faculty_id=faculty_id, day_of_week=day, start_time=start, end_time=end, room_no="B-204")
    db.add(klass)
    db.commit()
    db.refresh(klass)
    for student_id in students:
        db.add(Enrollment(student_id=student_id, class_id=klass.id))
    db.commit()
    return klass


def add_session(db, klass, session_date=TODAY):
    row = ClassSession(class_id=klass.id, session_date=session_date)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@pytest.fixture
def klass(db):
    return add_class(db)


@pytest.fixture
def session_row(db, klass):
    return add_session(db, klass)


def start_thread(fn, *args):
    """Run ``fn`` on a worker thread; the outcome dict gets ``result`` or ``error``."""
    outcome = {}

    def target():
        try:
            outcome["result"] = fn(*args)
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target)
    worker.start()
    return worker, outcome
