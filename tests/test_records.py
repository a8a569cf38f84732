import io
from datetime import timedelta

import pandas as pd
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from classiq.models import AttendanceRecord, AttendanceStatus, MarkedBy
from classiq.records import RecordStore

from conftest import OTHER_FACULTY_ID, T0, TODAY, add_session, faculty_headers, headers


def all_records(db):
    db.expire_all()
    return db.exec(select(AttendanceRecord).order_by(AttendanceRecord.student_id)).all()


# --- store ---

def test_upsert_keeps_one_row_and_last_writer_wins(db, session_row, clock):
    store = RecordStore(db, clock)
    first = store.upsert(session_row.id, 1, AttendanceStatus.absent, MarkedBy.manual)
    clock.advance(minutes=3)
    second = store.upsert(session_row.id, 1, AttendanceStatus.present, MarkedBy.qr, "10.0.0.7", "phone")
    assert first.id == second.id
    rows = all_records(db)
    assert len(rows) == 1
    assert (rows[0].status, rows[0].marked_by, rows[0].ip_address) == (
        AttendanceStatus.present, MarkedBy.qr, "10.0.0.7"
    )
    assert rows[0].marked_at == T0 + timedelta(minutes=3)


def test_upsert_retries_after_losing_insert_race(db, session_row, clock, monkeypatch):
    store = RecordStore(db, clock)
    real_write = store._write
    calls = []

    def racing_write(session_id, student_id, **fields):
        calls.append(1)
        if len(calls) == 1:
            # another request commits the pair between our read and our insert
            with Session(db.get_bind()) as other:
                other.add(AttendanceRecord(session_id=session_id, student_id=student_id,
                                           status=AttendanceStatus.late, marked_by=MarkedBy.manual))
                other.commit()
            store.db.add(AttendanceRecord(session_id=session_id, student_id=student_id))
            store.db.commit()
        return real_write(session_id, student_id, **fields)

    monkeypatch.setattr(store, "_write", racing_write)
    record = store.upsert(session_row.id, 2, AttendanceStatus.present, MarkedBy.facial)
    assert len(calls) == 2
    assert record.marked_by == MarkedBy.facial
    assert [(r.student_id, r.status) for r in all_records(db)] == [(2, AttendanceStatus.present)]


def test_bulk_mark_only_touches_changed_rows(db, session_row, clock):
    store = RecordStore(db, clock)
    store.upsert(session_row.id, 1, AttendanceStatus.present, MarkedBy.facial)
    store.upsert(session_row.id, 2, AttendanceStatus.present, MarkedBy.qr)
    clock.advance(minutes=10)

    counts = store.bulk_mark(session_row.id, [
        (1, AttendanceStatus.present),
        (2, AttendanceStatus.late),
        (3, AttendanceStatus.absent),
    ])
    assert counts == {"created": 1, "updated": 1, "unchanged": 1}

    rows = {r.student_id: r for r in all_records(db)}
    assert (rows[1].marked_by, rows[1].marked_at) == (MarkedBy.facial, T0)
    assert (rows[2].status, rows[2].marked_by, rows[2].marked_at) == (
        AttendanceStatus.late, MarkedBy.manual, T0 + timedelta(minutes=10)
    )
    assert (rows[3].status, rows[3].marked_by) == (AttendanceStatus.absent, MarkedBy.manual)


def test_bulk_mark_replays_after_concurrent_insert(db, session_row, clock, monkeypatch):
    store = RecordStore(db, clock)
    real_get = store.get
    lookups = []

    def racing_get(session_id, student_id):
        lookups.append(student_id)
        if lookups == [2]:
            # a QR scan commits student 2 after our lookup found nothing
            with Session(db.get_bind()) as other:
                other.add(AttendanceRecord(session_id=session_id, student_id=student_id,
                                           status=AttendanceStatus.present, marked_by=MarkedBy.qr,
                                           marked_at=T0))
                other.commit()
            return None
        return real_get(session_id, student_id)

    monkeypatch.setattr(store, "get", racing_get)
    clock.advance(minutes=5)
    counts = store.bulk_mark(session_row.id, [(2, AttendanceStatus.late), (1, AttendanceStatus.absent)])
    assert counts == {"created": 1, "updated": 1, "unchanged": 0}
    assert lookups.count(2) == 2

    rows = all_records(db)
    assert [(r.student_id, r.status, r.marked_by) for r in rows] == [
        (1, AttendanceStatus.absent, MarkedBy.manual),
        (2, AttendanceStatus.late, MarkedBy.manual),
    ]


def test_counts(db, session_row, clock):
    store = RecordStore(db, clock)
    store.upsert(session_row.id, 1, AttendanceStatus.present, MarkedBy.qr)
    store.upsert(session_row.id, 2, AttendanceStatus.absent, MarkedBy.manual)
    store.upsert(session_row.id, 77, AttendanceStatus.present, MarkedBy.manual)
    assert store.count_marked(session_row.id, session_row.class_id) == 2
    assert store.count_present(session_row.id) == 2
    assert store.count_present(session_row.id, 1) == 1
    assert store.count_present(session_row.id, 2) == 0


def test_export_csv(db, session_row, clock):
    store = RecordStore(db, clock)
    store.upsert(session_row.id, 2, AttendanceStatus.late, MarkedBy.manual)
    store.upsert(session_row.id, 1, AttendanceStatus.present, MarkedBy.qr)
    df = pd.read_csv(io.StringIO(store.export_csv(session_row.id)))
    assert list(df.columns) == ["session_id", "student_id", "status", "marked_by", "marked_at"]
    assert df["student_id"].tolist() == [1, 2]
    assert df["marked_by"].tolist() == ["qr", "manual"]


def test_export_csv_empty_session(db, session_row, clock):
    text = RecordStore(db, clock).export_csv(session_row.id)
    assert text.strip() == "session_id,student_id,status,marked_by,marked_at"


def test_unique_pair_is_enforced(db, session_row):
    db.add(AttendanceRecord(session_id=session_row.id, student_id=1))
    db.commit()
    db.add(AttendanceRecord(session_id=session_row.id, student_id=1))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    else:
        raise AssertionError("duplicate (session, student) row was accepted")


# --- manual marking endpoints ---

def mark(client, session_id, student_id, status="present", user_headers=None):
    return client.post("/api/attendance/mark",
                       json={"session_id": session_id, "student_id": student_id, "status": status},
                       headers=user_headers or faculty_headers())


def test_manual_mark(client, db, session_row):
    r = mark(client, session_row.id, 1, "late")
    assert r.status_code == 200
    assert r.json()["record"]["status"] == "late"
    assert r.json()["record"]["marked_by"] == "manual"
    assert r.json()["record"]["marked_at"] == "2026-03-02T05:00:00Z"


def test_manual_mark_rules(client, db, klass, session_row):
    assert mark(client, session_row.id, 1, user_headers=faculty_headers(OTHER_FACULTY_ID)).status_code == 403
    assert mark(client, session_row.id, 1, user_headers=headers(2)).status_code == 403
    assert mark(client, 999, 1).status_code == 404

    r = mark(client, session_row.id, 42)
    assert r.status_code == 400
    assert r.json()["student_ids"] == [42]

    yesterday = add_session(db, klass, session_date=TODAY - timedelta(days=1))
    r = mark(client, yesterday.id, 1)
    assert r.status_code == 410
    assert r.json()["error"] == "Session already completed."
    assert all_records(db) == []


def test_manual_mark_by_admin(client, session_row):
    assert mark(client, session_row.id, 3, user_headers=headers(900, "admin")).status_code == 200


def test_bulk_endpoint(client, db, klass, session_row):
    body = {"session_id": session_row.id, "records": [
        {"student_id": 1, "status": "present"},
        {"student_id": 2, "status": "absent"},
    ]}
    r = client.post("/api/attendance/mark-bulk", json=body, headers=faculty_headers())
    assert r.status_code == 200
    assert (r.json()["created"], r.json()["updated"], r.json()["unchanged"]) == (2, 0, 0)

    body["records"].append({"student_id": 99, "status": "present"})
    r = client.post("/api/attendance/mark-bulk", json=body, headers=faculty_headers())
    assert r.status_code == 400
    assert r.json()["student_ids"] == [99]

    # bulk save is allowed on past sessions
    old = add_session(db, klass, session_date=TODAY - timedelta(days=7))
    body = {"session_id": old.id, "records": [{"student_id": 3, "status": "excused"}]}
    assert client.post("/api/attendance/mark-bulk", json=body, headers=faculty_headers()).status_code == 200


def test_correct_record(client, db, session_row, clock):
    record_id = mark(client, session_row.id, 1, "absent").json()["record"]["id"]
    clock.advance(minutes=1)
    r = client.put(f"/api/attendance/{record_id}", json={"status": "excused"}, headers=faculty_headers())
    assert r.status_code == 200
    assert r.json()["record"]["status"] == "excused"
    assert r.json()["record"]["marked_at"] == "2026-03-02T05:01:00Z"

    assert client.put("/api/attendance/777", json={"status": "late"}, headers=faculty_headers()).status_code == 404
    r = client.put(f"/api/attendance/{record_id}", json={"status": "late"},
                   headers=faculty_headers(OTHER_FACULTY_ID))
    assert r.status_code == 403


def test_session_listing_and_export(client, session_row):
    mark(client, session_row.id, 2, "late")
    mark(client, session_row.id, 1)
    r = client.get(f"/api/attendance/session/{session_row.id}", headers=faculty_headers())
    assert [row["student_id"] for row in r.json()["records"]] == [1, 2]

    r = client.get(f"/api/attendance/session/{session_row.id}/export.csv", headers=faculty_headers())
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert r.text.splitlines()[0] == "session_id,student_id,status,marked_by,marked_at"
    assert len(r.text.splitlines()) == 3

    assert client.get("/api/attendance/session/999", headers=faculty_headers()).status_code == 404
    assert client.get(f"/api/attendance/session/{session_row.id}", headers=headers(1)).status_code == 403


def test_student_history(client, db, klass, session_row):
    older = add_session(db, klass, session_date=TODAY - timedelta(days=7))
    client.post("/api/attendance/mark-bulk", json={"session_id": older.id, "records": [{"student_id": 1}]},
                headers=faculty_headers())
    mark(client, session_row.id, 1, "late")

    r = client.get("/api/attendance/student/me", headers=headers(1))
    assert r.status_code == 200
    assert [row["session_date"] for row in r.json()["records"]] == ["2026-03-02", "2026-02-23"]

    assert client.get("/api/attendance/student/2", headers=headers(1)).status_code == 403
    r = client.get("/api/attendance/student/1", headers=faculty_headers())
    assert len(r.json()["records"]) == 2
