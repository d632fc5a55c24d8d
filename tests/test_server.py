import functools
import time

import pytest
from fastapi.testclient import TestClient

from conftest import BrokenDatabase
from rfid_tracker import server
from rfid_tracker.serial_reader import CardReader
from rfid_tracker.server import create_app
from rfid_tracker.storage import BackupLog


@pytest.fixture()
def client(db, cache, backup):
    app = create_app(db=db, cache=cache, backup=backup, enable_reader=False)
    with TestClient(app) as c:
        yield c


def _drain_initial(ws):
    return [ws.receive_json() for _ in range(3)]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_status_defaults(client):
    assert client.get("/status").json() == {
        "registrationMode": False,
        "scanningPaused": False,
        "pendingRegistration": None,
        "readerConnected": False,
    }


def test_scan_of_registered_student(client):
    res = client.post(
        "/register-student",
        json={"uid": "a1", "studentId": "S1", "fullName": "Jane", "grade": 7},
    )
    assert res.status_code == 200
    assert res.json()["data"] == {"uid": "A1", "student_id": "S1", "full_name": "Jane", "grade": 7}

    res = client.post("/scan", json={"uid": "A1"})
    body = res.json()
    assert body["action"] == "RecordAttendance"
    assert body["saved"] is True
    assert body["record"]["studentId"] == "S1"
    assert body["record"]["fullName"] == "Jane"
    assert body["record"]["status"] == "Registered"

    rows = client.get("/api/attendance").json()
    assert len(rows) == 1
    assert rows[0]["uid"] == "A1"
    assert rows[0]["student_id"] == "S1"


def test_scan_of_unknown_card(client):
    body = client.post("/scan", json={"uid": "ZZ"}).json()
    assert body["record"]["status"] == "Not Registered"
    assert body["record"]["studentId"] == "Unknown"


def test_registration_flow(client):
    assert client.post("/start-registration").status_code == 200
    body = client.post("/scan", json={"uid": "B2"}).json()
    assert body == {"action": "EmitPendingRegistration", "saved": False}
    assert client.get("/status").json()["pendingRegistration"] == "B2"
    assert client.get("/api/attendance").json() == []

    client.post("/register-student", json={"uid": "B2", "studentId": "S2", "fullName": "Omar"})
    status = client.get("/status").json()
    assert status["registrationMode"] is False
    assert status["pendingRegistration"] is None


def test_cancel_registration(client):
    client.post("/start-registration")
    res = client.post("/cancel-registration")
    assert res.json() == {"status": "Registration cancelled"}
    assert client.get("/status").json()["registrationMode"] is False


def test_toggle_scanning_pauses_attendance(client):
    res = client.post("/toggle-scanning")
    assert res.json() == {"status": "RFID scanning paused", "paused": True}

    body = client.post("/scan", json={"uid": "A1"}).json()
    assert body == {"action": "Ignore", "saved": False}

    res = client.post("/toggle-scanning")
    assert res.json()["paused"] is False


def test_register_student_requires_fields(client):
    res = client.post("/register-student", json={"uid": "A1", "studentId": ""})
    assert res.status_code == 400
    assert res.json()["detail"] == "Missing required fields"


def test_register_student_database_failure(tmp_path, cache, backup):
    app = create_app(db=BrokenDatabase(tmp_path / "broken.db"), cache=cache, backup=backup, enable_reader=False)
    with TestClient(app) as c:
        res = c.post("/register-student", json={"uid": "A1", "studentId": "S1", "fullName": "Jane"})
        assert res.status_code == 500

        # students listing falls back to the local cache
        assert c.get("/students").json() == []


def test_students_filtered_by_grade(client):
    client.post("/register-student", json={"uid": "A1", "studentId": "S1", "fullName": "Jane", "grade": 7})
    client.post("/register-student", json={"uid": "B2", "studentId": "S2", "fullName": "Omar", "grade": 8})

    assert len(client.get("/students").json()) == 2
    assert [s["uid"] for s in client.get("/students", params={"grade": 8}).json()] == ["B2"]


def test_attendance_filter_and_summary(client):
    client.post("/register-student", json={"uid": "A1", "studentId": "S1", "fullName": "Jane"})
    client.post("/scan", json={"uid": "A1"})
    client.post("/scan", json={"uid": "ZZ"})

    assert [r["uid"] for r in client.get("/api/attendance", params={"uid": "zz"}).json()] == ["ZZ"]
    assert len(client.get("/api/attendance", params={"limit": 1}).json()) == 1

    summary = client.get("/api/attendance/summary").json()
    assert summary["total_scans"] == 2
    assert summary["today_scans"] == 2
    assert summary["registered_students"] == 1
    assert summary["unregistered_scans_today"] == 1


def test_websocket_receives_state_and_scans(client):
    with client.websocket_connect("/ws") as ws:
        initial = _drain_initial(ws)
        assert initial == [
            {"event": "registration-mode", "data": {"active": False}},
            {"event": "scanning-mode", "data": {"paused": False}},
            {"event": "arduino-status", "data": {"connected": False}},
        ]

        client.post("/scan", json={"uid": "ZZ"})
        message = ws.receive_json()
        assert message["event"] == "scan"
        assert message["data"]["uid"] == "ZZ"
        assert message["data"]["status"] == "Not Registered"


def test_websocket_commands(client):
    with client.websocket_connect("/ws") as ws:
        _drain_initial(ws)

        ws.send_json({"event": "start-registration"})
        assert ws.receive_json() == {"event": "registration-mode", "data": {"active": True}}

        ws.send_text("not json")
        ws.send_json({"event": "toggle-scanning"})
        assert ws.receive_json() == {"event": "scanning-mode", "data": {"paused": True}}

    status = client.get("/status").json()
    assert status["registrationMode"] is True
    assert status["scanningPaused"] is True


def test_unwritable_backup_log_does_not_block_startup(tmp_path, db, cache):
    blocker = tmp_path / "not-a-folder"
    blocker.write_text("", encoding="utf-8")
    backup = BackupLog(blocker / "attendance.csv")

    app = create_app(db=db, cache=cache, backup=backup, enable_reader=False)
    with TestClient(app) as c:
        assert c.get("/health").status_code == 200

        body = c.post("/scan", json={"uid": "A1"}).json()
        assert body["action"] == "RecordAttendance"
        assert body["saved"] is True


def test_websocket_ignores_non_string_event(client):
    with client.websocket_connect("/ws") as ws:
        _drain_initial(ws)

        ws.send_json({"event": ["toggle-scanning"]})
        ws.send_json({"event": {"name": "x"}})
        ws.send_json({"event": "start-registration"})
        assert ws.receive_json() == {"event": "registration-mode", "data": {"active": True}}

    assert client.get("/status").json()["scanningPaused"] is False


def test_attendance_filter_by_student_id(client):
    client.post("/register-student", json={"uid": "A1", "studentId": "S1", "fullName": "Jane"})
    client.post("/scan", json={"uid": "A1"})
    client.post("/scan", json={"uid": "ZZ"})

    rows = client.get("/api/attendance", params={"student_id": "S1"}).json()
    assert [r["uid"] for r in rows] == ["A1"]


class QuietPort:
    is_open = True
    in_waiting = 0

    def close(self):
        self.is_open = False


def test_reader_status_is_broadcast(monkeypatch, db, cache, backup):
    monkeypatch.setattr(
        server,
        "CardReader",
        functools.partial(CardReader, serial_factory=lambda *args, **kwargs: QuietPort()),
    )
    app = create_app(db=db, cache=cache, backup=backup, serial_port="COM3")
    emitted = []

    async def record(event, data):
        emitted.append((event, data))

    app.state.broadcaster.emit = record

    with TestClient(app) as c:
        deadline = time.monotonic() + 2
        while (not emitted or app.state.background_tasks) and time.monotonic() < deadline:
            time.sleep(0.01)

        assert emitted == [("arduino-status", {"connected": True})]
        assert app.state.background_tasks == set()
        assert c.get("/status").json()["readerConnected"] is True
