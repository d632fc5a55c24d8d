import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from rfid_tracker.broadcast import Broadcaster
from rfid_tracker.constants import (
    APP_NAME,
    APP_VERSION,
    ATTENDANCE_LIMIT,
    CORS_ALLOW_ORIGINS,
    EVENT_READER_STATUS,
    EVENT_REGISTRATION_MODE,
    EVENT_SCANNING_MODE,
    SERIAL_PORT,
)
from rfid_tracker.database import Database
from rfid_tracker.logic import ScanRouter
from rfid_tracker.models import Student
from rfid_tracker.serial_reader import CardReader, auto_detect_port, normalize_uid
from rfid_tracker.storage import BackupLog, StudentCache
from rfid_tracker.summary import summarize_attendance

logger = logging.getLogger(__name__)


# -----------------------------
# Models
# -----------------------------
class StudentRegistration(BaseModel):
    uid: str = ""
    student_id: str = Field("", alias="studentId")
    full_name: str = Field("", alias="fullName")
    grade: Optional[int] = None


class ScanRequest(BaseModel):
    uid: str


# -----------------------------
# Scan queue
# -----------------------------
async def scan_worker(queue, router):
    """Process queued scans one at a time, in arrival order."""
    while True:
        uid, future = await queue.get()
        try:
            result = await router.handle_scan(uid)
            if future is not None and not future.done():
                future.set_result(result)
        except Exception as e:
            logger.exception("Scan %r failed", uid)
            if future is not None and not future.done():
                future.set_exception(e)
        finally:
            queue.task_done()


def start_reader(app, loop, port):
    queue = app.state.scan_queue
    broadcaster = app.state.broadcaster

    tasks = app.state.background_tasks

    def emit_status(connected):
        task = loop.create_task(broadcaster.emit(EVENT_READER_STATUS, {"connected": connected}))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def on_card(uid):
        loop.call_soon_threadsafe(queue.put_nowait, (uid, None))

    def on_status(connected):
        try:
            loop.call_soon_threadsafe(emit_status, connected)
        except RuntimeError:
            # loop already closed during shutdown
            pass

    reader = CardReader(port, on_card, on_status=on_status)
    reader.start()
    return reader


def create_app(db=None, cache=None, backup=None, serial_port=SERIAL_PORT, enable_reader=True):
    db = db or Database()
    cache = cache or StudentCache()
    backup = backup or BackupLog()
    broadcaster = Broadcaster()
    router = ScanRouter(db, cache, backup, broadcaster)

    @asynccontextmanager
    async def lifespan(app):
        db.create_tables()
        backup.ensure()

        loop = asyncio.get_running_loop()
        app.state.scan_queue = asyncio.Queue()
        worker = asyncio.create_task(scan_worker(app.state.scan_queue, router))

        reader = None
        if enable_reader:
            port = serial_port or auto_detect_port()
            if port:
                reader = start_reader(app, loop, port)
            else:
                logger.warning("No serial port found - attendance scanning disabled")
        router.reader = reader
        app.state.reader = reader

        try:
            yield
        finally:
            if reader:
                reader.stop()
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)
    app.state.router = router
    app.state.broadcaster = broadcaster
    app.state.reader = None
    app.state.background_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def reader_connected():
        reader = app.state.reader
        return bool(reader and reader.is_connected)

    # -----------------------------
    # Basic Health
    # -----------------------------
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/status")
    def status():
        state = router.state
        return {
            "registrationMode": state.registration_mode,
            "scanningPaused": state.scanning_paused,
            "pendingRegistration": state.pending_registration,
            "readerConnected": reader_connected(),
        }

    # -----------------------------
    # Students
    # -----------------------------
    @app.get("/students")
    def students(grade: Optional[int] = None):
        try:
            rows = db.list_students(grade=grade)
        except sqlite3.Error as e:
            logger.error("Error fetching students, using local cache: %s", e)
            rows = [s for s in cache.all() if grade is None or s.grade == grade]
        return [s.to_dict() for s in rows]

    @app.post("/register-student")
    async def register_student(payload: StudentRegistration):
        uid = normalize_uid(payload.uid)
        student_id = payload.student_id.strip()
        full_name = payload.full_name.strip()

        if not uid or not student_id or not full_name:
            raise HTTPException(status_code=400, detail="Missing required fields")

        student = Student(uid=uid, student_id=student_id, full_name=full_name, grade=payload.grade)
        try:
            await router.register_student(student)
        except sqlite3.Error as e:
            logger.error("Error registering student %s: %s", uid, e)
            raise HTTPException(status_code=500, detail="Failed to register student")

        return {"status": "Student registered successfully", "data": student.to_dict()}

    # -----------------------------
    # Attendance
    # -----------------------------
    @app.get("/api/attendance")
    def attendance(
        limit: int = Query(ATTENDANCE_LIMIT, ge=1, le=1000),
        uid: Optional[str] = None,
        student_id: Optional[str] = None,
    ):
        try:
            records = db.get_attendance_records(
                limit=limit,
                uid=normalize_uid(uid) if uid else None,
                student_id=student_id.strip() if student_id else None,
            )
        except sqlite3.Error as e:
            logger.error("Error fetching attendance: %s", e)
            raise HTTPException(status_code=500, detail="Failed to fetch attendance records")

        return [
            {
                "uid": r.uid,
                "student_id": r.student_id,
                "full_name": r.full_name,
                "status": r.status,
                "scanned_at": r.scanned_at.isoformat(sep=" ", timespec="seconds"),
            }
            for r in records
        ]

    @app.get("/api/attendance/summary")
    def attendance_summary():
        try:
            records = db.get_attendance_records(limit=None)
            registered = db.count_students()
        except sqlite3.Error as e:
            logger.error("Error building attendance summary: %s", e)
            raise HTTPException(status_code=500, detail="Failed to fetch attendance records")
        return summarize_attendance(records, registered)

    @app.post("/scan")
    async def scan(payload: ScanRequest):
        future = asyncio.get_running_loop().create_future()
        app.state.scan_queue.put_nowait((payload.uid, future))
        result = await future
        response = {"action": type(result.action).__name__, "saved": result.saved}
        if result.record:
            response["record"] = result.record.to_event()
        if result.error:
            response["error"] = result.error
        return response

    # -----------------------------
    # Mode commands
    # -----------------------------
    @app.post("/start-registration")
    async def start_registration():
        await router.start_registration()
        return {"status": "Registration mode activated. Please scan RFID card."}

    @app.post("/cancel-registration")
    async def cancel_registration():
        await router.cancel_registration()
        return {"status": "Registration cancelled"}

    @app.post("/toggle-scanning")
    async def toggle_scanning():
        paused = await router.toggle_scanning()
        status = "RFID scanning paused" if paused else "RFID scanning resumed"
        return {"status": status, "paused": paused}

    # -----------------------------
    # Live events
    # -----------------------------
    commands = {
        "start-registration": router.start_registration,
        "cancel-registration": router.cancel_registration,
        "toggle-scanning": router.toggle_scanning,
    }

    @app.websocket("/ws")
    async def events(websocket: WebSocket):
        await broadcaster.connect(websocket)
        state = router.state
        await websocket.send_json({"event": EVENT_REGISTRATION_MODE, "data": {"active": state.registration_mode}})
        await websocket.send_json({"event": EVENT_SCANNING_MODE, "data": {"paused": state.scanning_paused}})
        await websocket.send_json({"event": EVENT_READER_STATUS, "data": {"connected": reader_connected()}})
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except ValueError:
                    logger.debug("Ignoring malformed listener message: %r", text)
                    continue

                event = message.get("event") if isinstance(message, dict) else None
                command = commands.get(event) if isinstance(event, str) else None
                if command is None:
                    logger.debug("Ignoring unknown listener message: %r", message)
                    continue
                await command()
        except WebSocketDisconnect:
            broadcaster.disconnect(websocket)

    return app
