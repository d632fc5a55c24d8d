import logging
import re
import sqlite3
from datetime import datetime

from rfid_tracker.constants import (
    STATUS_REGISTERED,
    STATUS_NOT_REGISTERED,
    UNKNOWN_STUDENT_ID,
    UNKNOWN_STUDENT_NAME,
    EVENT_SCAN,
    EVENT_RFID_SCANNED,
    EVENT_REGISTRATION_MODE,
    EVENT_SCANNING_MODE,
    EVENT_STUDENT_REGISTERED,
    CMD_START_REG,
    CMD_REG_SUCCESS,
    CMD_REG_FAIL,
    CMD_CANCEL_REG,
    CMD_SCANNING_PAUSED,
    CMD_SCANNING_RESUMED,
)
from rfid_tracker.models import (
    AttendanceRecord,
    EmitPendingRegistration,
    Ignore,
    ModeState,
    RecordAttendance,
    ScanResult,
)
from rfid_tracker.serial_reader import normalize_uid

logger = logging.getLogger(__name__)

UID_PATTERN = re.compile(r"[0-9A-Za-z]+")


# ==================================================
# Scan routing
# ==================================================

def route(uid, state):
    """Decide what a scanned card UID should do given the current mode.

    Registration mode wins over a paused scanner.
    """
    if not uid or not uid.strip():
        return Ignore("empty uid")

    if not UID_PATTERN.fullmatch(uid):
        return Ignore("malformed uid")

    if state.scanning_paused and not state.registration_mode:
        return Ignore("scanning paused")

    if state.registration_mode:
        return EmitPendingRegistration(uid)

    return RecordAttendance(uid)


def build_attendance_record(uid, student, scanned_at):
    if student:
        return AttendanceRecord(
            uid=uid,
            student_id=student.student_id,
            full_name=student.full_name,
            status=STATUS_REGISTERED,
            scanned_at=scanned_at,
        )

    return AttendanceRecord(
        uid=uid,
        student_id=UNKNOWN_STUDENT_ID,
        full_name=UNKNOWN_STUDENT_NAME,
        status=STATUS_NOT_REGISTERED,
        scanned_at=scanned_at,
    )


class ScanRouter:
    """Owns the mode state and carries out routed scans and admin commands.

    All methods are expected to run on the event loop thread, one at a time.
    """

    def __init__(self, db, cache, backup, broadcaster, reader=None, state=None, clock=datetime.now):
        self.db = db
        self.cache = cache
        self.backup = backup
        self.broadcaster = broadcaster
        self.reader = reader
        self.state = state or ModeState()
        self.clock = clock

    # ----------------------------------------------
    # scans
    # ----------------------------------------------

    async def handle_scan(self, raw_uid):
        uid = normalize_uid(raw_uid or "")
        action = route(uid, self.state)

        if isinstance(action, Ignore):
            logger.info("Scan %r ignored: %s", raw_uid, action.reason)
            return ScanResult(action=action)

        if isinstance(action, EmitPendingRegistration):
            self.state.pending_registration = uid
            await self.broadcaster.emit(EVENT_RFID_SCANNED, {"uid": uid})
            logger.info("RFID scanned for registration: %s", uid)
            return ScanResult(action=action)

        return await self.record_attendance(action)

    async def record_attendance(self, action):
        uid = action.uid
        student = self.lookup_student(uid)
        record = build_attendance_record(uid, student, self.clock())

        result = ScanResult(action=action, record=record)
        try:
            self.db.insert_attendance(record)
            result.saved = True
        except sqlite3.Error as e:
            logger.error("Failed to save attendance for %s: %s", uid, e)
            result.error = str(e)

        self.backup.append(record)

        await self.broadcaster.emit(EVENT_SCAN, record.to_event())
        logger.info(
            "%s: %s (%s) at %s",
            record.status,
            record.full_name,
            uid,
            record.scanned_at.strftime("%H:%M:%S"),
        )
        return result

    def lookup_student(self, uid):
        try:
            student = self.db.get_student(uid)
        except sqlite3.Error as e:
            logger.warning("Student lookup failed for %s, using local cache: %s", uid, e)
            student = None

        if student:
            return student
        return self.cache.get(uid)

    # ----------------------------------------------
    # admin commands
    # ----------------------------------------------

    async def start_registration(self):
        self.state.registration_mode = True
        self.state.pending_registration = None
        await self.broadcaster.emit(EVENT_REGISTRATION_MODE, {"active": True})
        self.send_command(CMD_START_REG)
        logger.info("Registration mode activated")

    async def cancel_registration(self):
        self.state.registration_mode = False
        self.state.pending_registration = None
        await self.broadcaster.emit(EVENT_REGISTRATION_MODE, {"active": False})
        self.send_command(CMD_CANCEL_REG)
        logger.info("Registration cancelled")

    async def toggle_scanning(self):
        self.state.scanning_paused = not self.state.scanning_paused
        paused = self.state.scanning_paused
        await self.broadcaster.emit(EVENT_SCANNING_MODE, {"paused": paused})
        self.send_command(CMD_SCANNING_PAUSED if paused else CMD_SCANNING_RESUMED)
        logger.info("RFID scanning %s", "paused" if paused else "resumed")
        return paused

    async def register_student(self, student):
        """Bind a card UID to a student and leave registration mode.

        Raises ``sqlite3.Error`` when the database write fails.
        """
        try:
            self.db.upsert_student(student)
        except sqlite3.Error:
            self.send_command(CMD_REG_FAIL)
            raise

        self.cache.put(student)

        self.state.registration_mode = False
        self.state.pending_registration = None
        await self.broadcaster.emit(EVENT_REGISTRATION_MODE, {"active": False})
        await self.broadcaster.emit(
            EVENT_STUDENT_REGISTERED,
            {
                "uid": student.uid,
                "studentId": student.student_id,
                "fullName": student.full_name,
                "grade": student.grade,
            },
        )
        self.send_command(CMD_REG_SUCCESS)
        logger.info("Registered %s (%s) to card %s", student.full_name, student.student_id, student.uid)
        return student

    def send_command(self, command):
        if self.reader is None or not self.reader.send_command(command):
            logger.info("Reader not connected - %s not sent", command)
            return False
        return True
