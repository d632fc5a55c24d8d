import os
from pathlib import Path


def _parse_int(value, fallback):
    if not value:
        return fallback
    try:
        return int(value)
    except ValueError:
        return fallback


def _parse_csv(value, fallback):
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


APP_NAME = "RFID Attendance Tracker"
APP_VERSION = "1.0.0"

PROGRAM_STORAGE = Path(os.getenv("RFID_DATA_DIR", "data"))
DB_PATH = Path(os.getenv("RFID_DB_PATH", PROGRAM_STORAGE / "attendance.db"))
STUDENTS_FILE = Path(os.getenv("RFID_STUDENTS_FILE", PROGRAM_STORAGE / "students.json"))
BACKUP_LOG_FILE = Path(os.getenv("RFID_BACKUP_LOG", PROGRAM_STORAGE / "attendance.csv"))

SERIAL_PORT = os.getenv("RFID_SERIAL_PORT", "").strip() or None
BAUD_RATE = _parse_int(os.getenv("RFID_BAUD_RATE"), 9600)
PORT_KEYWORDS = ["Arduino", "CH340", "USB Serial"]

HOST = os.getenv("RFID_HOST", "0.0.0.0")
PORT = _parse_int(os.getenv("RFID_PORT"), 3000)
CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("RFID_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
ATTENDANCE_LIMIT = _parse_int(os.getenv("RFID_ATTENDANCE_LIMIT"), 100)

LOG_LEVEL = (os.getenv("RFID_LOG_LEVEL") or "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

STATUS_REGISTERED = "Registered"
STATUS_NOT_REGISTERED = "Not Registered"
UNKNOWN_STUDENT_ID = "Unknown"
UNKNOWN_STUDENT_NAME = "Student not registered"

BACKUP_LOG_COLUMNS = ["Date", "Time", "UID", "Student_ID", "Full_Name", "Status"]

# events pushed to dashboard listeners
EVENT_SCAN = "scan"
EVENT_RFID_SCANNED = "rfid-scanned"
EVENT_REGISTRATION_MODE = "registration-mode"
EVENT_SCANNING_MODE = "scanning-mode"
EVENT_STUDENT_REGISTERED = "student-registered"
EVENT_READER_STATUS = "arduino-status"

# commands written back to the reader (LED patterns)
CMD_START_REG = "START_REG"
CMD_REG_SUCCESS = "REG_SUCCESS"
CMD_REG_FAIL = "REG_FAIL"
CMD_CANCEL_REG = "CANCEL_REG"
CMD_SCANNING_PAUSED = "SCANNING_PAUSED"
CMD_SCANNING_RESUMED = "SCANNING_RESUMED"
