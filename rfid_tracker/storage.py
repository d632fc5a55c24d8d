import json
import logging
import os

import pandas as pd

from rfid_tracker.constants import (
    PROGRAM_STORAGE,
    STUDENTS_FILE,
    BACKUP_LOG_FILE,
    BACKUP_LOG_COLUMNS,
)
from rfid_tracker.models import Student

logger = logging.getLogger(__name__)


def create_folders(folders=None):
    for folder in folders or [PROGRAM_STORAGE]:
        if not os.path.exists(folder):
            os.makedirs(folder)


def load_data(filepath, default):
    if os.path.exists(filepath):
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s: %s", filepath, e)
            return default
    return default


def save_data(filepath, data):
    try:
        folder = os.path.dirname(filepath)
        if folder and not os.path.exists(folder):
            os.makedirs(folder)

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        return True
    except OSError as e:
        logger.error("Failed to save %s: %s", filepath, e)
        return False


class StudentCache:
    """Local JSON copy of registered students, keyed by card UID.

    Used when the database cannot be reached.
    """

    def __init__(self, filepath=STUDENTS_FILE):
        self.filepath = filepath
        self.students = {}
        self.load()

    def load(self):
        self.students = load_data(self.filepath, {})
        return self.students

    def get(self, uid):
        data = self.students.get(uid)
        if not data:
            return None
        return Student(
            uid=uid,
            student_id=data["studentId"],
            full_name=data["fullName"],
            grade=data.get("grade"),
        )

    def put(self, student):
        self.students[student.uid] = {
            "studentId": student.student_id,
            "fullName": student.full_name,
            "grade": student.grade,
        }
        return save_data(self.filepath, self.students)

    def all(self):
        return [self.get(uid) for uid in self.students]


class BackupLog:
    """Append-only CSV copy of every attendance row."""

    def __init__(self, filepath=BACKUP_LOG_FILE):
        self.filepath = filepath

    def ensure(self):
        if os.path.exists(self.filepath):
            return True
        try:
            create_folders([os.path.dirname(self.filepath) or "."])
            pd.DataFrame(columns=BACKUP_LOG_COLUMNS).to_csv(self.filepath, index=False)
            return True
        except OSError as e:
            logger.error("Failed to create backup log %s: %s", self.filepath, e)
            return False

    def append(self, record):
        row = [
            record.scanned_at.strftime("%Y-%m-%d"),
            record.scanned_at.strftime("%H:%M:%S"),
            record.uid,
            record.student_id,
            record.full_name,
            record.status,
        ]
        if not self.ensure():
            return False
        try:
            df = pd.DataFrame([row], columns=BACKUP_LOG_COLUMNS)
            df.to_csv(self.filepath, mode="a", header=False, index=False)
            return True
        except OSError as e:
            logger.error("Failed to append to backup log %s: %s", self.filepath, e)
            return False

    def read(self):
        if not os.path.exists(self.filepath):
            return pd.DataFrame(columns=BACKUP_LOG_COLUMNS)
        return pd.read_csv(self.filepath, dtype=str, keep_default_na=False)
