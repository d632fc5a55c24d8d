import sqlite3
from datetime import datetime

import pytest

from rfid_tracker.database import Database
from rfid_tracker.logic import ScanRouter
from rfid_tracker.storage import BackupLog, StudentCache


FIXED_NOW = datetime(2026, 3, 2, 8, 15, 30)


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    async def emit(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [name for name, _ in self.events]


class FakeReader:
    def __init__(self, connected=True):
        self.connected = connected
        self.commands = []

    @property
    def is_connected(self):
        return self.connected

    def send_command(self, command):
        if not self.connected:
            return False
        self.commands.append(command)
        return True


class BrokenDatabase(Database):
    """Database whose reads and writes fail as if the file were unavailable."""

    def get_student(self, uid):
        raise sqlite3.OperationalError("database is locked")

    def insert_attendance(self, record):
        raise sqlite3.OperationalError("database is locked")

    def upsert_student(self, student):
        raise sqlite3.OperationalError("database is locked")

    def list_students(self, grade=None):
        raise sqlite3.OperationalError("database is locked")


@pytest.fixture()
def db(tmp_path):
    database = Database(tmp_path / "attendance.db")
    database.create_tables()
    return database


@pytest.fixture()
def cache(tmp_path):
    return StudentCache(tmp_path / "students.json")


@pytest.fixture()
def backup(tmp_path):
    return BackupLog(tmp_path / "attendance.csv")


@pytest.fixture()
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture()
def reader():
    return FakeReader()


@pytest.fixture()
def router(db, cache, backup, broadcaster, reader):
    return ScanRouter(db, cache, backup, broadcaster, reader=reader, clock=lambda: FIXED_NOW)
