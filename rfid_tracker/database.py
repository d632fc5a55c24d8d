import sqlite3
from datetime import datetime
from pathlib import Path

from rfid_tracker.constants import DB_PATH
from rfid_tracker.models import AttendanceRecord, Student


class Database:
    """sqlite store for students and attendance rows.

    Errors are raised as ``sqlite3.Error``; callers decide whether a failure
    falls back to local storage.
    """

    def __init__(self, path=DB_PATH):
        self.path = Path(path)

    def connect_db(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def create_tables(self):
        conn = self.connect_db()
        try:
            cursor = conn.cursor()
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS students (
                uid TEXT PRIMARY KEY,
                student_id TEXT NOT NULL,
                full_name TEXT NOT NULL,
                grade INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """)

            # append-only, one row per attendance scan
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS attendance (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uid TEXT NOT NULL,
                student_id TEXT,
                full_name TEXT,
                status TEXT NOT NULL,
                scanned_at TEXT NOT NULL
            )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_attendance_uid ON attendance (uid)"
            )
            conn.commit()
        finally:
            conn.close()

    def get_student(self, uid: str):
        conn = self.connect_db()
        try:
            row = conn.execute(
                """
                SELECT uid, student_id, full_name, grade
                FROM students
                WHERE uid = ?
                """,
                (uid,),
            ).fetchone()
        finally:
            conn.close()

        if not row:
            return None
        return _row_to_student(row)

    def upsert_student(self, student: Student) -> Student:
        conn = self.connect_db()
        try:
            conn.execute(
                """
                INSERT INTO students (uid, student_id, full_name, grade)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(uid) DO UPDATE SET
                    student_id = excluded.student_id,
                    full_name = excluded.full_name,
                    grade = excluded.grade
                """,
                (student.uid, student.student_id, student.full_name, student.grade),
            )
            conn.commit()
        finally:
            conn.close()
        return student

    def list_students(self, grade=None):
        query = "SELECT uid, student_id, full_name, grade FROM students"
        params = []
        if grade is not None:
            query += " WHERE grade = ?"
            params.append(grade)
        query += " ORDER BY created_at DESC, rowid DESC"

        conn = self.connect_db()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_row_to_student(r) for r in rows]

    def count_students(self) -> int:
        conn = self.connect_db()
        try:
            row = conn.execute("SELECT COUNT(*) FROM students").fetchone()
        finally:
            conn.close()
        return int(row[0])

    def insert_attendance(self, record: AttendanceRecord) -> int:
        conn = self.connect_db()
        try:
            cur = conn.execute(
                """
                INSERT INTO attendance (uid, student_id, full_name, status, scanned_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.uid,
                    record.student_id,
                    record.full_name,
                    record.status,
                    record.scanned_at.isoformat(sep=" ", timespec="seconds"),
                ),
            )
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def get_attendance_records(self, limit=100, uid=None, student_id=None):
        """Most recent attendance rows first."""
        query = """
            SELECT uid, student_id, full_name, status, scanned_at
            FROM attendance
        """
        where = []
        params = []
        if uid:
            where.append("uid = ?")
            params.append(uid)
        if student_id:
            where.append("student_id = ?")
            params.append(student_id)
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY scanned_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        conn = self.connect_db()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            AttendanceRecord(
                uid=r["uid"],
                student_id=r["student_id"],
                full_name=r["full_name"],
                status=r["status"],
                scanned_at=datetime.fromisoformat(r["scanned_at"]),
            )
            for r in rows
        ]


def _row_to_student(row) -> Student:
    return Student(
        uid=row["uid"],
        student_id=row["student_id"],
        full_name=row["full_name"],
        grade=row["grade"],
    )
