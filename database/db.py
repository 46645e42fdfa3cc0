import json
import logging
import sqlite3
from typing import Sequence

from smart_attendance.config import DB_PATH
from smart_attendance.errors import LedgerCommitFailed
from smart_attendance.models import AttendanceVerdict, EligibleStudent, Session

logger = logging.getLogger(__name__)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        roll_number TEXT UNIQUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Roster: which students attend which timetable slot.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS schedule_students (
        schedule_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(schedule_id, student_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS student_faces (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        face_descriptor TEXT NOT NULL,   -- JSON array of floats
        is_active INTEGER NOT NULL DEFAULT 1,
        registered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS smart_attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        schedule_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        status TEXT NOT NULL,            -- present | absent
        reason TEXT,
        verified_by_scan INTEGER NOT NULL DEFAULT 0,
        verified_by_class_photo INTEGER NOT NULL DEFAULT 0,
        manually_marked INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(session_id, student_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        session_id TEXT NOT NULL,
        notification_type TEXT NOT NULL, -- absent_alert
        message TEXT NOT NULL,
        sent_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(session_id, student_id, notification_type)
    )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_smart_attendance_schedule ON smart_attendance_records(schedule_id);"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_student_faces_student ON student_faces(student_id);")

    conn.commit()
    conn.close()


# -----------------------------
# Students / roster
# -----------------------------
def add_student(name: str, roll_number: str | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO students (name, roll_number)
        VALUES (?, ?)
    """, (name, roll_number))
    student_id = cur.lastrowid
    conn.commit()
    conn.close()
    return student_id


def get_student_by_id(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, name, roll_number
        FROM students
        WHERE id = ?
    """, (student_id,))
    row = cur.fetchone()
    conn.close()
    return row


def enroll_students(schedule_id: int, student_ids: Sequence[int]) -> int:
    conn = connect_db()
    cur = conn.cursor()
    added = 0
    for student_id in student_ids:
        cur.execute("""
            INSERT OR IGNORE INTO schedule_students (schedule_id, student_id)
            VALUES (?, ?)
        """, (schedule_id, student_id))
        added += cur.rowcount
    conn.commit()
    conn.close()
    return added


def get_schedule_students(schedule_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT s.id, s.name, s.roll_number
        FROM schedule_students ss
        JOIN students s ON s.id = ss.student_id
        WHERE ss.schedule_id = ?
        ORDER BY s.roll_number, s.name
    """, (schedule_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


# -----------------------------
# Face references
# -----------------------------
def add_student_face(student_id: int, descriptor: Sequence[float]) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO student_faces (student_id, face_descriptor)
        VALUES (?, ?)
    """, (student_id, json.dumps([float(v) for v in descriptor])))
    face_id = cur.lastrowid
    conn.commit()
    conn.close()
    return face_id


def get_student_faces(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, student_id, face_descriptor, registered_at
        FROM student_faces
        WHERE student_id = ? AND is_active = 1
        ORDER BY registered_at DESC, id DESC
    """, (student_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def get_faces_for_students(student_ids: Sequence[int]):
    if not student_ids:
        return []
    placeholders = ",".join("?" for _ in student_ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT student_id, face_descriptor
        FROM student_faces
        WHERE is_active = 1 AND student_id IN ({placeholders})
        """,
        tuple(student_ids),
    )
    rows = cur.fetchall()
    conn.close()
    return rows


def deactivate_student_face(face_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE student_faces
        SET is_active = 0
        WHERE id = ? AND is_active = 1
    """, (face_id,))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Attendance ledger
# -----------------------------
def commit_attendance(session_id: str, schedule_id: int, verdicts: Sequence[AttendanceVerdict]) -> int:
    """
    Write final verdicts for a session in one transaction.

    Keyed by (session_id, student_id): re-committing the same session is a
    no-op for rows already stored, so a retried finalize never duplicates.
    """
    conn = connect_db()
    cur = conn.cursor()
    written = 0
    try:
        for verdict in verdicts:
            cur.execute(
                """
                INSERT OR IGNORE INTO smart_attendance_records (
                    session_id,
                    schedule_id,
                    student_id,
                    status,
                    reason,
                    verified_by_scan,
                    verified_by_class_photo,
                    manually_marked
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    schedule_id,
                    verdict.student_id,
                    verdict.status,
                    verdict.reason,
                    1 if verdict.verified_by_scan else 0,
                    1 if verdict.verified_by_photo else 0,
                    1 if verdict.manually_marked else 0,
                ),
            )
            written += cur.rowcount
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return written


def get_session_records(session_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, status, reason, verified_by_scan, verified_by_class_photo, manually_marked
        FROM smart_attendance_records
        WHERE session_id = ?
        ORDER BY id
    """, (session_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def log_notification(student_id: int, session_id: str, notification_type: str, message: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT OR IGNORE INTO attendance_notifications (student_id, session_id, notification_type, message)
        VALUES (?, ?, ?, ?)
    """, (student_id, session_id, notification_type, message))
    inserted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return inserted


def get_notifications(session_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, notification_type, message, sent_at
        FROM attendance_notifications
        WHERE session_id = ?
        ORDER BY id
    """, (session_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


# -----------------------------
# Collaborator adapters
# -----------------------------
class SqliteRoster:
    def get_eligible_students(self, schedule_id: int) -> list[EligibleStudent]:
        return [
            EligibleStudent(student_id=int(r[0]), student_name=r[1], roll_number=r[2])
            for r in get_schedule_students(schedule_id)
        ]


class SqliteLedger:
    def commit(self, session_id: str, schedule_id: int, verdicts: Sequence[AttendanceVerdict]) -> None:
        try:
            written = commit_attendance(session_id, schedule_id, verdicts)
        except sqlite3.Error as exc:
            raise LedgerCommitFailed(f"Attendance ledger unavailable: {exc}", session_id=session_id) from exc
        logger.info("[Ledger] session %s: %d record(s) written", session_id, written)


class SqliteNotifier:
    def notify_absent(self, session: Session, verdict: AttendanceVerdict) -> None:
        message = (
            f"You were marked absent for schedule {session.schedule_id} "
            f"on {session.created_at.date().isoformat()}: {verdict.reason}."
        )
        log_notification(verdict.student_id, session.session_id, "absent_alert", message)
