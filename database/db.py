import hashlib
import hmac
import secrets
import sqlite3
import uuid
from datetime import datetime, time

from backend.config import (
    DB_PATH,
    DEFAULT_TEACHER_PASSWORD,
    DEFAULT_TEACHER_USERNAME,
)
from backend.services.scheduler import OneOffSchedule, RecurringSchedule, Session


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    # attendance rows cascade with their session
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_teacher(cursor: sqlite3.Cursor) -> None:
    username = (DEFAULT_TEACHER_USERNAME or "").strip()
    password = (DEFAULT_TEACHER_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, full_name, role, password_hash)
        VALUES (?, ?, 'teacher', ?)
        """,
        (username, username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('teacher', 'ta', 'student')),
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS courses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        teacher_id INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (teacher_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS course_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        course_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('student', 'ta')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(course_id, user_id)
    )
    """)

    # One-off sessions carry scheduled_at; recurring ones carry day/time only.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS exercise_sessions (
        id TEXT PRIMARY KEY,
        course_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        is_recurring INTEGER NOT NULL DEFAULT 0,
        scheduled_at TEXT,               -- ISO-8601 with offset
        recurrence_day_of_week INTEGER,  -- 0 = Sunday ... 6 = Saturday
        recurrence_time TEXT,            -- HH:MM
        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
        created_by INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
        FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL,
        CHECK (
            (is_recurring = 0 AND scheduled_at IS NOT NULL
                AND recurrence_day_of_week IS NULL AND recurrence_time IS NULL)
            OR
            (is_recurring = 1 AND scheduled_at IS NULL
                AND recurrence_day_of_week BETWEEN 0 AND 6 AND recurrence_time IS NOT NULL)
        )
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS session_attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        student_id INTEGER NOT NULL,
        checked_in_at TEXT NOT NULL,     -- ISO-8601 UTC
        verification_token TEXT NOT NULL,
        liveness_confidence TEXT,
        FOREIGN KEY (session_id) REFERENCES exercise_sessions(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(session_id, student_id)
    )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_exercise_sessions_course ON exercise_sessions(course_id);"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_session_attendance_student ON session_attendance(student_id);"
    )

    _ensure_default_teacher(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(username: str, password: str, full_name: str, role: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (username, full_name, role, password_hash)
            VALUES (?, ?, ?, ?)
            """,
            (clean_username, full_name.strip() or clean_username, role, _hash_password(clean_password)),
        )
        user_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return user_id


def verify_user_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, full_name, role, password_hash
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    user_id, saved_username, full_name, role, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": user_id, "username": saved_username, "full_name": full_name, "role": role}


def get_user_by_id(user_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, username, full_name, role
        FROM users
        WHERE id = ?
    """, (user_id,))
    row = cur.fetchone()
    conn.close()
    return row


# -----------------------------
# Courses
# -----------------------------
def add_course(code: str, title: str, teacher_id: int) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            INSERT INTO courses (code, title, teacher_id)
            VALUES (?, ?, ?)
        """, (code, title, teacher_id))
        course_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return course_id


def get_course_by_id(course_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, code, title, teacher_id, created_at
        FROM courses
        WHERE id = ?
    """, (course_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_courses_for_user(user_id: int, role: str):
    """Courses a teacher owns, or the ones a student/TA is a member of."""
    conn = connect_db()
    cur = conn.cursor()
    if role == "teacher":
        cur.execute("""
            SELECT id, code, title, teacher_id, created_at
            FROM courses
            WHERE teacher_id = ?
            ORDER BY code
        """, (user_id,))
    else:
        cur.execute("""
            SELECT c.id, c.code, c.title, c.teacher_id, c.created_at
            FROM courses c
            JOIN course_members m ON m.course_id = c.id
            WHERE m.user_id = ?
            ORDER BY c.code
        """, (user_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def add_course_member(course_id: int, user_id: int, role: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            INSERT INTO course_members (course_id, user_id, role)
            VALUES (?, ?, ?)
        """, (course_id, user_id, role))
        member_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return member_id


def get_course_members(course_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT u.id, u.username, u.full_name, m.role
        FROM course_members m
        JOIN users u ON u.id = m.user_id
        WHERE m.course_id = ?
        ORDER BY m.role, u.full_name
    """, (course_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def get_course_role(course_id: int, user_id: int) -> str | None:
    """'owner' for the course teacher, the member role otherwise, None if unrelated."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT teacher_id FROM courses WHERE id = ?", (course_id,))
    row = cur.fetchone()
    if not row:
        conn.close()
        return None
    if int(row[0]) == int(user_id):
        conn.close()
        return "owner"
    cur.execute("""
        SELECT role
        FROM course_members
        WHERE course_id = ? AND user_id = ?
    """, (course_id, user_id))
    member = cur.fetchone()
    conn.close()
    return str(member[0]) if member else None


# -----------------------------
# Exercise sessions
# -----------------------------
_SESSION_COLUMNS = """
    id, course_id, title, is_recurring, scheduled_at, recurrence_day_of_week,
    recurrence_time, duration_minutes, created_by, created_at
"""


def _session_from_row(row) -> Session:
    (
        session_id,
        course_id,
        title,
        is_recurring,
        scheduled_at,
        day_of_week,
        recurrence_time,
        duration,
        created_by,
        created_at,
    ) = row
    if is_recurring:
        schedule = RecurringSchedule(
            day_of_week=int(day_of_week),
            time_of_day=time.fromisoformat(str(recurrence_time)),
            duration_minutes=int(duration),
        )
    else:
        schedule = OneOffSchedule(
            scheduled_at=datetime.fromisoformat(str(scheduled_at)),
            duration_minutes=int(duration),
        )
    return Session(
        id=str(session_id),
        course_id=int(course_id),
        title=str(title),
        schedule=schedule,
        created_by=created_by,
        created_at=created_at,
    )


def add_session(
    course_id: int,
    title: str,
    schedule: OneOffSchedule | RecurringSchedule,
    created_by: int | None = None,
) -> Session:
    session_id = uuid.uuid4().hex
    if isinstance(schedule, RecurringSchedule):
        values = (1, None, schedule.day_of_week, schedule.time_of_day.strftime("%H:%M"))
    else:
        values = (0, schedule.scheduled_at.isoformat(), None, None)

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO exercise_sessions (
                id,
                course_id,
                title,
                is_recurring,
                scheduled_at,
                recurrence_day_of_week,
                recurrence_time,
                duration_minutes,
                created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, course_id, title, *values, schedule.duration_minutes, created_by),
        )
        conn.commit()
        cur.execute(f"SELECT {_SESSION_COLUMNS} FROM exercise_sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
    finally:
        conn.close()
    return _session_from_row(row)


def get_session_by_id(session_id: str) -> Session | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_SESSION_COLUMNS} FROM exercise_sessions WHERE id = ?", (session_id,))
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def get_sessions_for_course(course_id: int) -> list[Session]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM exercise_sessions
        WHERE course_id = ?
        ORDER BY is_recurring, scheduled_at DESC, recurrence_day_of_week, recurrence_time
        """,
        (course_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_session_from_row(r) for r in rows]


def delete_session(session_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM exercise_sessions WHERE id = ?", (session_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Attendance
# -----------------------------
def insert_attendance_record(
    session_id: str,
    student_id: int,
    checked_in_at: str,
    verification_token: str,
    liveness_confidence: str | None = None,
) -> int:
    """
    Insert one check-in. Raises sqlite3.IntegrityError when the
    (session_id, student_id) pair already exists.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO session_attendance (
                session_id,
                student_id,
                checked_in_at,
                verification_token,
                liveness_confidence
            )
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, student_id, checked_in_at, verification_token, liveness_confidence),
        )
        record_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()
    return record_id


def get_attendance_record(session_id: str, student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, session_id, student_id, checked_in_at, verification_token, liveness_confidence
        FROM session_attendance
        WHERE session_id = ? AND student_id = ?
    """, (session_id, student_id))
    row = cur.fetchone()
    conn.close()
    return row


def count_attendance_records(session_id: str, student_id: int) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT COUNT(*)
        FROM session_attendance
        WHERE session_id = ? AND student_id = ?
    """, (session_id, student_id))
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0)


def get_session_attendance(session_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT a.id, u.id, u.username, u.full_name, a.checked_in_at, a.liveness_confidence
        FROM session_attendance a
        JOIN users u ON u.id = a.student_id
        WHERE a.session_id = ?
        ORDER BY a.checked_in_at
    """, (session_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def get_student_attendance(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT a.id, s.id, s.title, c.code, a.checked_in_at
        FROM session_attendance a
        JOIN exercise_sessions s ON s.id = a.session_id
        JOIN courses c ON c.id = s.course_id
        WHERE a.student_id = ?
        ORDER BY a.checked_in_at DESC
    """, (student_id,))
    rows = cur.fetchall()
    conn.close()
    return rows
