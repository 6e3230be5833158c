import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

_ROLES = {"learner", "tutor", "admin"}
_APPLICATION_STATUSES = {"pending", "approved", "rejected"}

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _query_one(sql: str, params: Iterable = ()) -> Optional[Dict[str, Any]]:
    rows = _query(sql, params)
    return dict(rows[0]) if rows else None


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize ``dt`` as a UTC ISO-8601 string with a fixed width so text order is time order."""
    if dt is None:
        return None
    return coerce_to_utc(dt).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return coerce_to_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        try:
            return coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))
        except ValueError:
            return None


def coerce_to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              user_id       TEXT PRIMARY KEY,
              email         TEXT NOT NULL UNIQUE,
              full_name     TEXT NOT NULL,
              role          TEXT NOT NULL DEFAULT 'learner'
                            CHECK (role IN ('learner', 'tutor', 'admin')),
              password_hash TEXT NOT NULL,
              created_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tutors (
              tutor_id      TEXT PRIMARY KEY,
              user_id       TEXT NOT NULL UNIQUE,
              display_name  TEXT,
              headline      TEXT,
              created_at    TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS courses (
              course_id     TEXT PRIMARY KEY,
              course_name   TEXT NOT NULL,
              slug          TEXT NOT NULL UNIQUE,
              description   TEXT,
              is_published  INTEGER NOT NULL DEFAULT 1,
              created_at    TEXT NOT NULL,
              updated_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS course_tutors (
              course_tutor_id TEXT PRIMARY KEY,
              course_id       TEXT NOT NULL,
              tutor_id        TEXT NOT NULL,
              role            TEXT NOT NULL DEFAULT 'lead',
              is_active       INTEGER NOT NULL DEFAULT 1,
              created_at      TEXT NOT NULL,
              UNIQUE(course_id, tutor_id),
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE,
              FOREIGN KEY(tutor_id) REFERENCES tutors(tutor_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS topics (
              topic_id      TEXT PRIMARY KEY,
              course_id     TEXT NOT NULL,
              module_no     INTEGER NOT NULL DEFAULT 0,
              module_name   TEXT,
              topic_number  INTEGER NOT NULL DEFAULT 1,
              topic_name    TEXT NOT NULL,
              content       TEXT,
              video_url     TEXT,
              created_at    TEXT NOT NULL,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_topics_course ON topics(course_id, module_no, topic_number);

            CREATE TABLE IF NOT EXISTS quiz_questions (
              question_id   TEXT PRIMARY KEY,
              course_id     TEXT NOT NULL,
              module_no     INTEGER NOT NULL,
              prompt        TEXT NOT NULL,
              options_json  TEXT NOT NULL,
              correct_index INTEGER NOT NULL,
              position      INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_questions_module ON quiz_questions(course_id, module_no, position);

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              attempt_id    TEXT PRIMARY KEY,
              user_id       TEXT NOT NULL,
              course_id     TEXT NOT NULL,
              module_no     INTEGER NOT NULL,
              score         INTEGER NOT NULL,
              total         INTEGER NOT NULL,
              passed        INTEGER NOT NULL,
              created_at    TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id, course_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS enrollments (
              enrollment_id TEXT PRIMARY KEY,
              user_id       TEXT NOT NULL,
              course_id     TEXT NOT NULL,
              status        TEXT NOT NULL DEFAULT 'active',
              enrolled_at   TEXT NOT NULL,
              UNIQUE(user_id, course_id),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_enrollments_course ON enrollments(course_id, enrolled_at);

            CREATE TABLE IF NOT EXISTS module_progress (
              user_id       TEXT NOT NULL,
              course_id     TEXT NOT NULL,
              module_no     INTEGER NOT NULL,
              quiz_passed   INTEGER NOT NULL DEFAULT 0,
              updated_at    TEXT,
              PRIMARY KEY (user_id, course_id, module_no),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_module_progress_course ON module_progress(course_id);

            CREATE TABLE IF NOT EXISTS user_sessions (
              session_id         TEXT PRIMARY KEY,
              user_id            TEXT NOT NULL,
              jwt_id             TEXT NOT NULL,
              refresh_token_hash TEXT NOT NULL,
              expires_at         TEXT NOT NULL,
              created_at         TEXT NOT NULL,
              rotated_at         TEXT,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_user_sessions_user ON user_sessions(user_id);

            CREATE TABLE IF NOT EXISTS activity_events (
              event_id       TEXT PRIMARY KEY,
              user_id        TEXT NOT NULL,
              course_id      TEXT NOT NULL,
              module_no      INTEGER,
              topic_id       TEXT,
              event_type     TEXT NOT NULL,
              payload_json   TEXT,
              derived_status TEXT,
              status_reason  TEXT,
              created_at     TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_activity_user_course ON activity_events(user_id, course_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_activity_course ON activity_events(course_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS tutor_applications (
              application_id     TEXT PRIMARY KEY,
              full_name          TEXT NOT NULL,
              email              TEXT NOT NULL,
              phone              TEXT,
              headline           TEXT NOT NULL,
              course_title       TEXT NOT NULL,
              course_description TEXT NOT NULL,
              target_audience    TEXT NOT NULL,
              expertise_area     TEXT NOT NULL,
              experience_years   INTEGER,
              availability       TEXT NOT NULL,
              status             TEXT NOT NULL DEFAULT 'pending',
              created_at         TEXT NOT NULL,
              reviewed_at        TEXT
            );
            """
        )
        con.commit()


# -------------- users --------------
def create_user(email: str, full_name: str, password_hash: str, role: str = "learner") -> Dict[str, Any]:
    if role not in _ROLES:
        raise ValueError(f"unknown role: {role}")
    user_id = _new_id()
    _exec(
        "INSERT INTO users(user_id, email, full_name, role, password_hash, created_at) VALUES (?,?,?,?,?,?)",
        (user_id, email.strip().lower(), full_name, role, password_hash, to_iso(utcnow())),
    )
    return get_user(user_id)


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    return _query_one(
        "SELECT user_id, email, full_name, role, password_hash, created_at FROM users WHERE user_id = ?",
        (user_id,),
    )


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    """Look up a user by e-mail, joined with their tutor profile when there is one."""
    return _query_one(
        """
        SELECT u.user_id, u.email, u.full_name, u.role, u.password_hash, u.created_at,
               t.tutor_id, t.display_name
        FROM users u
        LEFT JOIN tutors t ON t.user_id = u.user_id
        WHERE u.email = ?
        """,
        (email.strip().lower(),),
    )


def list_users(role: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if role:
        rows = _query(
            "SELECT user_id, email, full_name, role, created_at FROM users WHERE role = ? ORDER BY created_at DESC LIMIT ?",
            (role, int(limit)),
        )
    else:
        rows = _query(
            "SELECT user_id, email, full_name, role, created_at FROM users ORDER BY created_at DESC LIMIT ?",
            (int(limit),),
        )
    return [dict(row) for row in rows]


def update_user_role(user_id: str, role: str) -> bool:
    if role not in _ROLES:
        raise ValueError(f"unknown role: {role}")
    cur = _exec("UPDATE users SET role = ? WHERE user_id = ?", (role, user_id))
    return cur.rowcount > 0


# -------------- tutors --------------
def get_tutor_by_user(user_id: str) -> Optional[Dict[str, Any]]:
    return _query_one(
        "SELECT tutor_id, user_id, display_name, headline, created_at FROM tutors WHERE user_id = ?",
        (user_id,),
    )


def ensure_tutor_profile(user_id: str, display_name: Optional[str] = None, headline: Optional[str] = None) -> str:
    existing = get_tutor_by_user(user_id)
    if existing:
        return existing["tutor_id"]
    tutor_id = _new_id()
    _exec(
        "INSERT INTO tutors(tutor_id, user_id, display_name, headline, created_at) VALUES (?,?,?,?,?)",
        (tutor_id, user_id, display_name, headline, to_iso(utcnow())),
    )
    return tutor_id


def assign_tutor(course_id: str, tutor_id: str, role: str = "lead") -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO course_tutors(course_tutor_id, course_id, tutor_id, role, is_active, created_at)
        VALUES (?,?,?,?,1,?)
        ON CONFLICT(course_id, tutor_id) DO UPDATE SET
            role = excluded.role,
            is_active = 1
        """,
        (_new_id(), course_id, tutor_id, role, to_iso(utcnow())),
    )
    return _query_one(
        "SELECT course_tutor_id, course_id, tutor_id, role, is_active FROM course_tutors WHERE course_id = ? AND tutor_id = ?",
        (course_id, tutor_id),
    )


def deactivate_tutor_assignment(course_id: str, tutor_id: str) -> bool:
    cur = _exec(
        "UPDATE course_tutors SET is_active = 0 WHERE course_id = ? AND tutor_id = ?",
        (course_id, tutor_id),
    )
    return cur.rowcount > 0


def is_tutor_for_course(user_id: str, course_id: str) -> bool:
    rows = _query(
        """
        SELECT ct.course_tutor_id
        FROM course_tutors ct
        JOIN tutors t ON t.tutor_id = ct.tutor_id
        WHERE ct.course_id = ? AND ct.is_active = 1 AND t.user_id = ?
        LIMIT 1
        """,
        (course_id, user_id),
    )
    return bool(rows)


def list_tutor_courses(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT c.course_id, c.course_name, c.slug, c.description, ct.role
        FROM course_tutors ct
        JOIN tutors t ON t.tutor_id = ct.tutor_id
        JOIN courses c ON c.course_id = ct.course_id
        WHERE ct.is_active = 1 AND t.user_id = ?
        ORDER BY c.course_name
        """,
        (user_id,),
    )
    return [dict(row) for row in rows]


# -------------- courses --------------
def _course_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    row["is_published"] = bool(row.get("is_published"))
    return row


_COURSE_COLUMNS = "course_id, course_name, slug, description, is_published, created_at, updated_at"


def create_course(course_name: str, slug: str, description: Optional[str] = None, is_published: bool = True) -> Dict[str, Any]:
    course_id = _new_id()
    now = to_iso(utcnow())
    _exec(
        f"INSERT INTO courses({_COURSE_COLUMNS}) VALUES (?,?,?,?,?,?,?)",
        (course_id, course_name, slug, description, int(bool(is_published)), now, now),
    )
    return get_course(course_id)


def get_course(course_id: str) -> Optional[Dict[str, Any]]:
    return _course_row(_query_one(f"SELECT {_COURSE_COLUMNS} FROM courses WHERE course_id = ?", (course_id,)))


def get_course_by_slug(slug: str) -> Optional[Dict[str, Any]]:
    return _course_row(_query_one(f"SELECT {_COURSE_COLUMNS} FROM courses WHERE slug = ?", (slug,)))


def list_courses(include_unpublished: bool = False) -> list[Dict[str, Any]]:
    if include_unpublished:
        rows = _query(f"SELECT {_COURSE_COLUMNS} FROM courses ORDER BY course_name")
    else:
        rows = _query(f"SELECT {_COURSE_COLUMNS} FROM courses WHERE is_published = 1 ORDER BY course_name")
    return [_course_row(dict(row)) for row in rows]


def update_course(course_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    allowed = {"course_name", "slug", "description", "is_published"}
    updates = {key: value for key, value in fields.items() if key in allowed}
    if updates:
        if "is_published" in updates:
            updates["is_published"] = int(bool(updates["is_published"]))
        assignments = ", ".join(f"{column} = ?" for column in updates)
        _exec(
            f"UPDATE courses SET {assignments}, updated_at = ? WHERE course_id = ?",
            (*updates.values(), to_iso(utcnow()), course_id),
        )
    return get_course(course_id)


def delete_course(course_id: str) -> bool:
    cur = _exec("DELETE FROM courses WHERE course_id = ?", (course_id,))
    return cur.rowcount > 0


# -------------- topics / lessons --------------
def create_topic(
    course_id: str,
    module_no: int,
    topic_name: str,
    *,
    topic_number: int = 1,
    module_name: Optional[str] = None,
    content: Optional[str] = None,
    video_url: Optional[str] = None,
) -> Dict[str, Any]:
    topic_id = _new_id()
    _exec(
        """
        INSERT INTO topics(topic_id, course_id, module_no, module_name, topic_number, topic_name, content, video_url, created_at)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (topic_id, course_id, int(module_no), module_name, int(topic_number), topic_name, content, video_url, to_iso(utcnow())),
    )
    return get_topic(topic_id)


def get_topic(topic_id: str) -> Optional[Dict[str, Any]]:
    return _query_one(
        """
        SELECT topic_id, course_id, module_no, module_name, topic_number, topic_name, content, video_url
        FROM topics WHERE topic_id = ?
        """,
        (topic_id,),
    )


def list_topics(course_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT topic_id, course_id, module_no, module_name, topic_number, topic_name, video_url
        FROM topics
        WHERE course_id = ?
        ORDER BY module_no, topic_number
        """,
        (course_id,),
    )
    return [dict(row) for row in rows]


def list_module_numbers(course_id: str) -> list[int]:
    """Distinct graded module numbers; module 0 is the course introduction."""
    rows = _query(
        "SELECT DISTINCT module_no FROM topics WHERE course_id = ? AND module_no > 0 ORDER BY module_no",
        (course_id,),
    )
    return [int(row["module_no"]) for row in rows]


# -------------- quizzes --------------
def add_quiz_question(
    course_id: str,
    module_no: int,
    prompt: str,
    options: Sequence[str],
    correct_index: int,
    position: int = 0,
) -> Dict[str, Any]:
    if not 0 <= int(correct_index) < len(options):
        raise ValueError("correct_index must point at one of the options")
    question_id = _new_id()
    _exec(
        """
        INSERT INTO quiz_questions(question_id, course_id, module_no, prompt, options_json, correct_index, position)
        VALUES (?,?,?,?,?,?,?)
        """,
        (question_id, course_id, int(module_no), prompt, json_dumps(list(options)), int(correct_index), int(position)),
    )
    return {
        "question_id": question_id,
        "course_id": course_id,
        "module_no": int(module_no),
        "prompt": prompt,
        "options": list(options),
        "correct_index": int(correct_index),
        "position": int(position),
    }


def list_quiz_questions(course_id: str, module_no: int) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT question_id, course_id, module_no, prompt, options_json, correct_index, position
        FROM quiz_questions
        WHERE course_id = ? AND module_no = ?
        ORDER BY position, question_id
        """,
        (course_id, int(module_no)),
    )
    questions = []
    for row in rows:
        data = dict(row)
        data["options"] = _decode_json_field(data.pop("options_json")) or []
        questions.append(data)
    return questions


def record_quiz_attempt(
    user_id: str,
    course_id: str,
    module_no: int,
    score: int,
    total: int,
    passed: bool,
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    attempt = {
        "attempt_id": _new_id(),
        "user_id": user_id,
        "course_id": course_id,
        "module_no": int(module_no),
        "score": int(score),
        "total": int(total),
        "passed": bool(passed),
        "created_at": to_iso(created_at or utcnow()),
    }
    _exec(
        """
        INSERT INTO quiz_attempts(attempt_id, user_id, course_id, module_no, score, total, passed, created_at)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            attempt["attempt_id"],
            user_id,
            course_id,
            attempt["module_no"],
            attempt["score"],
            attempt["total"],
            int(attempt["passed"]),
            attempt["created_at"],
        ),
    )
    return attempt


def list_quiz_attempts(user_id: str, course_id: str, limit: int = 20) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT attempt_id, user_id, course_id, module_no, score, total, passed, created_at
        FROM quiz_attempts
        WHERE user_id = ? AND course_id = ?
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (user_id, course_id, int(limit)),
    )
    return [{**dict(row), "passed": bool(row["passed"])} for row in rows]


# -------------- enrollments / progress --------------
def get_enrollment(user_id: str, course_id: str) -> Optional[Dict[str, Any]]:
    return _query_one(
        "SELECT enrollment_id, user_id, course_id, status, enrolled_at FROM enrollments WHERE user_id = ? AND course_id = ?",
        (user_id, course_id),
    )


def enroll_user(user_id: str, course_id: str, enrolled_at: Optional[datetime] = None) -> tuple[Dict[str, Any], bool]:
    """Enroll ``user_id`` in ``course_id``; returns the enrollment and whether it was created."""
    existing = get_enrollment(user_id, course_id)
    if existing:
        return existing, False
    _exec(
        "INSERT INTO enrollments(enrollment_id, user_id, course_id, status, enrolled_at) VALUES (?,?,?,?,?)",
        (_new_id(), user_id, course_id, "active", to_iso(enrolled_at or utcnow())),
    )
    return get_enrollment(user_id, course_id), True


def list_course_enrollments(course_id: str, newest_first: bool = False) -> list[Dict[str, Any]]:
    order = "DESC" if newest_first else "ASC"
    rows = _query(
        f"""
        SELECT e.enrollment_id, e.user_id, e.course_id, e.status, e.enrolled_at, u.full_name, u.email
        FROM enrollments e
        JOIN users u ON u.user_id = e.user_id
        WHERE e.course_id = ?
        ORDER BY e.enrolled_at {order}
        """,
        (course_id,),
    )
    return [dict(row) for row in rows]


def list_user_enrollments(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT e.enrollment_id, e.course_id, e.status, e.enrolled_at, c.course_name, c.slug, c.description
        FROM enrollments e
        JOIN courses c ON c.course_id = e.course_id
        WHERE e.user_id = ?
        ORDER BY e.enrolled_at DESC
        """,
        (user_id,),
    )
    return [dict(row) for row in rows]


def upsert_module_progress(
    user_id: str,
    course_id: str,
    module_no: int,
    quiz_passed: bool,
    updated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record activity on a module. A passed quiz stays passed."""
    _exec(
        """
        INSERT INTO module_progress(user_id, course_id, module_no, quiz_passed, updated_at)
        VALUES (?,?,?,?,?)
        ON CONFLICT(user_id, course_id, module_no) DO UPDATE SET
            quiz_passed = MAX(module_progress.quiz_passed, excluded.quiz_passed),
            updated_at = excluded.updated_at
        """,
        (user_id, course_id, int(module_no), int(bool(quiz_passed)), to_iso(updated_at or utcnow())),
    )
    row = _query_one(
        "SELECT user_id, course_id, module_no, quiz_passed, updated_at FROM module_progress WHERE user_id = ? AND course_id = ? AND module_no = ?",
        (user_id, course_id, int(module_no)),
    )
    row["quiz_passed"] = bool(row["quiz_passed"])
    return row


def list_module_progress(course_id: str, user_id: Optional[str] = None) -> list[Dict[str, Any]]:
    if user_id:
        rows = _query(
            "SELECT user_id, module_no, quiz_passed, updated_at FROM module_progress WHERE course_id = ? AND user_id = ?",
            (course_id, user_id),
        )
    else:
        rows = _query(
            "SELECT user_id, module_no, quiz_passed, updated_at FROM module_progress WHERE course_id = ?",
            (course_id,),
        )
    return [
        {
            "user_id": row["user_id"],
            "module_no": int(row["module_no"]),
            "quiz_passed": bool(row["quiz_passed"]),
            "updated_at": parse_timestamp(row["updated_at"]),
        }
        for row in rows
    ]


# -------------- sessions --------------
def insert_session(session_id: str, user_id: str, jwt_id: str, refresh_token_hash: str, expires_at: datetime) -> None:
    _exec(
        """
        INSERT INTO user_sessions(session_id, user_id, jwt_id, refresh_token_hash, expires_at, created_at)
        VALUES (?,?,?,?,?,?)
        """,
        (session_id, user_id, jwt_id, refresh_token_hash, to_iso(expires_at), to_iso(utcnow())),
    )


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    row = _query_one(
        """
        SELECT session_id, user_id, jwt_id, refresh_token_hash, expires_at, created_at, rotated_at
        FROM user_sessions WHERE session_id = ?
        """,
        (session_id,),
    )
    if row:
        row["expires_at"] = parse_timestamp(row["expires_at"])
    return row


def rotate_session(session_id: str, previous_hash: str, jwt_id: str, refresh_token_hash: str, expires_at: datetime) -> bool:
    """Swap in a new refresh token only if ``previous_hash`` is still current."""
    cur = _exec(
        """
        UPDATE user_sessions
        SET jwt_id = ?, refresh_token_hash = ?, expires_at = ?, rotated_at = ?
        WHERE session_id = ? AND refresh_token_hash = ?
        """,
        (jwt_id, refresh_token_hash, to_iso(expires_at), to_iso(utcnow()), session_id, previous_hash),
    )
    return cur.rowcount == 1


def delete_session(session_id: str) -> int:
    return _exec("DELETE FROM user_sessions WHERE session_id = ?", (session_id,)).rowcount


def delete_user_sessions(user_id: str) -> int:
    return _exec("DELETE FROM user_sessions WHERE user_id = ?", (user_id,)).rowcount


def delete_expired_sessions(now: Optional[datetime] = None) -> int:
    return _exec("DELETE FROM user_sessions WHERE expires_at <= ?", (to_iso(now or utcnow()),)).rowcount


# -------------- activity --------------
def _activity_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["payload"] = _decode_json_field(data.pop("payload_json", None)) or {}
    return data


_ACTIVITY_COLUMNS = (
    "event_id, user_id, course_id, module_no, topic_id, event_type, payload_json, "
    "derived_status, status_reason, created_at"
)


def insert_activity_event(
    user_id: str,
    course_id: str,
    event_type: str,
    *,
    module_no: Optional[int] = None,
    topic_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    derived_status: Optional[str] = None,
    status_reason: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    event = {
        "event_id": _new_id(),
        "user_id": user_id,
        "course_id": course_id,
        "module_no": module_no,
        "topic_id": topic_id,
        "event_type": event_type,
        "payload": payload or {},
        "derived_status": derived_status,
        "status_reason": status_reason,
        "created_at": to_iso(created_at or utcnow()),
    }
    _exec(
        f"INSERT INTO activity_events({_ACTIVITY_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?)",
        (
            event["event_id"],
            user_id,
            course_id,
            module_no,
            topic_id,
            event_type,
            json_dumps(event["payload"]),
            derived_status,
            status_reason,
            event["created_at"],
        ),
    )
    return event


def list_learner_activity(
    user_id: str,
    course_id: str,
    *,
    since: Optional[datetime] = None,
    limit: int = 50,
) -> list[Dict[str, Any]]:
    """Events for one learner in one course, newest first."""
    if since is not None:
        rows = _query(
            f"""
            SELECT {_ACTIVITY_COLUMNS} FROM activity_events
            WHERE user_id = ? AND course_id = ? AND created_at >= ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, course_id, to_iso(since), int(limit)),
        )
    else:
        rows = _query(
            f"""
            SELECT {_ACTIVITY_COLUMNS} FROM activity_events
            WHERE user_id = ? AND course_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, course_id, int(limit)),
        )
    return [_activity_row(row) for row in rows]


def list_latest_course_activity(course_id: str) -> list[Dict[str, Any]]:
    """The most recent event of every learner with activity in ``course_id``."""
    rows = _query(
        """
        SELECT a.event_id, a.user_id, a.course_id, a.module_no, a.topic_id, a.event_type, a.payload_json,
               a.derived_status, a.status_reason, a.created_at, t.topic_name AS topic_title
        FROM activity_events a
        LEFT JOIN topics t ON t.topic_id = a.topic_id
        WHERE a.course_id = ?
          AND a.created_at = (
            SELECT MAX(b.created_at) FROM activity_events b
            WHERE b.user_id = a.user_id AND b.course_id = a.course_id
          )
        ORDER BY a.created_at DESC
        """,
        (course_id,),
    )
    latest: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        latest.setdefault(row["user_id"], _activity_row(row))
    return list(latest.values())


# -------------- tutor applications --------------
_APPLICATION_COLUMNS = (
    "application_id, full_name, email, phone, headline, course_title, course_description, "
    "target_audience, expertise_area, experience_years, availability, status, created_at, reviewed_at"
)


def create_tutor_application(fields: Dict[str, Any]) -> Dict[str, Any]:
    application_id = _new_id()
    _exec(
        """
        INSERT INTO tutor_applications(
          application_id, full_name, email, phone, headline, course_title, course_description,
          target_audience, expertise_area, experience_years, availability, status, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            application_id,
            fields["full_name"],
            fields["email"],
            fields.get("phone"),
            fields["headline"],
            fields["course_title"],
            fields["course_description"],
            fields["target_audience"],
            fields["expertise_area"],
            fields.get("experience_years"),
            fields["availability"],
            "pending",
            to_iso(utcnow()),
        ),
    )
    return get_tutor_application(application_id)


def get_tutor_application(application_id: str) -> Optional[Dict[str, Any]]:
    return _query_one(
        f"SELECT {_APPLICATION_COLUMNS} FROM tutor_applications WHERE application_id = ?",
        (application_id,),
    )


def list_tutor_applications(status: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if status:
        rows = _query(
            f"SELECT {_APPLICATION_COLUMNS} FROM tutor_applications WHERE status = ? ORDER BY created_at DESC LIMIT ?",
            (status, int(limit)),
        )
    else:
        rows = _query(
            f"SELECT {_APPLICATION_COLUMNS} FROM tutor_applications ORDER BY created_at DESC LIMIT ?",
            (int(limit),),
        )
    return [dict(row) for row in rows]


def set_tutor_application_status(application_id: str, status: str) -> Optional[Dict[str, Any]]:
    if status not in _APPLICATION_STATUSES:
        raise ValueError(f"unknown application status: {status}")
    _exec(
        "UPDATE tutor_applications SET status = ?, reviewed_at = ? WHERE application_id = ?",
        (status, to_iso(utcnow()), application_id),
    )
    return get_tutor_application(application_id)
