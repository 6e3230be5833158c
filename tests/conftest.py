import asyncio
import json
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TEST_JWT_SECRET = "test-access-secret-0123456789abcdef0123"
TEST_JWT_REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012"


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db
    import env_validation

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DB_PATH", str(db_path))
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("JWT_REFRESH_SECRET", TEST_JWT_REFRESH_SECRET)
    env_validation.reset_settings_cache()
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    env_validation.reset_settings_cache()


async def _call_app(
    application,
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    token: Optional[str] = None,
):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await application(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


@pytest.fixture
def call_app():
    """Drive an ASGI app without a server: ``call_app(app, "GET", "/health")``."""

    def _call(application, method, path, **kwargs):
        return asyncio.run(_call_app(application, method, path, **kwargs))

    return _call


@pytest.fixture
def make_user(temp_db):
    import db
    from passwords import hash_password

    def _make(email, full_name="Test User", password="correct-horse", role="learner"):
        return db.create_user(email, full_name, hash_password(password), role=role)

    return _make


@pytest.fixture
def course_with_modules(temp_db):
    """Published course with an intro (module 0) and modules 1-3, one quiz question each."""
    import db

    course = db.create_course("Process Modeling 101", "process-modeling-101", "Model processes.")
    db.create_topic(course["course_id"], 0, "Welcome", topic_number=1, module_name="Introduction")
    for module_no in (1, 2, 3):
        db.create_topic(
            course["course_id"],
            module_no,
            f"Topic {module_no}",
            topic_number=1,
            module_name=f"Module {module_no}",
            content=f"Content {module_no}",
        )
        db.add_quiz_question(course["course_id"], module_no, f"Question {module_no}?", ["a", "b", "c"], 1)
    return course
