"""Client-side session keeping for the tutor dashboard.

Stores the session returned by ``/tutors/login`` in a JSON file, refreshes the
access token shortly before it expires and runs a timer-driven heartbeat that
keeps listeners informed of the current session (or ``None`` once it is gone).
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

REFRESH_BUFFER_SECONDS = 60.0
MIN_REFRESH_DELAY_SECONDS = 15.0
REQUEST_TIMEOUT_SECONDS = 15


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_FIELD_KEYS = {
    "access_token": "accessToken",
    "access_token_expires_at": "accessTokenExpiresAt",
    "refresh_token": "refreshToken",
    "refresh_token_expires_at": "refreshTokenExpiresAt",
    "session_id": "sessionId",
    "role": "role",
    "user_id": "userId",
    "email": "email",
    "full_name": "fullName",
}


@dataclass
class StoredSession:
    access_token: str
    access_token_expires_at: str
    refresh_token: str
    refresh_token_expires_at: str
    session_id: str
    role: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {_FIELD_KEYS[key]: value for key, value in asdict(self).items()}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "StoredSession":
        return cls(**{key: data.get(camel) for key, camel in _FIELD_KEYS.items()})


class SessionStore:
    """Single-session JSON file."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> Optional[StoredSession]:
        try:
            if not self.path.exists():
                return None
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict) or not data.get("accessToken"):
                return None
            return StoredSession.from_json(data)
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Failed to read stored session from %s: %s", self.path, exc)
            return None

    def write(self, session: StoredSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(session.to_json(), indent=2), encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


# ---------- Timing ----------
def should_refresh_access_token(
    session: StoredSession,
    buffer_seconds: float = REFRESH_BUFFER_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    expiry = _parse_timestamp(session.access_token_expires_at)
    if expiry is None:
        return False
    return (expiry - (now or _utcnow())).total_seconds() <= buffer_seconds


def is_refresh_token_expired(session: StoredSession, now: Optional[datetime] = None) -> bool:
    expiry = _parse_timestamp(session.refresh_token_expires_at)
    if expiry is None:
        return False
    return expiry <= (now or _utcnow())


def compute_refresh_delay(
    session: StoredSession,
    buffer_seconds: float = REFRESH_BUFFER_SECONDS,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Seconds until the heartbeat should refresh, or None when it should stop."""
    access_expiry = _parse_timestamp(session.access_token_expires_at)
    refresh_expiry = _parse_timestamp(session.refresh_token_expires_at)
    if access_expiry is None or refresh_expiry is None:
        return None

    current = now or _utcnow()
    refresh_deadline = (refresh_expiry - current).total_seconds() - buffer_seconds
    if refresh_deadline <= 0:
        return None

    access_deadline = (access_expiry - current).total_seconds() - buffer_seconds
    if access_deadline <= 0:
        return 0.0

    return max(min(access_deadline, refresh_deadline), MIN_REFRESH_DELAY_SECONDS)


def _default_timer(delay: float, callback: Callable[[], None]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


SessionListener = Callable[[Optional[StoredSession]], None]


class SessionManager:
    def __init__(
        self,
        base_url: str,
        store: SessionStore,
        http: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = _utcnow,
        timer_factory: Callable[[float, Callable[[], None]], Any] = _default_timer,
    ):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.http = http or requests.Session()
        self.clock = clock
        self.timer_factory = timer_factory
        self._listeners: List[SessionListener] = []
        self._timer = None
        self._heartbeat_active = False
        self._generation = 0
        self._lock = threading.RLock()

    # ---------- Refresh ----------
    def request_session_refresh(self, session: StoredSession) -> Optional[StoredSession]:
        if is_refresh_token_expired(session, now=self.clock()):
            return None

        try:
            response = self.http.post(
                f"{self.base_url}/auth/refresh",
                json={"refreshToken": session.refresh_token},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            if not response.ok:
                return None
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Failed to refresh session: %s", exc)
            return None

        refreshed = payload.get("session") if isinstance(payload, dict) else None
        if not isinstance(refreshed, dict):
            return None
        if not refreshed.get("accessToken") or not refreshed.get("accessTokenExpiresAt"):
            return None

        next_session = StoredSession(
            access_token=refreshed["accessToken"],
            access_token_expires_at=refreshed["accessTokenExpiresAt"],
            refresh_token=refreshed.get("refreshToken") or session.refresh_token,
            refresh_token_expires_at=refreshed.get("refreshTokenExpiresAt") or session.refresh_token_expires_at,
            session_id=refreshed.get("sessionId") or session.session_id,
            role=session.role,
            user_id=session.user_id,
            email=session.email,
            full_name=session.full_name,
        )
        self.store.write(next_session)
        return next_session

    def ensure_session_fresh(
        self,
        session: Optional[StoredSession],
        notify_on_failure: bool = True,
    ) -> Optional[StoredSession]:
        if session is None:
            return None
        if not should_refresh_access_token(session, now=self.clock()):
            return session

        refreshed = self.request_session_refresh(session)
        if refreshed is None:
            self.store.clear()
            if notify_on_failure:
                self._notify(None)
                self.stop_heartbeat()
        return refreshed

    # ---------- Listeners ----------
    def _call_listener(self, listener: SessionListener, session: Optional[StoredSession]) -> None:
        try:
            listener(session)
        except Exception:
            logger.exception("Session listener raised")

    def _notify(self, session: Optional[StoredSession]) -> None:
        for listener in list(self._listeners):
            self._call_listener(listener, session)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
            first = len(self._listeners) == 1
        self._call_listener(listener, self.store.read())
        if first:
            self._bootstrap_heartbeat()

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                empty = not self._listeners
            if empty:
                self.stop_heartbeat()

        return unsubscribe

    # ---------- Heartbeat ----------
    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_active

    def stop_heartbeat(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._heartbeat_active = False
            self._generation += 1

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return self._heartbeat_active and generation == self._generation

    def _end_session(self) -> None:
        self.store.clear()
        self._notify(None)
        self.stop_heartbeat()

    def _schedule(self, session: StoredSession, generation: int) -> None:
        delay = compute_refresh_delay(session, now=self.clock())
        if delay is None:
            self.stop_heartbeat()
            return
        with self._lock:
            # Stopped or restarted while the refresh was in flight.
            if not self._is_current(generation):
                return
            self._timer = self.timer_factory(max(delay, 0.0), self._tick)
            self._timer.start()

    def _bootstrap_heartbeat(self) -> None:
        with self._lock:
            if self._heartbeat_active:
                return
            self._heartbeat_active = True
            generation = self._generation

        stored = self.store.read()
        if stored is None:
            self._notify(None)
            self.stop_heartbeat()
            return

        active = self.ensure_session_fresh(stored, notify_on_failure=False)
        if not self._is_current(generation):
            return
        if active is None:
            self._end_session()
            return

        self._notify(active)
        self._schedule(active, generation)

    def _tick(self) -> None:
        with self._lock:
            self._timer = None
            generation = self._generation
            if not self._heartbeat_active:
                return

        stored = self.store.read()
        if stored is None:
            self._end_session()
            return

        refreshed = self.ensure_session_fresh(stored, notify_on_failure=False)
        if not self._is_current(generation):
            return
        if refreshed is None:
            self._end_session()
            return

        self._notify(refreshed)
        self._schedule(refreshed, generation)

    def reset_heartbeat(self) -> None:
        self.stop_heartbeat()
        if self._listeners:
            self._bootstrap_heartbeat()

    # ---------- Login / logout ----------
    def login(self, email: str, password: str, path: str = "/tutors/login") -> StoredSession:
        response = self.http.post(
            f"{self.base_url}{path}",
            json={"email": email, "password": password},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        payload = _json_or_empty(response)
        if not response.ok:
            raise SessionClientError(response.status_code, payload.get("message") or "Login failed")

        data = payload.get("session") or {}
        user = payload.get("user") or {}
        session = StoredSession(
            access_token=data["accessToken"],
            access_token_expires_at=data["accessTokenExpiresAt"],
            refresh_token=data["refreshToken"],
            refresh_token_expires_at=data["refreshTokenExpiresAt"],
            session_id=data["sessionId"],
            role=user.get("role"),
            user_id=user.get("id"),
            email=user.get("email"),
            full_name=user.get("fullName"),
        )
        self.store.write(session)
        self.reset_heartbeat()
        return session

    def logout(self) -> None:
        self._end_session()


class SessionClientError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _json_or_empty(response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class TutorDashboardClient:
    """Authenticated calls the tutor dashboard makes.

    ``activity_base_url`` points at the course API, which serves the activity
    overview; everything else goes to the tutor API behind ``manager``.
    """

    def __init__(self, manager: SessionManager, activity_base_url: Optional[str] = None):
        self.manager = manager
        self.activity_base_url = (activity_base_url or manager.base_url).rstrip("/")

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        session = self.manager.ensure_session_fresh(self.manager.store.read())
        if session is None:
            raise SessionClientError(401, "Not signed in")

        headers = {"Authorization": f"Bearer {session.access_token}"}
        response = self.manager.http.request(
            method, url, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS, **kwargs
        )
        payload = _json_or_empty(response)
        if response.status_code == 401:
            self.manager.logout()
        if not response.ok:
            raise SessionClientError(response.status_code, payload.get("message") or f"HTTP {response.status_code}")
        return payload

    def _tutor_url(self, path: str) -> str:
        return f"{self.manager.base_url}{path}"

    def courses(self) -> List[Dict[str, Any]]:
        return self._request("GET", self._tutor_url("/tutors/me/courses")).get("courses", [])

    def enrollments(self, course_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", self._tutor_url(f"/tutors/{course_id}/enrollments")).get("enrollments", [])

    def progress(self, course_id: str) -> Dict[str, Any]:
        return self._request("GET", self._tutor_url(f"/tutors/{course_id}/progress"))

    def snapshot(self, course_id: str) -> Dict[str, Any]:
        return self._request("GET", self._tutor_url(f"/tutors/{course_id}/snapshot"))

    def activity_summary(self, course_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{self.activity_base_url}/activity/courses/{course_id}/learners")

    def ask_assistant(self, course_id: str, question: str) -> str:
        payload = self._request(
            "POST",
            self._tutor_url("/tutors/assistant/query"),
            json={"courseId": course_id, "question": question},
        )
        return payload.get("answer", "")
