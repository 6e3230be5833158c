from datetime import datetime, timedelta, timezone

import pytest
import requests

import session_client
from session_client import (
    SessionClientError,
    SessionManager,
    SessionStore,
    StoredSession,
    TutorDashboardClient,
    compute_refresh_delay,
    is_refresh_token_expired,
    should_refresh_access_token,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _session(access_in=timedelta(minutes=15), refresh_in=timedelta(days=30), **overrides) -> StoredSession:
    data = dict(
        access_token="access-1",
        access_token_expires_at=_iso(NOW + access_in),
        refresh_token="refresh-1",
        refresh_token_expires_at=_iso(NOW + refresh_in),
        session_id="session-1",
        role="tutor",
        user_id="user-1",
        email="tutor@example.com",
        full_name="Tara Tutor",
    )
    data.update(overrides)
    return StoredSession(**data)


class _FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeHttp:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def _next(self):
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._next()

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self._next()


class _FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def timers():
    return []


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "session.json")


def _manager(store, http, timers):
    def factory(delay, callback):
        timer = _FakeTimer(delay, callback)
        timers.append(timer)
        return timer

    return SessionManager("http://tutor.test", store, http=http, clock=lambda: NOW, timer_factory=factory)


def _refreshed_payload(access_in=timedelta(minutes=15)):
    return {
        "session": {
            "accessToken": "access-2",
            "accessTokenExpiresAt": _iso(NOW + access_in),
            "refreshToken": "refresh-2",
            "refreshTokenExpiresAt": _iso(NOW + timedelta(days=30)),
            "sessionId": "session-1",
        }
    }


# ---------- Timing ----------
def test_should_refresh_within_buffer():
    assert should_refresh_access_token(_session(access_in=timedelta(seconds=30)), now=NOW) is True
    assert should_refresh_access_token(_session(access_in=timedelta(seconds=60)), now=NOW) is True
    assert should_refresh_access_token(_session(access_in=timedelta(seconds=61)), now=NOW) is False
    assert should_refresh_access_token(_session(access_token_expires_at="garbage"), now=NOW) is False


def test_refresh_token_expiry_check():
    assert is_refresh_token_expired(_session(refresh_in=timedelta(0)), now=NOW) is True
    assert is_refresh_token_expired(_session(), now=NOW) is False
    assert is_refresh_token_expired(_session(refresh_token_expires_at=""), now=NOW) is False


def test_compute_refresh_delay():
    assert compute_refresh_delay(_session(), now=NOW) == pytest.approx(14 * 60)
    # Clamped to the minimum delay.
    assert compute_refresh_delay(_session(access_in=timedelta(seconds=70)), now=NOW) == 15
    # Access deadline already passed: refresh now.
    assert compute_refresh_delay(_session(access_in=timedelta(seconds=30)), now=NOW) == 0
    # Refresh token about to lapse: stop.
    assert compute_refresh_delay(_session(refresh_in=timedelta(seconds=60)), now=NOW) is None
    assert compute_refresh_delay(_session(refresh_token_expires_at="nope"), now=NOW) is None
    # Refresh deadline caps the access deadline.
    assert compute_refresh_delay(
        _session(access_in=timedelta(hours=2), refresh_in=timedelta(minutes=31)), now=NOW
    ) == pytest.approx(30 * 60)


# ---------- Store ----------
def test_store_round_trips_camel_case_json(store):
    assert store.read() is None
    store.write(_session())
    assert '"accessTokenExpiresAt"' in store.path.read_text()
    assert store.read() == _session()
    store.clear()
    assert store.read() is None
    store.clear()


def test_unreadable_store_reads_as_no_session(store):
    store.path.write_text("{not json")
    assert store.read() is None


# ---------- Refresh ----------
def test_request_session_refresh_merges_and_persists(store, timers):
    http = _FakeHttp([_FakeResponse(200, {"session": {"accessToken": "access-2", "accessTokenExpiresAt": _iso(NOW)}})])
    manager = _manager(store, http, timers)

    refreshed = manager.request_session_refresh(_session())

    assert refreshed.access_token == "access-2"
    assert refreshed.refresh_token == "refresh-1"
    assert refreshed.session_id == "session-1"
    assert refreshed.full_name == "Tara Tutor"
    assert store.read() == refreshed
    method, url, kwargs = http.calls[0]
    assert url == "http://tutor.test/auth/refresh"
    assert kwargs["json"] == {"refreshToken": "refresh-1"}


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(401, {"message": "Refresh token has already been used"}),
        _FakeResponse(200, {"session": {"accessToken": "only-token"}}),
        _FakeResponse(200, ValueError("bad json")),
        requests.ConnectionError("down"),
    ],
)
def test_request_session_refresh_failures_return_none(store, timers, response):
    manager = _manager(store, _FakeHttp([response]), timers)
    assert manager.request_session_refresh(_session()) is None


def test_expired_refresh_token_skips_network(store, timers):
    http = _FakeHttp()
    manager = _manager(store, http, timers)
    assert manager.request_session_refresh(_session(refresh_in=-timedelta(seconds=1))) is None
    assert http.calls == []


def test_ensure_fresh_failure_clears_and_notifies(store, timers):
    store.write(_session(access_in=timedelta(seconds=10)))
    manager = _manager(store, _FakeHttp([_FakeResponse(401)]), timers)
    seen = []
    manager._listeners.append(seen.append)

    assert manager.ensure_session_fresh(store.read()) is None
    assert store.read() is None
    assert seen == [None]


# ---------- Heartbeat ----------
def test_first_subscriber_starts_heartbeat_and_last_stops_it(store, timers):
    store.write(_session())
    manager = _manager(store, _FakeHttp(), timers)
    seen = []

    unsubscribe = manager.subscribe(seen.append)

    assert manager.heartbeat_active is True
    assert [s.access_token for s in seen] == ["access-1", "access-1"]
    assert timers[0].delay == pytest.approx(14 * 60)
    assert timers[0].started

    unsubscribe()
    assert manager.heartbeat_active is False
    assert timers[0].cancelled


def test_heartbeat_tick_refreshes_and_reschedules(store, timers):
    store.write(_session(access_in=timedelta(seconds=30)))
    http = _FakeHttp([_FakeResponse(200, _refreshed_payload()), _FakeResponse(200, _refreshed_payload())])
    manager = _manager(store, http, timers)
    seen = []

    manager.subscribe(seen.append)
    assert seen[-1].access_token == "access-2"
    assert timers[-1].delay == pytest.approx(14 * 60)

    store.write(_session(access_in=timedelta(seconds=30)))
    timers[-1].callback()
    assert len(http.calls) == 2
    assert store.read().refresh_token == "refresh-2"
    assert len(timers) == 2


def test_heartbeat_tick_without_session_signs_out(store, timers):
    store.write(_session())
    manager = _manager(store, _FakeHttp(), timers)
    seen = []
    manager.subscribe(seen.append)

    store.clear()
    timers[-1].callback()

    assert seen[-1] is None
    assert manager.heartbeat_active is False


def test_listener_errors_do_not_break_notification(store, timers):
    store.write(_session())
    manager = _manager(store, _FakeHttp(), timers)
    seen = []

    def broken(session):
        if session is None:
            raise RuntimeError("boom")

    manager.subscribe(broken)
    manager.subscribe(seen.append)
    manager.logout()

    assert seen[-1] is None
    assert store.read() is None


def test_raising_first_listener_still_starts_heartbeat(store, timers):
    manager = _manager(store, _FakeHttp(), timers)

    def broken(session):
        raise RuntimeError("boom")

    manager.subscribe(broken)
    assert manager.heartbeat_active is False

    store.write(_session())
    manager.reset_heartbeat()
    assert manager.heartbeat_active is True
    assert timers[-1].started


def test_unsubscribe_during_refresh_leaves_no_timer(store, timers):
    store.write(_session(access_in=timedelta(seconds=30)))
    manager = None

    class _UnsubscribingHttp(_FakeHttp):
        def post(self, url, **kwargs):
            # The only subscriber leaves while the refresh is in flight.
            manager._listeners.clear()
            manager.stop_heartbeat()
            return super().post(url, **kwargs)

    manager = _manager(store, _UnsubscribingHttp([_FakeResponse(200, _refreshed_payload())]), timers)
    seen = []

    manager.subscribe(seen.append)

    assert manager.heartbeat_active is False
    assert timers == []
    assert [s.access_token for s in seen] == ["access-1"]


def test_reset_during_tick_keeps_a_single_timer_chain(store, timers):
    store.write(_session())
    http = _FakeHttp([_FakeResponse(200, _refreshed_payload()), _FakeResponse(200, _refreshed_payload())])
    manager = _manager(store, http, timers)
    manager.subscribe(lambda session: None)
    first = timers[-1]

    original_post = http.post
    resets = []

    def post_then_reset(url, **kwargs):
        response = original_post(url, **kwargs)
        if not resets:
            resets.append(url)
            manager.reset_heartbeat()
        return response

    http.post = post_then_reset
    store.write(_session(access_in=timedelta(seconds=30)))
    first.callback()

    live = [timer for timer in timers[1:] if timer.started and not timer.cancelled]
    assert len(live) == 1
    assert manager._timer is live[0]
    assert len(http.calls) == 2


def test_login_stores_session_and_resets_heartbeat(store, timers):
    login_payload = {
        "user": {"id": "user-9", "email": "t@example.com", "fullName": "T", "role": "tutor"},
        **_refreshed_payload(),
    }
    http = _FakeHttp([_FakeResponse(200, login_payload)])
    manager = _manager(store, http, timers)
    seen = []
    manager.subscribe(seen.append)
    assert seen == [None, None]

    session = manager.login("t@example.com", "secret-pass")

    assert session.user_id == "user-9"
    assert store.read().role == "tutor"
    assert seen[-1].access_token == "access-2"
    assert http.calls[0][1] == "http://tutor.test/tutors/login"


def test_login_failure_raises(store, timers):
    http = _FakeHttp([_FakeResponse(403, {"message": "Tutor account required"})])
    manager = _manager(store, http, timers)

    with pytest.raises(SessionClientError) as excinfo:
        manager.login("learner@example.com", "pw")
    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "Tutor account required"


# ---------- Dashboard client ----------
def test_dashboard_client_sends_bearer_token(store, timers):
    store.write(_session())
    http = _FakeHttp([_FakeResponse(200, {"courses": [{"courseId": "c1"}]}), _FakeResponse(200, {"answer": "ok"})])
    client = TutorDashboardClient(_manager(store, http, timers), activity_base_url="http://api.test")

    assert client.courses() == [{"courseId": "c1"}]
    assert client.ask_assistant("c1", "How is it going?") == "ok"

    method, url, kwargs = http.calls[0]
    assert (method, url) == ("GET", "http://tutor.test/tutors/me/courses")
    assert kwargs["headers"] == {"Authorization": "Bearer access-1"}
    assert http.calls[1][2]["json"] == {"courseId": "c1", "question": "How is it going?"}


def test_dashboard_client_logs_out_on_401(store, timers):
    store.write(_session())
    http = _FakeHttp([_FakeResponse(401, {"message": "Session has been revoked"})])
    client = TutorDashboardClient(_manager(store, http, timers), activity_base_url="http://api.test")

    with pytest.raises(SessionClientError, match="Session has been revoked"):
        client.activity_summary("c1")
    assert http.calls[0][1] == "http://api.test/activity/courses/c1/learners"
    assert store.read() is None


def test_default_timer_is_daemon():
    timer = session_client._default_timer(5, lambda: None)
    assert timer.daemon is True
    timer.cancel()
