import app
import db
import sessions


def _register(call_app, email="new@example.com", password="S3cur3!Pass", full_name="New Learner", prefix=""):
    return call_app(
        app.app,
        "POST",
        f"{prefix}/auth/register",
        payload={"email": email, "password": password, "fullName": full_name},
    )


def test_register_creates_learner_and_session(temp_db, call_app):
    status, payload = _register(call_app, email="New@Example.com")

    assert status == 201
    assert payload["user"]["email"] == "new@example.com"
    assert payload["user"]["role"] == "learner"
    assert payload["session"]["accessToken"]

    row = db.get_user_by_email("new@example.com")
    assert row["password_hash"].startswith("scrypt:")


def test_register_rejects_duplicates_and_invalid_payloads(temp_db, call_app):
    _register(call_app)

    status, payload = _register(call_app)
    assert status == 409
    assert payload["message"] == "Email is already registered"

    status, payload = _register(call_app, email="not-an-email")
    assert status == 400
    assert payload["message"] == "Invalid request payload"
    assert payload["errors"]

    status, _ = _register(call_app, email="short@example.com", password="short")
    assert status == 400


def test_login_checks_credentials(temp_db, call_app, make_user):
    make_user("lena@example.com", password="correct-horse")

    status, payload = call_app(app.app, "POST", "/auth/login", payload={"email": "lena@example.com", "password": "nope-nope"})
    assert status == 401
    assert payload["message"] == "Wrong email or wrong password"

    status, payload = call_app(app.app, "POST", "/auth/login", payload={"email": "", "password": ""})
    assert status == 400

    status, payload = call_app(
        app.app, "POST", "/auth/login", payload={"email": " LENA@example.com ", "password": "correct-horse"}
    )
    assert status == 200
    assert payload["user"]["email"] == "lena@example.com"


def test_me_requires_bearer_token(temp_db, call_app):
    status, payload = call_app(app.app, "GET", "/auth/me")
    assert status == 401
    assert payload["message"] == "Authorization header is missing"

    status, payload = call_app(app.app, "GET", "/auth/me", token="garbage")
    assert status == 401
    assert payload["message"] == "Invalid access token"

    status, payload = call_app(app.app, "GET", "/auth/me", token="   ")
    assert status == 401
    assert payload["message"] == "Access token is missing"

    _, registered = _register(call_app)
    status, payload = call_app(app.app, "GET", "/auth/me", token=registered["session"]["accessToken"])
    assert status == 200
    assert payload["user"]["fullName"] == "New Learner"


def test_routes_are_mirrored_under_api_prefix(temp_db, call_app):
    status, registered = _register(call_app, prefix="/api")
    assert status == 201

    status, payload = call_app(app.app, "GET", "/api/auth/me", token=registered["session"]["accessToken"])
    assert status == 200

    status, payload = call_app(app.app, "GET", "/api/health")
    assert status == 200
    assert payload["status"] == "ok"


def test_refresh_route_rotates_and_logout_revokes(temp_db, call_app):
    _, registered = _register(call_app)
    session = registered["session"]

    status, payload = call_app(app.app, "POST", "/auth/refresh", payload={})
    assert status == 400
    assert payload["message"] == "refreshToken is required"

    status, refreshed = call_app(app.app, "POST", "/auth/refresh", payload={"refreshToken": session["refreshToken"]})
    assert status == 200
    assert refreshed["session"]["sessionId"] == session["sessionId"]
    assert refreshed["session"]["refreshToken"] != session["refreshToken"]

    status, payload = call_app(app.app, "POST", "/auth/refresh", payload={"refreshToken": session["refreshToken"]})
    assert status == 401
    assert payload["message"] == "Refresh token has already been used"

    # Reuse revoked the session, so the freshly issued access token stops working too.
    status, payload = call_app(app.app, "GET", "/auth/me", token=refreshed["session"]["accessToken"])
    assert status == 401
    assert payload["message"] == "Session has been revoked"


def test_logout_ends_session(temp_db, call_app):
    _, registered = _register(call_app)
    token = registered["session"]["accessToken"]

    status, payload = call_app(app.app, "POST", "/auth/logout", token=token)
    assert status == 200
    assert payload == {"ok": True}
    assert sessions.session_exists(registered["session"]["sessionId"]) is False

    status, _ = call_app(app.app, "GET", "/auth/me", token=token)
    assert status == 401


def test_admin_role_change_revokes_sessions(temp_db, call_app, make_user):
    admin = make_user("admin@example.com", role="admin")
    learner = make_user("soon-tutor@example.com", full_name="Soon Tutor")
    admin_token = sessions.create_session(admin["user_id"], "admin").access_token
    learner_tokens = sessions.create_session(learner["user_id"], "learner")

    status, payload = call_app(
        app.app,
        "PATCH",
        f"/admin/users/{learner['user_id']}/role",
        payload={"role": "tutor"},
        token=learner_tokens.access_token,
    )
    assert status == 403
    assert payload["message"] == "Admin access required"

    status, payload = call_app(
        app.app,
        "PATCH",
        f"/admin/users/{learner['user_id']}/role",
        payload={"role": "tutor"},
        token=admin_token,
    )
    assert status == 200
    assert payload["user"]["role"] == "tutor"
    assert db.get_tutor_by_user(learner["user_id"])["display_name"] == "Soon Tutor"
    assert sessions.session_exists(learner_tokens.session_id) is False
