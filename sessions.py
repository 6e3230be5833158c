"""Access/refresh token issuance, verification and rotation.

A session is one row in ``user_sessions``. Access tokens are short-lived JWTs
signed with ``JWT_SECRET``; refresh tokens are longer-lived JWTs signed with
``JWT_REFRESH_SECRET`` whose SHA-256 digest is the only thing persisted. Every
refresh rotates the refresh token, so presenting an already-rotated token is
treated as replay and ends the session.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import jwt

import db
from env_validation import get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_LEEWAY_SECONDS = 10
_ALGORITHM = "HS256"
_REFRESH_TOKEN_TYPE = "refresh"


class SessionError(Exception):
    """Raised when a token or session cannot be used to authenticate."""


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    session_id: str


@dataclass(frozen=True)
class AccessTokenPayload:
    sub: str
    sid: str
    jti: str
    iat: int
    exp: int
    role: Optional[str] = None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _now(now: Optional[datetime]) -> datetime:
    return db.coerce_to_utc(now) if now else datetime.now(timezone.utc)


def _issue_access_token(user_id: str, session_id: str, jwt_id: str, role: Optional[str], now: datetime) -> tuple[str, datetime]:
    settings = get_settings()
    issued_at = int(now.timestamp())
    expires = issued_at + settings.jwt_access_token_ttl_seconds
    claims: Dict[str, Any] = {"sub": user_id, "sid": session_id, "jti": jwt_id, "iat": issued_at, "exp": expires}
    if role:
        claims["role"] = role
    token = jwt.encode(claims, settings.jwt_secret, algorithm=_ALGORITHM)
    return token, datetime.fromtimestamp(expires, tz=timezone.utc)


def _issue_refresh_token(user_id: str, session_id: str, jwt_id: str, now: datetime) -> tuple[str, datetime]:
    settings = get_settings()
    expires_at = now + timedelta(days=settings.jwt_refresh_token_ttl_days)
    claims = {
        "sub": user_id,
        "sid": session_id,
        "jti": jwt_id,
        "tokenType": _REFRESH_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_refresh_secret, algorithm=_ALGORITHM)
    return token, datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


def create_session(user_id: str, role: Optional[str] = None, now: Optional[datetime] = None) -> SessionTokens:
    current = _now(now)
    session_id = str(uuid4())
    jwt_id = str(uuid4())

    access_token, access_expires_at = _issue_access_token(user_id, session_id, jwt_id, role, current)
    refresh_token, refresh_expires_at = _issue_refresh_token(user_id, session_id, jwt_id, current)

    db.insert_session(session_id, user_id, jwt_id, hash_token(refresh_token), refresh_expires_at)
    logger.info("Session %s issued for user %s", session_id, user_id)

    return SessionTokens(
        access_token=access_token,
        access_token_expires_at=access_expires_at,
        refresh_token=refresh_token,
        refresh_token_expires_at=refresh_expires_at,
        session_id=session_id,
    )


def verify_access_token(token: str) -> AccessTokenPayload:
    try:
        claims = jwt.decode(
            token,
            get_settings().jwt_secret,
            algorithms=[_ALGORITHM],
            leeway=ACCESS_TOKEN_LEEWAY_SECONDS,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise SessionError("Access token expired") from None
    except jwt.InvalidTokenError:
        raise SessionError("Invalid access token") from None

    if not claims.get("sid") or not claims.get("jti"):
        raise SessionError("Invalid access token")
    # Refresh tokens carry the same identity claims.
    if claims.get("tokenType") == _REFRESH_TOKEN_TYPE:
        raise SessionError("Invalid access token")
    return AccessTokenPayload(
        sub=str(claims["sub"]),
        sid=str(claims["sid"]),
        jti=str(claims["jti"]),
        iat=int(claims["iat"]),
        exp=int(claims["exp"]),
        role=claims.get("role"),
    )


def _decode_refresh_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            get_settings().jwt_refresh_secret,
            algorithms=[_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise SessionError("Refresh token expired") from None
    except jwt.InvalidTokenError:
        raise SessionError("Invalid refresh token") from None
    if claims.get("tokenType") != _REFRESH_TOKEN_TYPE or not claims.get("sid"):
        raise SessionError("Invalid refresh token")
    return claims


def refresh_session(refresh_token: str, now: Optional[datetime] = None) -> SessionTokens:
    """Exchange a refresh token for a new token pair, rotating the refresh token."""
    current = _now(now)
    claims = _decode_refresh_token(refresh_token)
    session_id = str(claims["sid"])
    user_id = str(claims["sub"])

    session = db.get_session(session_id)
    if not session or session["user_id"] != user_id:
        raise SessionError("Session not found")
    if session["expires_at"] is None or session["expires_at"] <= current:
        db.delete_session(session_id)
        raise SessionError("Session expired")

    presented_hash = hash_token(refresh_token)
    if not hmac.compare_digest(presented_hash, session["refresh_token_hash"]):
        logger.warning("Refresh token reuse detected for session %s; revoking", session_id)
        db.delete_session(session_id)
        raise SessionError("Refresh token has already been used")

    user = db.get_user(user_id)
    if not user:
        db.delete_session(session_id)
        raise SessionError("User not found")

    jwt_id = str(uuid4())
    new_refresh_token, refresh_expires_at = _issue_refresh_token(user_id, session_id, jwt_id, current)
    if not db.rotate_session(session_id, presented_hash, jwt_id, hash_token(new_refresh_token), refresh_expires_at):
        # Another request rotated the session between our read and write.
        raise SessionError("Refresh token has already been used")
    access_token, access_expires_at = _issue_access_token(user_id, session_id, jwt_id, user["role"], current)
    logger.info("Session %s rotated for user %s", session_id, user_id)

    return SessionTokens(
        access_token=access_token,
        access_token_expires_at=access_expires_at,
        refresh_token=new_refresh_token,
        refresh_token_expires_at=refresh_expires_at,
        session_id=session_id,
    )


def session_exists(session_id: str) -> bool:
    return db.get_session(session_id) is not None


def revoke_session(session_id: str) -> None:
    if db.delete_session(session_id):
        logger.info("Session %s revoked", session_id)


def revoke_user_sessions(user_id: str) -> int:
    removed = db.delete_user_sessions(user_id)
    if removed:
        logger.info("Revoked %s session(s) for user %s", removed, user_id)
    return removed


def purge_expired_sessions(now: Optional[datetime] = None) -> int:
    removed = db.delete_expired_sessions(_now(now))
    if removed:
        logger.info("Purged %s expired session(s)", removed)
    return removed


def session_payload(tokens: SessionTokens) -> Dict[str, str]:
    return {
        "accessToken": tokens.access_token,
        "accessTokenExpiresAt": _iso_z(tokens.access_token_expires_at),
        "refreshToken": tokens.refresh_token,
        "refreshTokenExpiresAt": _iso_z(tokens.refresh_token_expires_at),
        "sessionId": tokens.session_id,
    }


def _iso_z(value: datetime) -> str:
    return db.coerce_to_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
