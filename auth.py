"""Request authentication shared by the course API and the tutor API."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import sessions
from schemas import RefreshBody

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "
TUTOR_ROLES = frozenset({"tutor", "admin"})


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: str
    jwt_id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_auth(request: Request) -> AuthContext:
    header = request.headers.get("authorization")
    if not header or not header.startswith(_BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Authorization header is missing")

    token = header[len(_BEARER_PREFIX):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Access token is missing")

    try:
        payload = sessions.verify_access_token(token)
    except sessions.SessionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    if not sessions.session_exists(payload.sid):
        raise HTTPException(status_code=401, detail="Session has been revoked")

    auth = AuthContext(user_id=payload.sub, session_id=payload.sid, jwt_id=payload.jti, role=payload.role)
    request.state.auth = auth
    return auth


def optional_auth(request: Request) -> Optional[AuthContext]:
    """Like ``require_auth`` but anonymous requests pass through as ``None``."""
    if not request.headers.get("authorization"):
        return None
    return require_auth(request)


def require_tutor(auth: AuthContext = Depends(require_auth)) -> AuthContext:
    if auth.role not in TUTOR_ROLES:
        raise HTTPException(status_code=403, detail="Tutor access required")
    return auth


def require_admin(auth: AuthContext = Depends(require_auth)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return auth


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/refresh")
def auth_refresh(body: RefreshBody):
    refresh_token = body.refresh_token.strip() if isinstance(body.refresh_token, str) else ""
    if not refresh_token:
        raise HTTPException(status_code=400, detail="refreshToken is required")
    try:
        tokens = sessions.refresh_session(refresh_token)
    except sessions.SessionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {"session": sessions.session_payload(tokens)}


@router.post("/logout")
def auth_logout(auth: AuthContext = Depends(require_auth)):
    sessions.revoke_session(auth.session_id)
    return {"ok": True}


def install_error_handlers(app: FastAPI) -> None:
    """Render every error as ``{"message": ...}``, the shape the frontends read."""

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request payload", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})
