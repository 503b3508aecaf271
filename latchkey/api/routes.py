from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from latchkey.api.error_handling import _error_response
from latchkey.api.schemas import AuthResponse, Envelope, IdentityResponse, LoginRequest
from latchkey.service.errors import TOKEN_THEFT_MESSAGE, RejectReason
from latchkey.service.remember import CookieDirective, RememberStatus
from latchkey.service.runtime import Runtime, get_runtime
from latchkey.service.session import Rejected
from latchkey.storage.models import Session, User, utcnow

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"

# Handlers are plain functions: the authentication core blocks on storage,
# so FastAPI runs them in its threadpool.


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_session_cookie(response: Response, session: Session, *, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _apply_cookie(
    response: Response, directive: Optional[CookieDirective], *, secure: bool
) -> None:
    if directive is None:
        return
    if directive.clears:
        response.delete_cookie(directive.name, path="/", secure=secure, samesite="lax")
        return
    response.set_cookie(
        directive.name,
        directive.value,
        max_age=directive.max_age,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )


def _rejection_response(result: Rejected) -> JSONResponse:
    if result.reason == RejectReason.INVALID_CREDENTIALS:
        return _error_response(401, result.message, code="unauthorized")
    return _error_response(
        403, result.message, {"reason": result.reason.value}, code="forbidden"
    )


def _live_session(runtime: Runtime, session_id: Optional[str]) -> Optional[Session]:
    if not session_id:
        return None
    session = runtime.store.get_session(session_id)
    if session is None:
        return None
    if session.expires_at <= utcnow():
        runtime.store.revoke_session(session.id)
        return None
    return session


def _session_user(
    runtime: Runtime, request: Request
) -> Tuple[Optional[User], Optional[Session]]:
    session = _live_session(runtime, request.cookies.get(SESSION_COOKIE))
    if session is None:
        return None, None
    user = runtime.store.get_user(session.user_id)
    if user is None or not user.is_active:
        return None, None
    return user, session


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with login identity and password.

    Sets the session cookie and, when ``remember`` is requested and enabled,
    the persistent-login cookie.

    Raises:
        401: If credentials are invalid
        403: If the account is locked or unconfirmed
    """
    runtime = get_runtime()
    secure = runtime.settings.cookie_secure
    result = runtime.authenticator.authenticate(
        body.login,
        body.password,
        remember=body.remember,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if isinstance(result, Rejected):
        return _rejection_response(result)

    _apply_session_cookie(response, result.session, secure=secure)
    _apply_cookie(response, result.cookie, secure=secure)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            remembered=result.cookie is not None,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(request: Request, response: Response):
    """Revoke the session, record logout activity and forget persistent logins."""
    runtime = get_runtime()
    secure = runtime.settings.cookie_secure
    cookie_name = runtime.settings.login_cookie_name
    cookie_value = request.cookies.get(cookie_name)

    user, session = _session_user(runtime, request)
    if user is None and cookie_value and runtime.features.rememberable:
        user = runtime.remember.identify(cookie_value)

    if user is not None:
        runtime.authenticator.logout(
            user, session.id if session else None, cookie_value=cookie_value
        )
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(cookie_name, path="/", secure=secure, samesite="lax")
    return Envelope(
        status="ok",
        data={"message": "logged out" if user else "no active session"},
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(request: Request, response: Response):
    """Resolve the current identity from the session or persistent-login cookie."""
    runtime = get_runtime()
    secure = runtime.settings.cookie_secure

    user, session = _session_user(runtime, request)
    remembered_cookie: Optional[CookieDirective] = None
    if user is None:
        cookie_value = request.cookies.get(runtime.settings.login_cookie_name)
        if not cookie_value or not runtime.features.rememberable:
            raise _http_error("unauthorized", "authentication required", status_code=401)
        result = runtime.remember.authenticate(
            cookie_value,
            ip_addr=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        if result.status == RememberStatus.THEFT_DETECTED:
            response_401 = _error_response(
                401,
                TOKEN_THEFT_MESSAGE,
                {"reason": RejectReason.TOKEN_THEFT_DETECTED.value},
                code="unauthorized",
            )
            _apply_cookie(response_401, result.cookie, secure=secure)
            return response_401
        if not result.established:
            response_401 = _error_response(401, "authentication required", code="unauthorized")
            _apply_cookie(response_401, result.cookie, secure=secure)
            return response_401
        user, session = result.user, result.session
        remembered_cookie = result.cookie
        _apply_session_cookie(response, session, secure=secure)

    _apply_cookie(response, remembered_cookie, secure=secure)
    return Envelope(
        status="ok",
        data=IdentityResponse(
            user_id=user.id,
            email=user.email,
            handle=user.handle,
            session_id=session.id,
            session_expires_at=session.expires_at,
            remembered=session.remembered,
            sign_in_count=user.sign_in_count,
            current_sign_in_at=user.current_sign_in_at,
            last_sign_in_at=user.last_sign_in_at,
        ),
    )
