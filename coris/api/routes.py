from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from coris.api.deps import client_key, get_runtime_dep
from coris.api.schemas import (
    AuthResponse,
    CsrfResponse,
    LoginRequest,
    MeResponse,
    OkResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    SignupRequest,
    UserOut,
)
from coris.logging import get_logger
from coris.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    RateLimitedError,
)
from coris.service.runtime import Runtime, check_rate_limit
from coris.service.sessions import AuthFailure

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError()


async def _start_session(runtime: Runtime, response: Response, user) -> AuthResponse:
    await runtime.sessions.issue_session(response, user.id)
    csrf = runtime.csrf.issue_csrf_cookie(response)
    return AuthResponse(user=UserOut(id=user.id, email=user.email), csrf=csrf)


def _clear_cookies(runtime: Runtime, response: Response) -> None:
    runtime.sessions.clear_session(response)
    runtime.csrf.clear_csrf_cookie(response)


@router.post("/signup", response_model=AuthResponse, response_model_exclude_none=True)
async def signup(
    body: SignupRequest, response: Response, runtime: Runtime = Depends(get_runtime_dep)
):
    """Create an account and start a session.

    Sets the session and CSRF cookies; the CSRF token is also returned so
    the client can echo it in ``X-CSRF-Token``.
    """
    await _enforce_rate_limit(
        runtime, f"signup:{body.email}", runtime.settings.signup_rate_limit_per_minute, 60
    )
    user = await runtime.auth.signup(body.email, body.password)
    return await _start_session(runtime, response, user)


@router.post("/login", response_model=AuthResponse, response_model_exclude_none=True)
async def login(
    body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime_dep)
):
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute, 60
    )
    user = await runtime.auth.login(body.email, body.password)
    if not user:
        raise InvalidCredentialsError()
    return await _start_session(runtime, response, user)


@router.post("/logout", response_model=OkResponse, response_model_exclude_none=True)
async def logout(response: Response, runtime: Runtime = Depends(get_runtime_dep)):
    _clear_cookies(runtime, response)
    return OkResponse()


@router.get("/csrf", response_model=CsrfResponse)
async def refresh_csrf(response: Response, runtime: Runtime = Depends(get_runtime_dep)):
    """Issue a fresh CSRF cookie; clients call this after a 403."""
    return CsrfResponse(csrf=runtime.csrf.issue_csrf_cookie(response))


@router.get("/me", response_model=MeResponse, response_model_exclude_none=True)
async def me(request: Request, runtime: Runtime = Depends(get_runtime_dep)):
    # Auth routes sit outside the gate, so verify here
    result = await runtime.sessions.verify_session(request)
    if isinstance(result, AuthFailure):
        logger.info("session_rejected", path=request.url.path, reason=result.reason)
        raise AuthenticationError()
    return MeResponse(user=UserOut(id=result.id))


@router.post("/password-reset/request", response_model=OkResponse)
async def password_reset_request(
    body: PasswordResetRequest, request: Request, runtime: Runtime = Depends(get_runtime_dep)
):
    """Mail a reset link if the account exists.

    The body and status are identical whether or not the email is registered.
    """
    await _enforce_rate_limit(
        runtime,
        f"reset_request:{client_key(request)}",
        runtime.settings.reset_request_rate_limit_per_hour,
        3600,
    )
    result = await runtime.auth.request_password_reset(body.email)
    return OkResponse(**result)


@router.post("/password-reset/confirm", response_model=OkResponse, response_model_exclude_none=True)
async def password_reset_confirm(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Set a new password from a reset token and sign out every session."""
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{client_key(request)}",
        runtime.settings.reset_confirm_rate_limit_per_hour,
        3600,
    )
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    _clear_cookies(runtime, response)
    return OkResponse()
