from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Path, Request, Response

from latchkey.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    NewPasswordRequest,
    ResetPasswordRequest,
    SessionResponse,
)
from latchkey.errors import AuthenticationError
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.outcome import Outcome
from latchkey.service.runtime import Runtime, get_runtime
from latchkey.service.session import user_id_of

logger = get_logger(__name__)

router = APIRouter()


def _request_state(request: Request, params: Optional[dict] = None) -> RequestState:
    return RequestState(req_cookies=dict(request.cookies), params=params or {})


def _apply_cookies(state: RequestState, response: Response, runtime: Runtime) -> None:
    secure = runtime.settings.cookie_secure
    for key, cookie in state.resp_cookies.items():
        if cookie.expired:
            response.delete_cookie(
                key, path=cookie.path, secure=secure, httponly=True, samesite="lax"
            )
        else:
            response.set_cookie(
                key,
                cookie.value,
                max_age=cookie.max_age,
                path=cookie.path,
                secure=secure,
                httponly=True,
                samesite="lax",
            )


def _error_envelope(response: Response, exc: AuthenticationError) -> Envelope:
    response.status_code = exc.status_code
    return Envelope(status="error", error=ErrorBody(code=exc.error_code, message=exc.message))


def _outcome_envelope(
    outcome: Any, response: Response, *, failure_status: int = 401
) -> Envelope:
    state = outcome.state
    if isinstance(outcome, Outcome) and outcome.ok:
        user = outcome.value
        data = SessionResponse(
            user_id=user_id_of(user) if user is not None else "",
            message=state.flash("info") if state else None,
        )
        return Envelope(status="ok", data=data.model_dump())
    message = (state.flash("error") if state else None) or "request failed"
    response.status_code = failure_status
    return Envelope(
        status="error",
        error=ErrorBody(code=outcome.reason or "unauthorized", message=message),
    )


def _not_found(response: Response) -> Envelope:
    response.status_code = 404
    return Envelope(status="error", error=ErrorBody(code="not_found", message="not found"))


@router.get("/session", response_model=Envelope, tags=["session"])
async def current_session(request: Request, response: Response):
    """Return the signed-in user, signing in from a remember-me cookie if needed."""
    runtime = get_runtime()
    state = await runtime.load_user(_request_state(request))
    _apply_cookies(state, response, runtime)
    user = state.current_user(runtime.config)
    if user is None:
        message = runtime.registry.message("user_not_authenticated", state, runtime.config)
        return _error_envelope(response, AuthenticationError(message))
    return Envelope(status="ok", data=SessionResponse(user_id=user_id_of(user)).model_dump())


@router.post("/session", response_model=Envelope, tags=["session"])
async def create_session(body: LoginRequest, request: Request, response: Response):
    """Sign in with e-mail and password."""
    runtime = get_runtime()
    state = await runtime.load_user(_request_state(request, body.model_dump(exclude_none=True)))
    outcome = await runtime.session_controller.run("create", state)
    _apply_cookies(state, response, runtime)
    return _outcome_envelope(outcome, response)


@router.delete("/session", response_model=Envelope, tags=["session"])
async def delete_session(request: Request, response: Response):
    """Sign out, clearing the session and any remember-me cookie."""
    runtime = get_runtime()
    state = await runtime.load_user(_request_state(request))
    outcome = await runtime.session_controller.run("delete", state)
    _apply_cookies(state, response, runtime)
    if outcome.ok:
        return Envelope(status="ok", data={"message": state.flash("info")})
    return _outcome_envelope(outcome, response)


@router.get("/confirm-email/{token}", response_model=Envelope, tags=["session"])
async def confirm_email(request: Request, response: Response, token: str = Path(..., max_length=256)):
    """Confirm an e-mail address with the token sent to the user."""
    runtime = get_runtime()
    if runtime.confirmation_controller is None:
        return _not_found(response)
    state = await runtime.load_user(_request_state(request))
    outcome = await runtime.confirmation_controller.run("show", state, {"id": token})
    _apply_cookies(state, response, runtime)
    return _outcome_envelope(outcome, response, failure_status=400)


@router.post("/reset-password", response_model=Envelope, tags=["reset_password"])
async def request_password_reset(body: ResetPasswordRequest, request: Request, response: Response):
    """Send a reset link. The answer does not reveal whether the account exists."""
    runtime = get_runtime()
    if runtime.reset_password_controller is None:
        return _not_found(response)
    state = await runtime.load_user(_request_state(request, body.model_dump()))
    outcome = await runtime.reset_password_controller.run("create", state)
    _apply_cookies(state, response, runtime)
    if outcome.reason == "already_authenticated":
        return _outcome_envelope(outcome, response, failure_status=400)
    return Envelope(status="ok", data={"message": state.flash("info")})


@router.get("/reset-password/{token}", response_model=Envelope, tags=["reset_password"])
async def check_password_reset(
    request: Request, response: Response, token: str = Path(..., max_length=256)
):
    runtime = get_runtime()
    if runtime.reset_password_controller is None:
        return _not_found(response)
    state = await runtime.load_user(_request_state(request))
    outcome = await runtime.reset_password_controller.run("edit", state, {"id": token})
    _apply_cookies(state, response, runtime)
    if outcome.ok:
        return Envelope(status="ok", data={"valid": True})
    return _outcome_envelope(outcome, response, failure_status=400)


@router.put("/reset-password/{token}", response_model=Envelope, tags=["reset_password"])
async def complete_password_reset(
    body: NewPasswordRequest,
    request: Request,
    response: Response,
    token: str = Path(..., max_length=256),
):
    """Set a new password with a reset token and sign in."""
    runtime = get_runtime()
    if runtime.reset_password_controller is None:
        return _not_found(response)
    params = body.model_dump(exclude_none=True)
    params["id"] = token
    state = await runtime.load_user(_request_state(request, params))
    outcome = await runtime.reset_password_controller.run("update", state)
    _apply_cookies(state, response, runtime)
    return _outcome_envelope(outcome, response, failure_status=400)
