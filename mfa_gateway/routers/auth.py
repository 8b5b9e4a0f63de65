import base64
import logging
from dataclasses import replace
from io import BytesIO
from typing import Annotated, Optional

import qrcode
from qrcode.image.pure import PyPNGImage
from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from mfa_gateway.core import totp
from mfa_gateway.core.admission import LOGIN_PATH, wants_json
from mfa_gateway.core.auth_flow import AuthError, AuthResult, AuthState
from mfa_gateway.core.security import audit_log, client_ip, rate_limiter
from mfa_gateway.core.sessions import ANONYMOUS
from mfa_gateway.core.setup_registry import redact_setup_id
from mfa_gateway.routers.deps import (
    clear_session_cookie, current_session, get_gateway, session_transition, set_session_cookie
)
from mfa_gateway.templates import get_login_html, get_mfa_setup_html, get_mfa_verify_html

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

SETUP_PATH = "/auth/mfa-setup"
VERIFY_PATH = "/auth/mfa-verify"

NEXT_FOR_STATE = {
    AuthState.ANONYMOUS: LOGIN_PATH,
    AuthState.PASSWORD_VERIFIED: LOGIN_PATH,
    AuthState.MFA_SETUP_REQUIRED: SETUP_PATH,
    AuthState.MFA_PENDING: VERIFY_PATH,
    AuthState.AUTHENTICATED: "/",
}

ERROR_MESSAGES = {
    AuthError.INVALID_CREDENTIALS: "Invalid username or password",
    AuthError.INVALID_CODE: "Invalid code - please check your authenticator app time sync",
    AuthError.SETUP_EXPIRED: "Your setup session expired. A new key has been generated.",
    AuthError.NOT_ALLOWED: "Please sign in first",
}

_QUERY_ERRORS = {"1": AuthError.INVALID_CODE, "expired": AuthError.SETUP_EXPIRED}


class LoginRequest(BaseModel):
    username: str
    password: str


class SetupRequest(BaseModel):
    code: str


class MfaRequest(BaseModel):
    code: str


def _qr_data_uri(uri: str) -> str:
    # Smaller QR for faster transfer while preserving scannability
    qr_code = qrcode.QRCode(version=1, box_size=6, border=2)
    qr_code.add_data(uri)
    qr_code.make(fit=True)
    img = qr_code.make_image(image_factory=PyPNGImage)
    img_bytes = BytesIO()
    img.save(img_bytes)
    return f"data:image/png;base64,{base64.b64encode(img_bytes.getvalue()).decode()}"


def _redirect_for(state: AuthState) -> RedirectResponse:
    return RedirectResponse(NEXT_FOR_STATE[state], status_code=303)


def _outcome(request: Request, result: AuthResult, failure_path: str) -> Response:
    """Turn a transition result into a redirect (browsers) or JSON (API clients)."""
    if result.ok or result.error is AuthError.NOT_ALLOWED:
        target = NEXT_FOR_STATE[result.state]
    elif result.error is AuthError.SETUP_EXPIRED:
        target = f"{failure_path}?error=expired"
    else:
        target = f"{failure_path}?error=1"

    if wants_json(request.headers.get("accept")):
        status_code = 200 if result.ok else (403 if result.error is AuthError.NOT_ALLOWED else 401)
        return JSONResponse(
            {
                "success": result.ok,
                "state": result.state.value,
                "next": target,
                "detail": None if result.ok else ERROR_MESSAGES[result.error],
            },
            status_code=status_code,
        )
    return RedirectResponse(target, status_code=303)


@router.get("/login", tags=["ui"])
async def login_page(request: Request, error: Optional[str] = None):
    gateway = get_gateway(request)
    _, session = current_session(request)
    state = gateway.flow.state_of(session)
    if state is not AuthState.ANONYMOUS:
        return _redirect_for(state)
    return get_login_html(ERROR_MESSAGES[AuthError.INVALID_CREDENTIALS] if error else None)


@router.post("/login", tags=["auth"])
async def login(
    request: Request,
    body: Annotated[LoginRequest, Form()],
    rate_limit: None = Depends(rate_limiter),
):
    """First step: check the configured username and password."""
    gateway = get_gateway(request)
    ip_address = client_ip(request)
    logger.info(f"Login attempt for {body.username!r} from {ip_address}")

    async with session_transition(request) as (token, snapshot):
        # bcrypt and sqlite run in worker threads, never on the event loop.
        result = await run_in_threadpool(gateway.flow.submit_password, snapshot, body.username, body.password)
        if result.ok:
            # New token once the password is accepted.
            token = gateway.sessions.rotate(token, result.session)

    await run_in_threadpool(audit_log, body.username, "LOGIN", "success" if result.ok else "invalid_credentials", ip_address, gateway.db_path)
    response = _outcome(request, result, LOGIN_PATH)
    if result.ok:
        set_session_cookie(response, gateway, token)
    return response


@router.get("/mfa-setup", tags=["2fa-setup"])
async def setup_page(request: Request, error: Optional[str] = None):
    """Begin (or resume) enrollment and show the provisioning QR code."""
    gateway = get_gateway(request)
    ip_address = client_ip(request)

    async with session_transition(request) as (token, snapshot):
        state = gateway.flow.state_of(snapshot)
        if state is not AuthState.MFA_SETUP_REQUIRED:
            return _redirect_for(state)
        result = gateway.flow.begin_setup(snapshot)
        gateway.sessions.commit(token, result.session)

    setup = result.setup
    qr_code = await run_in_threadpool(_qr_data_uri, setup.provisioning_uri)
    await run_in_threadpool(audit_log, setup.username, "MFA_SETUP_START", "qr_generated", ip_address, gateway.db_path)

    if wants_json(request.headers.get("accept")):
        return JSONResponse({
            "success": True,
            "setup_id": setup.setup_id,
            "secret": setup.secret,
            "uri": setup.provisioning_uri,
            "qr_code": qr_code,
            "expires_in": int(setup.expires_at - gateway.registry.clock()),
        })
    message = ERROR_MESSAGES[_QUERY_ERRORS[error]] if error in _QUERY_ERRORS else None
    return get_mfa_setup_html(setup.username, setup.secret, qr_code, setup.provisioning_uri, message)


@router.post("/mfa-setup", tags=["2fa-setup"])
async def setup_verify(
    request: Request,
    body: Annotated[SetupRequest, Form()],
    rate_limit: None = Depends(rate_limiter),
):
    """Confirm enrollment with the first code from the authenticator app."""
    gateway = get_gateway(request)
    ip_address = client_ip(request)

    async with session_transition(request) as (token, snapshot):
        result = await run_in_threadpool(gateway.flow.complete_setup, snapshot, body.code)
        if token is not None:
            gateway.sessions.commit(token, result.session)

    username = snapshot.username if snapshot else None
    await run_in_threadpool(audit_log, username, "MFA_SETUP_VERIFY", "success" if result.ok else result.error.value, ip_address, gateway.db_path)
    return _outcome(request, result, SETUP_PATH)


@router.get("/mfa-verify", tags=["ui"])
async def verify_page(request: Request, error: Optional[str] = None):
    gateway = get_gateway(request)
    _, session = current_session(request)
    state = gateway.flow.state_of(session)
    if state is not AuthState.MFA_PENDING:
        return _redirect_for(state)
    return get_mfa_verify_html(session.username, ERROR_MESSAGES[AuthError.INVALID_CODE] if error else None)


@router.post("/mfa-verify", tags=["2fa-auth"])
async def verify_code(
    request: Request,
    body: Annotated[MfaRequest, Form()],
    rate_limit: None = Depends(rate_limiter),
):
    """Second step for enrolled users: check the TOTP code."""
    gateway = get_gateway(request)
    ip_address = client_ip(request)

    async with session_transition(request) as (token, snapshot):
        result = gateway.flow.verify_mfa(snapshot, body.code)
        if token is not None:
            gateway.sessions.commit(token, result.session)

    username = snapshot.username if snapshot else None
    await run_in_threadpool(audit_log, username, "MFA_VERIFY", "success" if result.ok else result.error.value, ip_address, gateway.db_path)
    return _outcome(request, result, VERIFY_PATH)


@router.post("/logout", tags=["session"])
async def logout(request: Request):
    gateway = get_gateway(request)
    token, session = current_session(request)
    gateway.sessions.destroy(token)
    username = session.username if session else None
    await run_in_threadpool(audit_log, username, "LOGOUT", "success", client_ip(request), gateway.db_path)

    if wants_json(request.headers.get("accept")):
        response = JSONResponse({"success": True, "next": LOGIN_PATH})
    else:
        response = RedirectResponse(LOGIN_PATH, status_code=303)
    clear_session_cookie(response, gateway)
    return response


# ----------------------------------------------------------------------------
# Development-only diagnostics and maintenance
# ----------------------------------------------------------------------------
async def _require_debug_routes(request: Request):
    if not get_gateway(request).debug_routes:
        raise HTTPException(status_code=404, detail="Not Found")


@router.get("/mfa-debug", tags=["debug"], dependencies=[Depends(_require_debug_routes)])
async def mfa_debug(request: Request):
    """Session and registry diagnostics. Never includes secrets or expected codes."""
    gateway = get_gateway(request)
    _, session = current_session(request)
    session = session or ANONYMOUS
    now = gateway.registry.clock()
    info = {
        "session": {
            "username": session.username,
            "password_verified": session.password_verified,
            "authenticated": session.authenticated,
            "pending_setup_id": redact_setup_id(session.pending_setup_id),
            "state": gateway.flow.state_of(session).value,
        },
        "mfa_manager": {
            "pending_setups_count": len(gateway.registry),
            "user_secrets_count": len(gateway.secret_store),
            "available_users": gateway.secret_store.usernames(),
        },
        "time": totp.time_info(now),
    }
    if session.pending_setup_id:
        setup = gateway.registry.get(session.pending_setup_id)
        if setup:
            info["current_setup"] = {
                "setup_id": redact_setup_id(setup.setup_id),
                "username": setup.username,
                "expires_in": int(setup.expires_at - now),
            }
        else:
            info["current_setup"] = {"error": "Setup session expired"}
    return info


@router.post("/mfa-cleanup", tags=["debug"], dependencies=[Depends(_require_debug_routes)])
async def mfa_cleanup(request: Request, username: Annotated[Optional[str], Form()] = None):
    """Drop every pending setup of the session user (or the posted username)."""
    gateway = get_gateway(request)
    async with session_transition(request) as (token, snapshot):
        username = (snapshot.username if snapshot else None) or username
        if not username:
            return JSONResponse({"success": False, "detail": "No username provided"}, status_code=400)
        cleaned = gateway.registry.cleanup_user(username)
        if token is not None and snapshot.pending_setup_id:
            gateway.sessions.commit(token, replace(snapshot, pending_setup_id=None))

    return {"success": True, "username": username, "cleaned_setups": cleaned, "session_cleared": True}


@router.post("/mfa-reset", tags=["debug"], dependencies=[Depends(_require_debug_routes)])
async def mfa_reset(request: Request, username: Annotated[Optional[str], Form()] = None):
    """Administrative reset: delete the user's secret so the next login re-enrolls."""
    gateway = get_gateway(request)
    async with session_transition(request) as (token, snapshot):
        username = (snapshot.username if snapshot else None) or username
        if not username:
            return JSONResponse({"success": False, "detail": "No username provided"}, status_code=400)
        had_mfa = await run_in_threadpool(gateway.flow.reset_mfa, username)
        if token is not None:
            gateway.sessions.commit(token, replace(snapshot, authenticated=False, pending_setup_id=None))

    await run_in_threadpool(audit_log, username, "MFA_RESET", "reset" if had_mfa else "no_secret", client_ip(request), gateway.db_path)
    return {
        "success": True,
        "username": username,
        "had_mfa": had_mfa,
        "message": "MFA reset successfully" if had_mfa else "User had no MFA setup",
    }
