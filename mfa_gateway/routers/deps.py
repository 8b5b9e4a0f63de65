from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import Response
from fastapi.requests import HTTPConnection

from mfa_gateway.core.gateway import Gateway
from mfa_gateway.core.sessions import SessionState


def get_gateway(conn: HTTPConnection) -> Gateway:
    return conn.app.state.gateway


def current_session(conn: HTTPConnection) -> Tuple[Optional[str], Optional[SessionState]]:
    """Return the cookie token and its live snapshot (None when absent or expired)."""
    gateway = get_gateway(conn)
    token = conn.cookies.get(gateway.cookie_name)
    return token, gateway.sessions.get(token)


@asynccontextmanager
async def session_transition(conn: HTTPConnection):
    """Hold the per-session lock while a handler computes and commits a transition."""
    gateway = get_gateway(conn)
    token, snapshot = current_session(conn)
    if snapshot is None:
        yield None, None
        return
    async with gateway.sessions.lock(token):
        # Re-read under the lock; a concurrent request may have committed.
        yield token, gateway.sessions.get(token)


def set_session_cookie(response: Response, gateway: Gateway, token: str):
    response.set_cookie(
        key=gateway.cookie_name,
        value=token,
        max_age=gateway.sessions.timeout_seconds,
        httponly=True,
        secure=gateway.cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, gateway: Gateway):
    response.delete_cookie(
        key=gateway.cookie_name,
        httponly=True,
        secure=gateway.cookie_secure,
        samesite="lax",
        path="/",
    )
