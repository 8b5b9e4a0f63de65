"""Per-request admission policy for traffic bound to the upstream service."""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from mfa_gateway.core.sessions import SessionState

AUTH_PREFIX = "/auth"
LOGIN_PATH = f"{AUTH_PREFIX}/login"
LOCAL_PATHS = frozenset({"/health", "/proxy-status"})


class Verdict(str, Enum):
    LOCAL = "local"
    FORWARD = "forward"
    CHALLENGE_REDIRECT = "challenge_redirect"
    REJECT_UNAUTHORIZED = "reject_unauthorized"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    target: Optional[str] = None
    reason: str = ""
    path: Optional[str] = None


def normalize_path(path: str) -> str:
    """Remove ``.`` and ``..`` segments (RFC 3986, section 5.2.4).

    The gate must judge the same path that is forwarded upstream, and HTTP
    clients collapse dot segments when they build the upstream URL.
    """
    if not path.startswith("/"):
        path = "/" + path
    segments = path.split("/")[1:]
    kept = []
    for segment in segments:
        if segment == ".":
            continue
        if segment == "..":
            if kept:
                kept.pop()
            continue
        kept.append(segment)
    normalized = "/" + "/".join(kept)
    # "/a/b/.." names the directory "/a/", not "/a"
    if segments[-1] in (".", "..") and not normalized.endswith("/"):
        normalized += "/"
    return normalized


def is_local_path(path: str) -> bool:
    return path == AUTH_PREFIX or path.startswith(AUTH_PREFIX + "/") or path in LOCAL_PATHS


def _base_of(pattern: str) -> str:
    if pattern.endswith("/*"):
        pattern = pattern[:-2]
    return pattern.rstrip("/") or "/"


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    """Match ``/base`` exactly or anything under ``/base/``; ``/public`` never matches ``/publicity``."""
    for pattern in public_paths:
        base = _base_of(pattern)
        if base == "/":
            if path == "/":
                return True
            continue
        if path == base or path.startswith(base + "/"):
            return True
    return False


def wants_json(accept: Optional[str]) -> bool:
    return bool(accept) and "application/json" in accept.lower()


def decide(
    request_path: str,
    session: Optional[SessionState],
    public_paths: Iterable[str],
    expects_json: bool = False,
    websocket: bool = False,
) -> Decision:
    """Judge ``request_path`` after dot-segment removal; ``Decision.path`` is what gets forwarded."""
    path = normalize_path(request_path)
    if is_local_path(path):
        return Decision(Verdict.LOCAL, reason="local route", path=path)
    if is_public_path(path, public_paths):
        return Decision(Verdict.FORWARD, reason="public path", path=path)
    if session is not None and session.authenticated:
        return Decision(Verdict.FORWARD, reason="authenticated", path=path)
    if websocket:
        return Decision(Verdict.REJECT_UNAUTHORIZED, reason="websocket upgrade without authentication", path=path)
    if expects_json:
        return Decision(Verdict.REJECT_UNAUTHORIZED, target=LOGIN_PATH, reason="authentication required", path=path)
    return Decision(Verdict.CHALLENGE_REDIRECT, target=LOGIN_PATH, reason="authentication required", path=path)
