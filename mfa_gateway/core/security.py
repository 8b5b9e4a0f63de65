import hashlib
import hmac
import secrets
import logging
import asyncio
import time
from collections import defaultdict, deque
from typing import Optional

import bcrypt
from fastapi import Request, HTTPException

from mfa_gateway.core.database import get_db
from mfa_gateway.core.config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72

# ============================================================================
# Security Utils
# ============================================================================
def generate_session_token() -> str:
    """Generate secure session token."""
    return secrets.token_urlsafe(32)

def hash_session_token(token: str) -> str:
    """Hash session token for storage."""
    return hashlib.sha256(token.encode()).hexdigest()

def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with bcrypt for USER_CREDENTIALS."""
    pw = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(pw, bcrypt.gensalt(rounds=rounds)).decode("utf-8")

def verify_password(plain: str, hashed: str) -> bool:
    pw = (plain or "").encode("utf-8")[:_BCRYPT_MAX_BYTES]
    try:
        return bcrypt.checkpw(pw, hashed.encode("utf-8"))
    except ValueError:
        logger.error("Configured password hash is not a valid bcrypt hash")
        return False

def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest((a or "").encode("utf-8"), (b or "").encode("utf-8"))

def client_ip(request) -> str:
    return request.client.host if request is not None and request.client else "unknown"

def audit_log(username: Optional[str], action: str, status: str, ip_address: str, db_path: Optional[str] = None):
    """Log security events."""
    conn = get_db(db_path)
    try:
        conn.execute(
            "INSERT INTO audit_log (username, action, status, ip_address) VALUES (?, ?, ?, ?)",
            (username, action, status, ip_address)
        )
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Audit: {action} - {status} (User: {username}, IP: {ip_address})")

# ============================================================================
# Rate Limiting (simple sliding window by client IP + path)
# ============================================================================
class RateLimiter:
    """Minimal in-memory rate limiter to throttle brute-force bursts."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def __call__(self, request: Request):
        # Combine client IP and path so limits are per-endpoint per-client.
        key = f"{client_ip(request)}:{request.url.path if request else 'unknown'}"
        now = time.time()

        async with self._lock:
            bucket = self._hits[key]
            # Drop entries outside the window.
            cutoff = now - self.window_seconds
            while bucket and bucket[0] < cutoff:
                bucket.popleft()

            if len(bucket) >= self.max_requests:
                logger.warning(f"Rate limit exceeded for {key}")
                raise HTTPException(status_code=429, detail="Too many requests, slow down")

            bucket.append(now)

    def reset(self):
        self._hits.clear()


rate_limiter = RateLimiter(
    max_requests=RATE_LIMIT_MAX_REQUESTS,
    window_seconds=RATE_LIMIT_WINDOW_SECONDS,
)
