"""Short-lived MFA enrollments awaiting their first correct code.

At most one live PendingSetup exists per username: ``begin`` supersedes any
older record for the same user, and ``complete`` only succeeds for the
current one. Expiry is checked lazily on every lookup; ``sweep`` drops
expired records eagerly.
"""

import logging
import secrets
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from mfa_gateway.core import totp
from mfa_gateway.core.secret_store import SecretStore

logger = logging.getLogger(__name__)

SETUP_TTL_SECONDS = 30 * 60


def redact_setup_id(setup_id: Optional[str]) -> Optional[str]:
    """Leading characters of ``setup_id``, enough to correlate log lines but not to replay it."""
    if not setup_id:
        return setup_id
    return setup_id[:6] + "..."


class SetupError(str, Enum):
    NOT_FOUND = "not_found"
    BAD_CODE_FORMAT = "bad_code_format"
    INVALID_CODE = "invalid_code"


@dataclass(frozen=True)
class PendingSetup:
    setup_id: str
    username: str
    secret: str
    created_at: float
    expires_at: float
    provisioning_uri: str

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class SetupResult:
    username: Optional[str] = None
    error: Optional[SetupError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SetupRegistry:
    def __init__(
        self,
        secret_store: SecretStore,
        issuer: str = "HTTPS Proxy Service",
        ttl_seconds: int = SETUP_TTL_SECONDS,
        window: int = totp.DEFAULT_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.secret_store = secret_store
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self.window = window
        self.clock = clock
        self._pending: Dict[str, PendingSetup] = {}
        self._lock = threading.Lock()
        self._user_locks = defaultdict(threading.Lock)

    def _user_lock(self, username: str) -> threading.Lock:
        with self._lock:
            return self._user_locks[username]

    def _drop_user_setups(self, username: str) -> int:
        with self._lock:
            stale = [sid for sid, setup in self._pending.items() if setup.username == username]
            for sid in stale:
                del self._pending[sid]
        for sid in stale:
            logger.info(f"Cleaned up old MFA setup {redact_setup_id(sid)} for {username}")
        return len(stale)

    def begin(self, username: str) -> PendingSetup:
        """Start a new enrollment for ``username``, invalidating any earlier one."""
        with self._user_lock(username):
            cleaned = self._drop_user_setups(username)
            if cleaned:
                logger.info(f"Cleaned up {cleaned} old setup(s) before generating new one for {username}")
            secret = totp.random_secret()
            now = self.clock()
            setup = PendingSetup(
                setup_id=secrets.token_urlsafe(24),
                username=username,
                secret=secret,
                created_at=now,
                expires_at=now + self.ttl_seconds,
                provisioning_uri=totp.provisioning_uri(secret, username, self.issuer),
            )
            with self._lock:
                self._pending[setup.setup_id] = setup
        logger.info(f"MFA secret generated for {username} (setup {redact_setup_id(setup.setup_id)})")
        return setup

    def get(self, setup_id: Optional[str]) -> Optional[PendingSetup]:
        """Return the live record for ``setup_id``, or None if absent, superseded or expired."""
        if not setup_id:
            return None
        with self._lock:
            setup = self._pending.get(setup_id)
            if setup is None:
                return None
            if setup.is_expired(self.clock()):
                del self._pending[setup_id]
                logger.info(f"Expired MFA setup {redact_setup_id(setup_id)} for {setup.username}")
                return None
            return setup

    def complete(self, setup_id: Optional[str], candidate_code: Optional[str], username: Optional[str] = None) -> SetupResult:
        """Confirm an enrollment with a code generated from its candidate secret.

        On success the secret is committed to the SecretStore and the record
        removed, both under the user's lock so a concurrent ``begin`` either
        happens entirely before (and this fails NOT_FOUND) or after.
        """
        setup = self.get(setup_id)
        if setup is None or (username is not None and setup.username != username):
            logger.warning(f"Invalid or expired MFA setup ID {redact_setup_id(setup_id)}")
            return SetupResult(username=username, error=SetupError.NOT_FOUND)

        code = totp.normalize_code(candidate_code)
        if code is None:
            logger.warning(f"Invalid token format during setup for {setup.username}")
            return SetupResult(username=setup.username, error=SetupError.BAD_CODE_FORMAT)

        with self._user_lock(setup.username):
            # Re-check under the user lock: a newer begin() may have superseded us.
            if self.get(setup.setup_id) is None:
                logger.warning(f"MFA setup {redact_setup_id(setup.setup_id)} superseded before completion")
                return SetupResult(username=setup.username, error=SetupError.NOT_FOUND)

            if not totp.verify(setup.secret, code, self.clock(), self.window):
                logger.warning(f"Invalid MFA token during setup for {setup.username}")
                return SetupResult(username=setup.username, error=SetupError.INVALID_CODE)

            self.secret_store.set(setup.username, setup.secret)
            with self._lock:
                self._pending.pop(setup.setup_id, None)

        logger.info(f"MFA setup completed for {setup.username}")
        return SetupResult(username=setup.username)

    def cleanup_user(self, username: str) -> int:
        """Drop every pending setup for ``username``; return how many were removed."""
        with self._user_lock(username):
            return self._drop_user_setups(username)

    def sweep(self) -> int:
        """Remove every expired record."""
        now = self.clock()
        with self._lock:
            expired = [sid for sid, setup in self._pending.items() if setup.is_expired(now)]
            for sid in expired:
                del self._pending[sid]
        if expired:
            logger.info(f"Auto-cleaned {len(expired)} expired MFA setup(s)")
        return len(expired)

    def pending_for(self, username: str) -> Optional[PendingSetup]:
        with self._lock:
            candidates = [s for s in self._pending.values() if s.username == username]
        for setup in candidates:
            live = self.get(setup.setup_id)
            if live is not None:
                return live
        return None

    def __len__(self):
        with self._lock:
            return len(self._pending)
