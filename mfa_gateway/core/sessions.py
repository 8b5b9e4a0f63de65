import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from mfa_gateway.core.security import generate_session_token, hash_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of one browser session's authentication progress."""

    username: Optional[str] = None
    password_verified: bool = False
    authenticated: bool = False
    pending_setup_id: Optional[str] = None


ANONYMOUS = SessionState()


@dataclass
class _SessionRecord:
    state: SessionState
    created_at: float
    expires_at: float


class SessionStore:
    """Server-side sessions keyed by the SHA-256 hash of an opaque cookie token.

    Expiry is absolute: ``timeout_seconds`` after the token was issued.
    Callers read a snapshot with ``get`` and replace it wholesale with
    ``commit``; ``lock`` serializes transitions for a single token.
    """

    def __init__(self, timeout_seconds: int = 24 * 60 * 60, clock: Callable[[], float] = time.time):
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._records: Dict[str, _SessionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._mutex = threading.Lock()

    def new_token(self) -> str:
        return generate_session_token()

    def _live_record(self, key: str) -> Optional[_SessionRecord]:
        record = self._records.get(key)
        if record is None:
            return None
        if self.clock() >= record.expires_at:
            del self._records[key]
            self._locks.pop(key, None)
            return None
        return record

    def get(self, token: Optional[str]) -> Optional[SessionState]:
        if not token:
            return None
        with self._mutex:
            record = self._live_record(hash_session_token(token))
            return record.state if record else None

    def commit(self, token: str, state: SessionState) -> None:
        """Atomically replace the stored snapshot, creating the session if needed."""
        key = hash_session_token(token)
        with self._mutex:
            record = self._live_record(key)
            if record is None:
                now = self.clock()
                self._records[key] = _SessionRecord(state=state, created_at=now, expires_at=now + self.timeout_seconds)
            else:
                record.state = state

    def rotate(self, token: Optional[str], state: SessionState) -> str:
        """Store ``state`` under a fresh token and invalidate the old one."""
        new_token = self.new_token()
        if token:
            self.destroy(token)
        self.commit(new_token, state)
        return new_token

    def destroy(self, token: Optional[str]) -> bool:
        if not token:
            return False
        key = hash_session_token(token)
        with self._mutex:
            self._locks.pop(key, None)
            return self._records.pop(key, None) is not None

    def lock(self, token: str) -> asyncio.Lock:
        key = hash_session_token(token)
        with self._mutex:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            return lock

    def sweep(self) -> int:
        now = self.clock()
        with self._mutex:
            expired = [key for key, record in self._records.items() if now >= record.expires_at]
            for key in expired:
                del self._records[key]
                self._locks.pop(key, None)
        if expired:
            logger.info(f"Swept {len(expired)} expired session(s)")
        return len(expired)

    def __len__(self):
        with self._mutex:
            return len(self._records)
