"""Two-step login: password, then TOTP setup or verification.

States::

    ANONYMOUS -> PASSWORD_VERIFIED -> MFA_SETUP_REQUIRED | MFA_PENDING -> AUTHENTICATED

``PASSWORD_VERIFIED`` is transient: once the password is accepted the state
resolves immediately to setup or verification depending on whether the
SecretStore holds a secret for the user. Every operation takes a
``SessionState`` snapshot and returns a new one inside an ``AuthResult``;
failures are returned as ``AuthError`` values and leave the session where it
was so the client can retry.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from mfa_gateway.core import totp
from mfa_gateway.core.config import Credential
from mfa_gateway.core.secret_store import SecretStore
from mfa_gateway.core.security import constant_time_equals, verify_password
from mfa_gateway.core.sessions import ANONYMOUS, SessionState
from mfa_gateway.core.setup_registry import PendingSetup, SetupError, SetupRegistry, redact_setup_id

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    PASSWORD_VERIFIED = "password_verified"
    MFA_SETUP_REQUIRED = "mfa_setup_required"
    MFA_PENDING = "mfa_pending"
    AUTHENTICATED = "authenticated"


class AuthError(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CODE = "invalid_code"
    SETUP_EXPIRED = "setup_expired"
    NOT_ALLOWED = "not_allowed"


@dataclass(frozen=True)
class AuthResult:
    session: SessionState
    state: AuthState
    error: Optional[AuthError] = None
    setup: Optional[PendingSetup] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthFlow:
    def __init__(
        self,
        credential: Credential,
        secret_store: SecretStore,
        registry: SetupRegistry,
        window: int = totp.DEFAULT_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.credential = credential
        self.secret_store = secret_store
        self.registry = registry
        self.window = window
        self.clock = clock

    def state_of(self, session: Optional[SessionState]) -> AuthState:
        if session is None:
            return AuthState.ANONYMOUS
        if session.authenticated:
            return AuthState.AUTHENTICATED
        if session.password_verified and session.username:
            if self.secret_store.has(session.username):
                return AuthState.MFA_PENDING
            return AuthState.MFA_SETUP_REQUIRED
        return AuthState.ANONYMOUS

    def _result(self, session: SessionState, error: Optional[AuthError] = None, setup=None) -> AuthResult:
        return AuthResult(session=session, state=self.state_of(session), error=error, setup=setup)

    def submit_password(self, session: Optional[SessionState], username: str, password: str) -> AuthResult:
        session = session or ANONYMOUS
        # Always run the bcrypt comparison so a wrong username costs the same as a wrong password.
        password_ok = verify_password(password, self.credential.password_hash)
        username_ok = constant_time_equals(username or "", self.credential.username)
        if not (username_ok and password_ok):
            logger.warning(f"Failed login attempt for {username!r}")
            return self._result(session, AuthError.INVALID_CREDENTIALS)

        verified = SessionState(username=self.credential.username, password_verified=True)
        logger.info(f"Password verification successful for {verified.username}")
        return self._result(verified)

    def begin_setup(self, session: Optional[SessionState]) -> AuthResult:
        """Start enrollment, or keep using the session's still-live PendingSetup."""
        session = session or ANONYMOUS
        if self.state_of(session) is not AuthState.MFA_SETUP_REQUIRED:
            return self._result(session, AuthError.NOT_ALLOWED)

        setup = self.registry.get(session.pending_setup_id)
        if setup is not None and setup.username == session.username:
            logger.info(f"Reusing existing MFA setup {redact_setup_id(setup.setup_id)} for {session.username}")
        else:
            setup = self.registry.begin(session.username)
        return self._result(replace(session, pending_setup_id=setup.setup_id), setup=setup)

    def complete_setup(self, session: Optional[SessionState], code: str) -> AuthResult:
        session = session or ANONYMOUS
        if self.state_of(session) is not AuthState.MFA_SETUP_REQUIRED or not session.pending_setup_id:
            return self._result(session, AuthError.NOT_ALLOWED)

        outcome = self.registry.complete(session.pending_setup_id, code, username=session.username)
        if outcome.error is SetupError.NOT_FOUND:
            logger.warning(f"MFA setup expired for {session.username}")
            return self._result(replace(session, pending_setup_id=None), AuthError.SETUP_EXPIRED)
        if not outcome.ok:
            logger.warning(f"MFA setup failed for {session.username}: {outcome.error.value}")
            return self._result(session, AuthError.INVALID_CODE)

        logger.info(f"MFA setup completed and user authenticated: {session.username}")
        return self._result(SessionState(username=session.username, authenticated=True))

    def verify_mfa(self, session: Optional[SessionState], code: str) -> AuthResult:
        session = session or ANONYMOUS
        if self.state_of(session) is not AuthState.MFA_PENDING:
            return self._result(session, AuthError.NOT_ALLOWED)

        secret = self.secret_store.get(session.username)
        if secret is None or not totp.verify(secret, code, self.clock(), self.window):
            logger.warning(f"Failed MFA verification for {session.username}")
            return self._result(session, AuthError.INVALID_CODE)

        logger.info(f"Successful MFA authentication for {session.username}")
        return self._result(SessionState(username=session.username, authenticated=True))

    def reset_mfa(self, username: str) -> bool:
        """Administrative reset: forget the user's secret and pending setups.

        Sessions already authenticated stay valid until they expire or log
        out; the next password login for the user lands on setup again.
        """
        had_mfa = self.secret_store.delete(username)
        self.registry.cleanup_user(username)
        logger.info(f"MFA reset for {username} (had_mfa={had_mfa})")
        return had_mfa
