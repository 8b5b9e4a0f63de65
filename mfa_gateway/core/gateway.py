import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from mfa_gateway.core import config
from mfa_gateway.core.auth_flow import AuthFlow
from mfa_gateway.core.config import Credential
from mfa_gateway.core.proxy import UpstreamProxy
from mfa_gateway.core.secret_store import SecretStore
from mfa_gateway.core.sessions import SessionStore
from mfa_gateway.core.setup_registry import SetupRegistry

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    """Explicitly owned components shared by every request handler."""

    credential: Credential
    secret_store: SecretStore
    registry: SetupRegistry
    sessions: SessionStore
    flow: AuthFlow
    proxy: UpstreamProxy
    public_paths: List[str] = field(default_factory=lambda: list(config.DEFAULT_PUBLIC_PATHS))
    db_path: Optional[str] = None
    cookie_name: str = "gateway_session"
    cookie_secure: bool = True
    debug_routes: bool = False


def build_gateway(
    credential: Credential,
    db_path: Optional[str] = None,
    public_paths: Optional[List[str]] = None,
    proxy_target: str = config.PROXY_TARGET,
    proxy_timeout: float = config.PROXY_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    issuer: str = config.MFA_ISSUER,
    window: int = config.MFA_WINDOW,
    setup_ttl_seconds: int = config.MFA_SETUP_TTL_SECONDS,
    session_timeout_seconds: int = config.SESSION_TIMEOUT_MINUTES * 60,
    cookie_name: str = config.SESSION_COOKIE_NAME,
    cookie_secure: bool = config.SESSION_COOKIE_SECURE,
    debug_routes: bool = False,
    clock: Callable[[], float] = time.time,
) -> Gateway:
    secret_store = SecretStore.open(db_path)
    registry = SetupRegistry(secret_store, issuer=issuer, ttl_seconds=setup_ttl_seconds, window=window, clock=clock)
    return Gateway(
        credential=credential,
        secret_store=secret_store,
        registry=registry,
        sessions=SessionStore(timeout_seconds=session_timeout_seconds, clock=clock),
        flow=AuthFlow(credential, secret_store, registry, window=window, clock=clock),
        proxy=UpstreamProxy(proxy_target, timeout=proxy_timeout, session_cookie_name=cookie_name, transport=transport),
        public_paths=list(public_paths) if public_paths is not None else list(config.DEFAULT_PUBLIC_PATHS),
        db_path=db_path,
        cookie_name=cookie_name,
        cookie_secure=cookie_secure,
        debug_routes=debug_routes,
    )


def build_gateway_from_env() -> Gateway:
    """Assemble the gateway from environment configuration.

    Raises ConfigurationError when no usable credential is configured.
    """
    credential = parse_credential_or_fail()
    gateway = build_gateway(
        credential,
        db_path=config.AUTH_DB_PATH,
        public_paths=config.parse_public_paths(config.PUBLIC_PATHS),
        debug_routes=not config.is_production(),
    )
    env_secrets = config.parse_secret_mapping(config.MFA_SECRETS)
    if env_secrets:
        gateway.secret_store.load(env_secrets)
        logger.info(f"Loaded MFA secrets from environment for users: {sorted(env_secrets)}")
    logger.info(f"Gateway configured for {credential.username} -> {gateway.proxy.target}")
    return gateway


def parse_credential_or_fail() -> Credential:
    try:
        return config.parse_user_credentials(config.USER_CREDENTIALS)
    except config.ConfigurationError as exc:
        logger.error(str(exc))
        raise
