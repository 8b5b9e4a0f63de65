import os
import json
import logging
from dataclasses import dataclass
from typing import Dict, List

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class ConfigurationError(RuntimeError):
    """Raised when the gateway cannot start with the given configuration."""


def getenv_multi(default: str, *names: str) -> str:
    """Return the first found environment value among provided names."""
    for name in names:
        val = os.getenv(name)
        if val is not None and val != "":
            return val
    return default


LOG_LEVEL = getenv_multi("INFO", "GW_LOG_LEVEL", "LOG_LEVEL")
AUTH_DB_PATH = getenv_multi("/app/data/gateway.db", "GW_DB_PATH", "AUTH_DB_PATH")
GATEWAY_ENV = getenv_multi("production", "GW_ENV", "GATEWAY_ENV", "NODE_ENV")

# Upstream target
TARGET_HOST = getenv_multi("localhost", "GW_TARGET_HOST", "TARGET_HOST")
HTTP_PORT = int(getenv_multi("8080", "GW_HTTP_PORT", "HTTP_PORT"))
PROXY_TARGET = getenv_multi(f"http://{TARGET_HOST}:{HTTP_PORT}", "GW_PROXY_TARGET", "PROXY_TARGET").rstrip("/")
PROXY_TIMEOUT_SECONDS = float(getenv_multi("30", "GW_PROXY_TIMEOUT", "PROXY_TIMEOUT"))

# Listener
GATEWAY_HOST = getenv_multi("0.0.0.0", "GW_HOST", "GATEWAY_HOST")
GATEWAY_PORT = int(getenv_multi(str(HTTP_PORT + 1), "GW_PORT", "GATEWAY_PORT", "HTTPS_PORT"))
SSL_CERT = getenv_multi("/app/certs/cert.pem", "GW_SSL_CERT", "SSL_CERT")
SSL_KEY = getenv_multi("/app/certs/key.pem", "GW_SSL_KEY", "SSL_KEY")
SSL_ENABLED = getenv_multi("true", "GW_SSL_ENABLED", "SSL_ENABLED").lower() in ("true", "1", "yes")

# Credentials and MFA
USER_CREDENTIALS = getenv_multi("", "GW_USER_CREDENTIALS", "USER_CREDENTIALS")
MFA_SECRETS = getenv_multi("", "GW_MFA_SECRETS", "MFA_SECRETS")
MFA_ISSUER = getenv_multi("HTTPS Proxy Service", "GW_MFA_ISSUER", "MFA_ISSUER")
MFA_WINDOW = int(getenv_multi("2", "GW_MFA_WINDOW", "MFA_WINDOW"))
MFA_SETUP_TTL_SECONDS = int(getenv_multi("1800", "GW_MFA_SETUP_TTL", "MFA_SETUP_TTL"))

# Sessions
SESSION_TIMEOUT_MINUTES = int(getenv_multi("1440", "GW_SESSION_TIMEOUT", "SESSION_TIMEOUT"))  # 24h default
SESSION_COOKIE_NAME = getenv_multi("gateway_session", "GW_SESSION_COOKIE_NAME", "SESSION_COOKIE_NAME")
SESSION_COOKIE_SECURE = getenv_multi("true", "GW_SESSION_COOKIE_SECURE", "SESSION_COOKIE_SECURE").lower() in ("true", "1", "yes")

# Admission
PUBLIC_PATHS = getenv_multi("", "GW_PUBLIC_PATHS", "PUBLIC_PATHS")
DEFAULT_PUBLIC_PATHS = [
    "/api/auth",
    "/login",
    "/register",
    "/public",
    "/assets",
    "/static",
    "/favicon.ico",
    "/robots.txt",
]

RATE_LIMIT_MAX_REQUESTS = int(getenv_multi("30", "GW_RATE_LIMIT_MAX_REQUESTS", "RATE_LIMIT_MAX_REQUESTS"))
RATE_LIMIT_WINDOW_SECONDS = int(getenv_multi("60", "GW_RATE_LIMIT_WINDOW", "RATE_LIMIT_WINDOW"))


def is_production() -> bool:
    return GATEWAY_ENV.lower() == "production"


@dataclass(frozen=True)
class Credential:
    username: str
    password_hash: str


def parse_user_credentials(raw: str) -> Credential:
    """Parse ``username:bcrypt_hash`` into the single configured credential."""
    if not raw:
        raise ConfigurationError("USER_CREDENTIALS environment variable must be set (username:password_hash)")
    username, sep, password_hash = raw.partition(":")
    username = username.strip()
    password_hash = password_hash.strip()
    if not sep or not username or not password_hash:
        raise ConfigurationError("Invalid USER_CREDENTIALS format. Expected: username:password_hash")
    if not password_hash.startswith("$2"):
        raise ConfigurationError("USER_CREDENTIALS password hash must be a bcrypt hash")
    return Credential(username=username, password_hash=password_hash)


def parse_public_paths(raw: str) -> List[str]:
    """Decode the PUBLIC_PATHS JSON array, falling back to the defaults when malformed."""
    if not raw:
        return list(DEFAULT_PUBLIC_PATHS)
    try:
        paths = json.loads(raw)
    except ValueError as exc:
        logger.warning(f"Invalid PUBLIC_PATHS format, using defaults: {exc}")
        return list(DEFAULT_PUBLIC_PATHS)
    if not isinstance(paths, list) or not all(isinstance(p, str) and p.startswith("/") for p in paths):
        logger.warning("PUBLIC_PATHS must be a JSON array of absolute paths, using defaults")
        return list(DEFAULT_PUBLIC_PATHS)
    logger.info(f"Using custom public paths from environment: {paths}")
    return paths


def parse_secret_mapping(raw: str) -> Dict[str, str]:
    """Decode the MFA_SECRETS JSON object (username -> base32 secret)."""
    if not raw:
        return {}
    try:
        mapping = json.loads(raw)
    except ValueError as exc:
        logger.error(f"Failed to parse MFA_SECRETS: {exc}")
        return {}
    if not isinstance(mapping, dict):
        logger.error("MFA_SECRETS must be a JSON object of username -> secret")
        return {}
    return {str(k): str(v) for k, v in mapping.items()}
