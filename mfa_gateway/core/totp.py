"""Time-based one-time password engine (RFC 6238, HMAC-SHA1, 6 digits, 30s step).

All functions are pure: the caller supplies the timestamp, which the gateway
always takes from the server clock.
"""

import re
import time
from typing import Optional

import pyotp
from pyotp.utils import strings_equal

STEP_SECONDS = 30
DIGITS = 6
DEFAULT_WINDOW = 2
SECRET_LENGTH = 32  # base32 characters, 160 bits

_NON_DIGITS = re.compile(r"\D")


def time_step(timestamp: float) -> int:
    return int(timestamp // STEP_SECONDS)


def normalize_code(candidate: Optional[str]) -> Optional[str]:
    """Strip everything but digits; return None unless exactly six remain."""
    if candidate is None:
        return None
    digits = _NON_DIGITS.sub("", str(candidate))
    if len(digits) != DIGITS:
        return None
    return digits


def random_secret() -> str:
    """Generate a new base32 shared secret from the OS CSPRNG."""
    return pyotp.random_base32(length=SECRET_LENGTH)


def is_valid_secret(secret: str) -> bool:
    try:
        pyotp.TOTP(secret).byte_secret()
    except (ValueError, TypeError):
        return False
    return bool(secret)


def _code_at_step(secret: str, step: int) -> str:
    return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).generate_otp(step)


def generate(secret: str, timestamp: float) -> str:
    """Return the zero-padded 6-digit code for the step containing ``timestamp``."""
    return _code_at_step(secret, time_step(timestamp))


def verify(secret: str, candidate: Optional[str], timestamp: float, window: int = DEFAULT_WINDOW) -> bool:
    """Accept ``candidate`` if it matches any step in ``[step - window, step + window]``.

    Malformed candidates are rejected, never raised. Every step in the window
    is compared so the running time does not depend on where a match occurs.
    """
    code = normalize_code(candidate)
    if code is None:
        return False
    step = time_step(timestamp)
    matched = False
    for offset in range(-window, window + 1):
        if step + offset < 0:
            continue
        if strings_equal(code, _code_at_step(secret, step + offset)):
            matched = True
    return matched


def provisioning_uri(secret: str, username: str, issuer: str) -> str:
    """Build the ``otpauth://totp/...`` URI scanned by authenticator apps."""
    return pyotp.TOTP(secret, digits=DIGITS, interval=STEP_SECONDS).provisioning_uri(
        name=username,
        issuer_name=issuer,
    )


def time_info(timestamp: Optional[float] = None) -> dict:
    """Server clock diagnostics used by the development debug endpoint."""
    now = time.time() if timestamp is None else timestamp
    whole = int(now)
    return {
        "utc_timestamp": whole,
        "utc_time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(whole)),
        "time_step": time_step(now),
        "time_remaining": STEP_SECONDS - (whole % STEP_SECONDS),
        "step_duration": STEP_SECONDS,
    }
