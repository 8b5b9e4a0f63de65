import json

import httpx
import pytest
from fastapi.testclient import TestClient

from mfa_gateway.core.config import Credential
from mfa_gateway.core.gateway import build_gateway
from mfa_gateway.core.security import hash_password, rate_limiter
from mfa_gateway.main import create_app

USERNAME = "alice"
PASSWORD = "correct horse battery staple"
UPSTREAM = "http://upstream.test"


def stream_response(status_code: int, content: bytes = b"", headers=None) -> httpx.Response:
    """Upstream reply with an unread body, as a network transport hands it back."""
    headers = dict(headers or {})
    headers.setdefault("Content-Length", str(len(content)))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(content))


def json_response(status_code: int, payload, headers=None) -> httpx.Response:
    headers = {"Content-Type": "application/json", **(headers or {})}
    return stream_response(status_code, json.dumps(payload).encode(), headers)


class FakeClock:
    """Injectable clock so TOTP steps and TTLs can be driven without sleeping."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="session")
def password_hash():
    # Low cost factor keeps the suite fast.
    return hash_password(PASSWORD, rounds=4)


@pytest.fixture
def credential(password_hash):
    return Credential(username=USERNAME, password_hash=password_hash)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset the shared limiter so hits from one test never leak into another."""
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def upstream_requests():
    return []


@pytest.fixture
def upstream_handler(upstream_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return json_response(
            200,
            {"path": request.url.path, "method": request.method},
            headers={"X-Upstream": "yes", "Cache-Control": "max-age=3600"},
        )
    return handler


@pytest.fixture
def gateway(tmp_path, credential, clock, upstream_handler):
    return build_gateway(
        credential,
        db_path=str(tmp_path / "gateway.db"),
        public_paths=["/public"],
        proxy_target=UPSTREAM,
        transport=httpx.MockTransport(upstream_handler),
        debug_routes=True,
        clock=clock,
    )


@pytest.fixture
def client(gateway):
    # Session cookies are Secure, so talk to the app over https.
    return TestClient(create_app(gateway), base_url="https://testserver", follow_redirects=False)
