import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse

from mfa_gateway.core import totp
from mfa_gateway.core.database import get_db
from mfa_gateway.core.gateway import build_gateway
from mfa_gateway.core.security import audit_log
from mfa_gateway.main import create_app
from mfa_gateway.routers import auth as auth_router
from mfa_gateway.routers import proxy as proxy_router

from conftest import PASSWORD, USERNAME, stream_response

SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
JSON = {"Accept": "application/json"}


def _login(client, password=PASSWORD, headers=None):
    return client.post("/auth/login", data={"username": USERNAME, "password": password}, headers=headers)


def _enroll(client, clock):
    """Log in and finish enrollment; return the confirmed secret."""
    assert _login(client).headers["location"] == "/auth/mfa-setup"
    setup = client.get("/auth/mfa-setup", headers=JSON).json()
    res = client.post("/auth/mfa-setup", data={"code": totp.generate(setup["secret"], clock())})
    assert res.status_code == 303
    assert res.headers["location"] == "/"
    return setup["secret"]


@pytest.fixture
def make_client(tmp_path, credential, clock):
    def factory(handler=None, proxy_target="http://upstream.test", **kwargs):
        transport = httpx.MockTransport(handler) if handler else None
        gateway = build_gateway(
            credential,
            db_path=str(tmp_path / "other.db"),
            public_paths=["/public"],
            proxy_target=proxy_target,
            transport=transport,
            clock=clock,
            **kwargs,
        )
        return TestClient(create_app(gateway), base_url="https://testserver", follow_redirects=False)
    return factory


def test_unauthenticated_browser_gets_login_redirect(client, upstream_requests):
    res = client.get("/private")
    assert res.status_code == 302
    assert res.headers["location"] == "/auth/login"
    assert upstream_requests == []


def test_unauthenticated_json_client_gets_401(client, upstream_requests):
    res = client.get("/api/data", headers=JSON)
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized", "message": "Authentication required", "redirectTo": "/auth/login"}
    assert upstream_requests == []


def test_public_path_is_forwarded_without_login(client, upstream_requests):
    res = client.get("/public/logo.png?v=2")
    assert res.status_code == 200
    assert res.json() == {"path": "/public/logo.png", "method": "GET"}
    assert upstream_requests[0].url.query == b"v=2"


def test_encoded_dot_segments_do_not_escape_public_prefix(client, clock, upstream_requests):
    res = client.get("/public/%2e%2e/private")
    assert res.status_code == 302
    assert res.headers["location"] == "/auth/login"
    assert upstream_requests == []

    _enroll(client, clock)
    res = client.get("/public/%2e%2e/private")
    assert res.status_code == 200
    assert res.json() == {"path": "/private", "method": "GET"}
    assert upstream_requests[-1].url.path == "/private"


def test_blocking_auth_work_runs_off_the_event_loop(client, gateway, monkeypatch):
    seen = []

    def on_worker_thread():
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return True
        return False

    submit_password = gateway.flow.submit_password

    def recording_submit(*args):
        seen.append(("submit_password", on_worker_thread()))
        return submit_password(*args)

    def recording_audit(*args):
        seen.append(("audit_log", on_worker_thread()))
        return audit_log(*args)

    monkeypatch.setattr(gateway.flow, "submit_password", recording_submit)
    monkeypatch.setattr(auth_router, "audit_log", recording_audit)
    monkeypatch.setattr(proxy_router, "audit_log", recording_audit)

    _login(client)
    client.get("/private", headers=JSON)
    assert seen == [("submit_password", True), ("audit_log", True), ("audit_log", True)]


def test_login_page_renders(client):
    res = client.get("/auth/login")
    assert res.status_code == 200
    assert "Sign in" in res.text


def test_gateway_pages_send_browser_security_headers(client, upstream_requests):
    pages = [client.get("/auth/login")]
    _login(client)
    pages.append(client.get("/auth/mfa-setup"))

    for page in pages:
        assert page.status_code == 200
        csp = page.headers["content-security-policy"]
        assert "default-src 'self'" in csp
        assert "script-src 'self'" in csp
        assert "img-src 'self' data:" in csp
        assert page.headers["x-frame-options"] == "SAMEORIGIN"
        assert page.headers["x-content-type-options"] == "nosniff"

    # Upstream pages keep their own policy.
    forwarded = client.get("/public/page")
    assert "content-security-policy" not in forwarded.headers


def test_first_login_enrollment_then_forwarding(client, gateway, clock, upstream_requests):
    res = _login(client)
    assert res.status_code == 303
    assert res.headers["location"] == "/auth/mfa-setup"
    assert gateway.cookie_name in res.cookies

    page = client.get("/auth/mfa-setup")
    assert page.status_code == 200
    assert "data:image/png;base64," in page.text

    secret = _enroll_from_setup_page(client, gateway, clock)
    assert gateway.secret_store.get(USERNAME) == secret

    res = client.post("/api/items", content=b'{"name":"x"}', headers={"Content-Type": "application/json"})
    assert res.status_code == 200
    assert res.json() == {"path": "/api/items", "method": "POST"}
    assert res.headers["x-upstream"] == "yes"
    assert res.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert res.headers["pragma"] == "no-cache"

    forwarded = upstream_requests[-1]
    assert forwarded.content == b'{"name":"x"}'
    assert forwarded.headers["x-forwarded-proto"] == "https"
    assert forwarded.headers["x-real-ip"] == "testclient"
    assert gateway.cookie_name not in forwarded.headers.get("cookie", "")


def _enroll_from_setup_page(client, gateway, clock):
    setup = client.get("/auth/mfa-setup", headers=JSON).json()
    # The page and the JSON view share the same pending setup.
    assert len(gateway.registry) == 1
    res = client.post("/auth/mfa-setup", data={"code": totp.generate(setup["secret"], clock())})
    assert res.headers["location"] == "/"
    return setup["secret"]


def test_setup_json_view(client, clock):
    _login(client)
    body = client.get("/auth/mfa-setup", headers=JSON).json()
    assert body["success"] is True
    assert body["uri"].startswith("otpauth://totp/")
    assert body["qr_code"].startswith("data:image/png;base64,")
    assert body["expires_in"] == 1800
    assert totp.is_valid_secret(body["secret"])


def test_wrong_setup_code_redirects_back_with_error(client, clock):
    _login(client)
    setup = client.get("/auth/mfa-setup", headers=JSON).json()

    res = client.post("/auth/mfa-setup", data={"code": "abc"})
    assert res.status_code == 303
    assert res.headers["location"] == "/auth/mfa-setup?error=1"

    # Same pending setup is still usable.
    again = client.get("/auth/mfa-setup", headers=JSON).json()
    assert again["setup_id"] == setup["setup_id"]
    res = client.post("/auth/mfa-setup", data={"code": totp.generate(setup["secret"], clock())})
    assert res.headers["location"] == "/"


def test_expired_setup_starts_over(client, clock):
    _login(client)
    setup = client.get("/auth/mfa-setup", headers=JSON).json()
    clock.advance(1800)

    res = client.post("/auth/mfa-setup", data={"code": totp.generate(setup["secret"], clock())})
    assert res.headers["location"] == "/auth/mfa-setup?error=expired"

    fresh = client.get("/auth/mfa-setup", headers=JSON).json()
    assert fresh["setup_id"] != setup["setup_id"]


def test_returning_user_goes_to_verification(client, gateway, clock):
    gateway.secret_store.set(USERNAME, SECRET)

    res = _login(client)
    assert res.headers["location"] == "/auth/mfa-verify"
    assert client.get("/auth/mfa-setup").headers["location"] == "/auth/mfa-verify"
    assert "Two-factor verification" in client.get("/auth/mfa-verify").text

    code = totp.generate(SECRET, clock())
    wrong = f"{(int(code) + 500_000) % 1_000_000:06d}"
    res = client.post("/auth/mfa-verify", data={"code": wrong})
    assert res.headers["location"] == "/auth/mfa-verify?error=1"
    assert client.get("/private").status_code == 302

    res = client.post("/auth/mfa-verify", data={"code": code})
    assert res.headers["location"] == "/"
    assert client.get("/private").status_code == 200
    # Signed-in users skip the login form.
    assert client.get("/auth/login").headers["location"] == "/"


def test_wrong_password_sets_no_session(client, gateway):
    res = _login(client, password="nope")
    assert res.status_code == 303
    assert res.headers["location"] == "/auth/login?error=1"
    assert gateway.cookie_name not in res.cookies
    assert len(gateway.sessions) == 0


def test_json_login_reports_next_step(client):
    res = _login(client, headers=JSON)
    assert res.status_code == 200
    assert res.json() == {"success": True, "state": "mfa_setup_required", "next": "/auth/mfa-setup", "detail": None}

    res = _login(client, password="nope", headers=JSON)
    assert res.status_code == 401
    assert res.json()["success"] is False
    assert res.json()["detail"] == "Invalid username or password"


def test_verify_without_login_is_not_allowed(client):
    res = client.post("/auth/mfa-verify", data={"code": "123456"}, headers=JSON)
    assert res.status_code == 403
    assert res.json()["next"] == "/auth/login"


def test_login_rotates_session_token(client, gateway, clock):
    first = _login(client).cookies[gateway.cookie_name]
    second = _login(client).cookies[gateway.cookie_name]
    assert first != second
    assert gateway.sessions.get(first) is None
    assert gateway.sessions.get(second) is not None


def test_logout_ends_session(client, gateway, clock):
    _enroll(client, clock)
    assert client.get("/private").status_code == 200

    res = client.post("/auth/logout")
    assert res.status_code == 303
    assert res.headers["location"] == "/auth/login"
    assert len(gateway.sessions) == 0

    res = client.get("/private")
    assert res.status_code == 302
    assert res.headers["location"] == "/auth/login"


def test_audit_log_records_auth_events(client, gateway, clock):
    _login(client, password="nope")
    _enroll(client, clock)
    client.post("/auth/logout")

    conn = get_db(gateway.db_path)
    rows = conn.execute("SELECT action, status FROM audit_log ORDER BY id").fetchall()
    conn.close()
    events = [(r["action"], r["status"]) for r in rows]
    assert events == [
        ("LOGIN", "invalid_credentials"),
        ("LOGIN", "success"),
        ("MFA_SETUP_START", "qr_generated"),
        ("MFA_SETUP_VERIFY", "success"),
        ("LOGOUT", "success"),
    ]


def test_unknown_auth_route_is_not_proxied(client, upstream_requests):
    assert client.get("/auth/nothing-here").status_code == 404
    assert upstream_requests == []


@pytest.mark.parametrize("exc,status_code,code", [
    (httpx.ConnectError("refused"), 503, "CONNECTION_REFUSED"),
    (httpx.ReadTimeout("slow"), 504, "TIMEOUT"),
    (httpx.RemoteProtocolError("reset"), 502, "CONNECTION_RESET"),
])
def test_upstream_failures_are_mapped(make_client, exc, status_code, code):
    def handler(request):
        raise exc

    client = make_client(handler)
    res = client.get("/public/page", headers=JSON)
    assert res.status_code == status_code
    body = res.json()
    assert body["error"] == "Proxy Error"
    assert body["code"] == code

    html = client.get("/public/page")
    assert html.status_code == status_code
    assert code in html.text


def test_upstream_errors_are_passed_through(make_client):
    client = make_client(lambda request: stream_response(404, b"missing", {"Content-Type": "text/plain"}))
    res = client.get("/public/nope")
    assert res.status_code == 404
    assert res.text == "missing"


def test_websocket_without_session_is_denied(client):
    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with client.websocket_connect("/ws"):
            pass
    assert excinfo.value.status_code == 401


def test_websocket_to_unreachable_upstream_is_denied(make_client):
    client = make_client(proxy_target="http://127.0.0.1:1", proxy_timeout=5)
    with pytest.raises(WebSocketDenialResponse) as excinfo:
        with client.websocket_connect("/public/ws"):
            pass
    assert excinfo.value.status_code == 503


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["database"] == "ok"
    assert body["version"] == "1.0.0"


def test_proxy_status(client):
    body = client.get("/proxy-status").json()
    assert body["proxy"]["target"] == "http://upstream.test"
    assert body["proxy"]["target_health"]["status"] == "healthy"
    assert body["public_paths"] == ["/public"]


def test_debug_routes_hidden_in_production(make_client):
    client = make_client(debug_routes=False)
    assert client.get("/auth/mfa-debug").status_code == 404
    assert client.post("/auth/mfa-reset", data={"username": USERNAME}).status_code == 404


def test_mfa_debug_never_exposes_secrets(client, clock):
    _login(client)
    setup = client.get("/auth/mfa-setup", headers=JSON).json()
    res = client.get("/auth/mfa-debug")
    assert res.status_code == 200
    body = res.json()
    assert body["session"]["state"] == "mfa_setup_required"
    assert body["current_setup"]["setup_id"] == setup["setup_id"][:6] + "..."
    assert body["session"]["pending_setup_id"] == setup["setup_id"][:6] + "..."
    assert setup["setup_id"] not in res.text
    assert setup["secret"] not in res.text
    assert totp.generate(setup["secret"], clock()) not in res.text


def test_mfa_cleanup_drops_pending_setup(client, gateway):
    _login(client)
    client.get("/auth/mfa-setup", headers=JSON)
    res = client.post("/auth/mfa-cleanup")
    assert res.json()["cleaned_setups"] == 1
    assert len(gateway.registry) == 0


def test_mfa_reset_requires_username(client):
    res = client.post("/auth/mfa-reset")
    assert res.status_code == 400


def test_mfa_reset_forces_reenrollment(client, gateway, clock):
    _enroll(client, clock)
    res = client.post("/auth/mfa-reset")
    assert res.json()["had_mfa"] is True
    assert not gateway.secret_store.has(USERNAME)
    assert client.get("/private").status_code == 302

    assert _login(client).headers["location"] == "/auth/mfa-setup"


def test_denied_requests_are_audited(client, gateway):
    client.get("/private")
    client.get("/api/data", headers=JSON)

    conn = get_db(gateway.db_path)
    rows = conn.execute("SELECT action, status FROM audit_log ORDER BY id").fetchall()
    conn.close()
    assert [(r["action"], r["status"]) for r in rows] == [
        ("ACCESS_DENIED", "challenge_redirect"),
        ("ACCESS_DENIED", "reject_unauthorized"),
    ]
