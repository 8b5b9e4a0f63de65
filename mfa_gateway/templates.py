from html import escape
from typing import Optional

from fastapi.responses import HTMLResponse

_STYLE = """
        :root {
            --bg: #f1f5f9;
            --card: #ffffff;
            --text: #1e293b;
            --muted: #64748b;
            --accent: #2563eb;
            --accent-hover: #1d4ed8;
            --error: #dc2626;
            --border: #e2e8f0;
            --radius: 12px;
        }
        * { margin: 0; padding: 0; box-sizing: border-box; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: var(--bg);
            color: var(--text);
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            padding: 24px;
        }
        .card {
            background: var(--card);
            border: 1px solid var(--border);
            border-radius: var(--radius);
            padding: 32px;
            width: 100%;
            max-width: 420px;
            box-shadow: 0 10px 30px rgba(15, 23, 42, 0.08);
        }
        h1 { font-size: 22px; margin-bottom: 8px; }
        p { color: var(--muted); font-size: 14px; margin-bottom: 16px; line-height: 1.5; }
        label { display: block; font-size: 13px; font-weight: 600; margin-bottom: 6px; }
        input {
            width: 100%;
            padding: 12px;
            border: 1px solid var(--border);
            border-radius: 8px;
            font-size: 15px;
            margin-bottom: 16px;
        }
        input.code { letter-spacing: 6px; text-align: center; font-size: 22px; }
        button {
            width: 100%;
            padding: 12px;
            background: var(--accent);
            color: #fff;
            border: none;
            border-radius: 8px;
            font-size: 15px;
            font-weight: 600;
            cursor: pointer;
        }
        button:hover { background: var(--accent-hover); }
        .error {
            color: var(--error);
            background: #fef2f2;
            border: 1px solid #fecaca;
            border-radius: 8px;
            padding: 10px 12px;
            font-size: 13px;
            margin-bottom: 16px;
        }
        .qr { display: block; margin: 0 auto 16px; width: 200px; height: 200px; }
        .secret {
            font-family: ui-monospace, SFMono-Regular, Menlo, monospace;
            background: #f8fafc;
            border: 1px dashed var(--border);
            border-radius: 8px;
            padding: 10px;
            word-break: break-all;
            font-size: 14px;
            margin-bottom: 16px;
            text-align: center;
        }
        .links { margin-top: 16px; text-align: center; font-size: 13px; }
        .links a { color: var(--accent); text-decoration: none; }
        .links button { background: none; color: var(--accent); width: auto; padding: 0; font-size: 13px; font-weight: 400; }
"""


# Gateway pages carry no scripts; upstream responses keep their own policy.
SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; style-src 'self' 'unsafe-inline'; script-src 'self'; "
        "img-src 'self' data:; frame-ancestors 'self'"
    ),
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


def _html(content: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(content, status_code=status_code, headers=SECURITY_HEADERS)


def _page(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(title)} | HTTPS Proxy</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
{body}
    </div>
</body>
</html>
"""


def _error_block(message: Optional[str]) -> str:
    return f'        <div class="error">{escape(message)}</div>\n' if message else ""


_LOGOUT_LINK = """
        <form class="links" method="post" action="/auth/logout">
            <button type="submit">Sign in as someone else</button>
        </form>"""


def get_login_html(error: Optional[str] = None) -> HTMLResponse:
    body = f"""
        <h1>Sign in</h1>
        <p>This service is protected. Enter your credentials to continue.</p>
{_error_block(error)}        <form method="post" action="/auth/login" autocomplete="on">
            <label for="username">Username</label>
            <input id="username" name="username" type="text" autocomplete="username" required autofocus>
            <label for="password">Password</label>
            <input id="password" name="password" type="password" autocomplete="current-password" required>
            <button type="submit">Continue</button>
        </form>"""
    return _html(_page("Sign in", body))


def get_mfa_setup_html(username: str, secret: str, qr_code: str, uri: str, error: Optional[str] = None) -> HTMLResponse:
    body = f"""
        <h1>Set up two-factor authentication</h1>
        <p>Scan the QR code with an authenticator app for <strong>{escape(username)}</strong>,
        then enter the 6-digit code it shows.</p>
{_error_block(error)}        <img class="qr" src="{escape(qr_code)}" alt="Authenticator QR code">
        <p>Can't scan? Enter this key manually:</p>
        <div class="secret">{escape(secret)}</div>
        <form method="post" action="/auth/mfa-setup" autocomplete="off">
            <label for="code">Verification code</label>
            <input id="code" name="code" class="code" type="text" inputmode="numeric" maxlength="9" required autofocus>
            <button type="submit">Verify and continue</button>
        </form>
        <p class="links"><a href="{escape(uri)}">Open in authenticator app</a></p>{_LOGOUT_LINK}"""
    return _html(_page("Two-factor setup", body))


def get_mfa_verify_html(username: str, error: Optional[str] = None) -> HTMLResponse:
    body = f"""
        <h1>Two-factor verification</h1>
        <p>Enter the 6-digit code from your authenticator app for <strong>{escape(username)}</strong>.</p>
{_error_block(error)}        <form method="post" action="/auth/mfa-verify" autocomplete="off">
            <label for="code">Verification code</label>
            <input id="code" name="code" class="code" type="text" inputmode="numeric" maxlength="9" required autofocus>
            <button type="submit">Verify</button>
        </form>{_LOGOUT_LINK}"""
    return _html(_page("Verify", body))


def get_proxy_error_html(message: str, code: str, status_code: int) -> HTMLResponse:
    body = f"""
        <h1>Service Unavailable</h1>
        <p>{escape(message)}</p>
        <div class="secret">Error Code: {escape(code)}</div>
        <p class="links"><a href="/auth/login">Return to Login</a></p>"""
    return _html(_page("Service Unavailable", body), status_code=status_code)
