from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from metrics_relay import db as dbm
from metrics_relay.settings import RelaySettings


LOGIN_CODE = "good-code"
GOOD_REFRESH_TOKEN = "rt-good"
FRESH_ACCESS_TOKEN = "at-fresh"
LOGIN_ACCESS_TOKEN = "at-login"

METRICS_PAYLOAD = {
    "activeUsers": [{"value": "3", "startTime": "2025-01-01T00:00:00Z", "endTime": "2025-01-02T00:00:00Z"}],
    "totalExecutions": [{"value": "42", "startTime": "2025-01-01T00:00:00Z", "endTime": "2025-01-02T00:00:00Z"}],
    "failedExecutions": [{"startTime": "2025-01-01T00:00:00Z", "endTime": "2025-01-02T00:00:00Z"}],
}


class _FakeGoogleHandler(BaseHTTPRequestHandler):
    """Token, userinfo and Apps Script metrics endpoints plus two webhook receivers."""

    login_code = LOGIN_CODE
    good_refresh_token = GOOD_REFRESH_TOKEN
    metrics_payload = METRICS_PAYLOAD

    webhooks: list[dict] = []
    metrics_requests: list[dict] = []
    token_requests: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send_json(self, status: int, obj: dict) -> None:
        body = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self) -> bytes:
        n = int(self.headers.get("Content-Length") or "0")
        return self.rfile.read(n) if n > 0 else b""

    def do_POST(self) -> None:  # noqa: N802
        path = urlparse(self.path).path
        raw = self._read_body()

        if path == "/token":
            form = {k: v[0] for k, v in parse_qs(raw.decode("utf-8")).items()}
            type(self).token_requests.append(form)
            grant = form.get("grant_type")
            if grant == "authorization_code" and form.get("code") == LOGIN_CODE:
                self._send_json(
                    200,
                    {
                        "access_token": LOGIN_ACCESS_TOKEN,
                        "refresh_token": "rt-from-login",
                        "expires_in": 3599,
                        "scope": "openid email profile",
                        "token_type": "Bearer",
                    },
                )
                return
            if grant == "refresh_token" and form.get("refresh_token") == GOOD_REFRESH_TOKEN:
                self._send_json(200, {"access_token": FRESH_ACCESS_TOKEN, "expires_in": 3599})
                return
            self._send_json(400, {"error": "invalid_grant"})
            return

        if path.startswith("/hook/"):
            type(self).webhooks.append({"path": path, "payload": json.loads(raw.decode("utf-8") or "null")})
            if path == "/hook/ok":
                self._send_json(200, {"ok": True})
            else:
                self._send_json(500, {"ok": False})
            return

        self._send_json(404, {"error": "not_found"})

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        auth = self.headers.get("Authorization") or ""

        if parsed.path == "/userinfo":
            if auth != f"Bearer {LOGIN_ACCESS_TOKEN}":
                self._send_json(401, {"error": "unauthorized"})
                return
            self._send_json(
                200,
                {
                    "id": "g-user-1",
                    "email": "ada@example.com",
                    "name": "Ada",
                    "picture": "https://example.com/ada.png",
                },
            )
            return

        if parsed.path.startswith("/v1/projects/") and parsed.path.endswith("/metrics"):
            script_id = parsed.path[len("/v1/projects/") : -len("/metrics")]
            type(self).metrics_requests.append(
                {"script_id": script_id, "query": parse_qs(parsed.query), "authorization": auth}
            )
            if auth != f"Bearer {FRESH_ACCESS_TOKEN}":
                self._send_json(401, {"error": {"code": 401, "message": "bad token"}})
                return
            if script_id == "missing":
                self._send_json(404, {"error": {"code": 404, "message": "Requested entity was not found."}})
                return
            if script_id == "garbage":
                self._send_json(200, {"unexpected": True})
                return
            self._send_json(200, METRICS_PAYLOAD)
            return

        self._send_json(404, {"error": "not_found"})


@pytest.fixture
def fake_google():
    handler = type("FakeGoogleHandler", (_FakeGoogleHandler,), {"webhooks": [], "metrics_requests": [], "token_requests": []})
    httpd = HTTPServer(("127.0.0.1", 0), handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    handler.base_url = f"http://{host}:{port}"
    try:
        yield handler
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture
def settings(tmp_path: Path, fake_google) -> RelaySettings:
    base = fake_google.base_url
    return RelaySettings(
        db_path=str(tmp_path / "metrics-relay.db"),
        google_client_id="client-id",
        google_client_secret="client-secret",
        oauth_redirect_uri="http://testserver/auth/callback",
        google_auth_url=f"{base}/auth",
        google_token_url=f"{base}/token",
        google_userinfo_url=f"{base}/userinfo",
        script_api_base_url=base,
        frontend_origin="https://frontend.example",
        cookie_secure=False,
        scheduler_enabled=False,
    )


def login_user(
    settings: RelaySettings,
    *,
    user_id: str = "user-1",
    email: str = "user1@example.com",
    refresh_token: str | None = GOOD_REFRESH_TOKEN,
    session_token: str | None = None,
) -> str:
    token = session_token or f"session-{user_id}"
    dbm.save_login(
        settings,
        user_id=user_id,
        email=email,
        name=user_id.title(),
        picture=f"https://example.com/{user_id}.png",
        access_token="at-old",
        refresh_token=refresh_token,
        expires_in=3600,
        scope="openid",
        session_token=token,
    )
    return token


@pytest.fixture
def login(settings: RelaySettings):
    """Create a logged-in user directly in the store and return its session token."""

    def _login(**kwargs) -> str:
        return login_user(settings, **kwargs)

    return _login
