from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


DEFAULT_SCOPE = "openid email profile https://www.googleapis.com/auth/script.metrics"
SESSION_MAX_AGE_SECONDS = 30 * 24 * 60 * 60


@dataclass(frozen=True)
class RelaySettings:
    db_path: str = field(default_factory=lambda: _env_str("METRICS_RELAY_DB_PATH", "/data/metrics-relay.db"))

    # Google OAuth client. The secret is only ever sent to the token endpoint.
    google_client_id: str = field(default_factory=lambda: _env_str("GOOGLE_CLIENT_ID", ""))
    google_client_secret: str = field(default_factory=lambda: _env_str("GOOGLE_CLIENT_SECRET", ""))
    oauth_redirect_uri: str = field(
        default_factory=lambda: _env_str("METRICS_RELAY_OAUTH_REDIRECT_URI", "http://localhost:8787/auth/callback")
    )
    oauth_scope: str = field(default_factory=lambda: _env_str("GOOGLE_OAUTH_SCOPE", DEFAULT_SCOPE))

    # Provider endpoints are overridable so tests can point them at a local fake.
    google_auth_url: str = field(
        default_factory=lambda: _env_str("GOOGLE_AUTH_URL", "https://accounts.google.com/o/oauth2/v2/auth")
    )
    google_token_url: str = field(default_factory=lambda: _env_str("GOOGLE_TOKEN_URL", "https://oauth2.googleapis.com/token"))
    google_userinfo_url: str = field(
        default_factory=lambda: _env_str("GOOGLE_USERINFO_URL", "https://www.googleapis.com/oauth2/v2/userinfo")
    )
    script_api_base_url: str = field(default_factory=lambda: _env_str("SCRIPT_API_BASE_URL", "https://script.googleapis.com"))

    # Browser frontend allowed by CORS and used as the post-login redirect target.
    frontend_origin: str = field(default_factory=lambda: _env_str("METRICS_RELAY_FRONTEND_ORIGIN", "http://localhost:5173"))

    # Sessions.
    session_max_age_seconds: int = field(
        default_factory=lambda: _env_int("METRICS_RELAY_SESSION_MAX_AGE_SECONDS", SESSION_MAX_AGE_SECONDS)
    )
    cookie_secure: bool = field(default_factory=lambda: _env_bool("METRICS_RELAY_COOKIE_SECURE", True))

    # Scheduled sweep. A non-empty cron expression wins over the interval.
    scheduler_enabled: bool = field(default_factory=lambda: _env_bool("METRICS_RELAY_SCHEDULER_ENABLED", True))
    sweep_interval_seconds: int = field(default_factory=lambda: _env_int("METRICS_RELAY_SWEEP_INTERVAL_SECONDS", 3600))
    sweep_cron: str = field(default_factory=lambda: _env_str("METRICS_RELAY_SWEEP_CRON", ""))

    log_level: str = field(default_factory=lambda: _env_str("METRICS_RELAY_LOG_LEVEL", "INFO"))
