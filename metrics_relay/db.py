from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

from metrics_relay.settings import RelaySettings


SCHEMA_VERSION = 2
GOOGLE_PROVIDER = "google"


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def ensure_schema(settings: RelaySettings) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return any(str(r["name"]) == str(column) for r in rows)


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          email TEXT NOT NULL,
          name TEXT NOT NULL DEFAULT '',
          picture TEXT NOT NULL DEFAULT '',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          type TEXT NOT NULL DEFAULT 'oauth',
          provider TEXT NOT NULL,
          provider_account_id TEXT NOT NULL,
          access_token TEXT,
          refresh_token TEXT,
          expires_at INTEGER,
          token_type TEXT,
          scope TEXT,
          PRIMARY KEY (provider, provider_account_id)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
          token TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          expires_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitor_configs (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          script_id TEXT NOT NULL,
          webhook_url TEXT NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitor_logs (
          id TEXT PRIMARY KEY,
          config_id TEXT NOT NULL REFERENCES monitor_configs(id) ON DELETE CASCADE,
          error_count INTEGER NOT NULL DEFAULT 0,
          notification_sent INTEGER NOT NULL DEFAULT 0,
          error_details TEXT,
          check_time_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id, provider);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_configs_user_active ON monitor_configs(user_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_config_time ON monitor_logs(config_id, check_time_ts DESC);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 records the webhook outcome separately from notification_sent:
    'delivered', 'failed', or NULL when no delivery was attempted.
    """
    if not _column_exists(conn, "monitor_logs", "delivery_status"):
        conn.execute("ALTER TABLE monitor_logs ADD COLUMN delivery_status TEXT;")


# -----------------
# Identity
# -----------------
def save_login(
    settings: RelaySettings,
    *,
    user_id: str,
    email: str,
    name: str,
    picture: str,
    access_token: str,
    refresh_token: str | None,
    expires_in: int,
    scope: str,
    session_token: str,
) -> float:
    """
    Upsert the user and its Google account, then open a session. Returns the session expiry.

    All three writes share one transaction so a failed login never leaves an account
    pointing at tokens without a session (or the other way round).
    """
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        expires_ts = now + float(settings.session_max_age_seconds)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            conn.execute(
                """
                INSERT INTO users (id, email, name, picture, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  email=excluded.email,
                  name=excluded.name,
                  picture=excluded.picture,
                  updated_at_ts=excluded.updated_at_ts
                """,
                (user_id, email, name, picture, now, now),
            )
            conn.execute(
                """
                INSERT INTO accounts (
                  user_id, type, provider, provider_account_id, access_token, refresh_token, expires_at,
                  token_type, scope
                ) VALUES (?, 'oauth', ?, ?, ?, ?, ?, 'Bearer', ?)
                ON CONFLICT(provider, provider_account_id) DO UPDATE SET
                  user_id=excluded.user_id,
                  access_token=excluded.access_token,
                  refresh_token=excluded.refresh_token,
                  expires_at=excluded.expires_at,
                  token_type=excluded.token_type,
                  scope=excluded.scope
                """,
                (
                    user_id,
                    GOOGLE_PROVIDER,
                    user_id,
                    access_token,
                    refresh_token or None,
                    int(now) + int(expires_in),
                    scope,
                ),
            )
            conn.execute(
                "INSERT INTO sessions (token, user_id, expires_ts) VALUES (?, ?, ?)",
                (session_token, user_id, expires_ts),
            )
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return expires_ts
    finally:
        conn.close()


def get_session_user(settings: RelaySettings, *, token: str) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            """
            SELECT u.id, u.email, u.name, u.picture, s.expires_ts
            FROM sessions s
            JOIN users u ON u.id=s.user_id
            WHERE s.token=? AND s.expires_ts > ?
            """,
            (token, _utc_ts()),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def delete_session(settings: RelaySettings, *, token: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute("DELETE FROM sessions WHERE token=?", (token,))
        return int(res.rowcount or 0) > 0
    finally:
        conn.close()


# -----------------
# Monitor configs
# -----------------
def list_active_configs(settings: RelaySettings, *, user_id: str) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT id, user_id, script_id, webhook_url, is_active, created_at_ts, updated_at_ts
            FROM monitor_configs
            WHERE user_id=? AND is_active=1
            ORDER BY created_at_ts DESC
            """,
            (user_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def insert_config(settings: RelaySettings, *, user_id: str, script_id: str, webhook_url: str) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO monitor_configs (id, user_id, script_id, webhook_url, is_active, created_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (cid, user_id, script_id.strip(), webhook_url.strip(), now, now),
        )
        return {
            "id": cid,
            "user_id": user_id,
            "script_id": script_id.strip(),
            "webhook_url": webhook_url.strip(),
            "is_active": 1,
            "created_at_ts": now,
            "updated_at_ts": now,
        }
    finally:
        conn.close()


def get_config_for_run(settings: RelaySettings, *, user_id: str, config_id: str) -> dict[str, Any] | None:
    """A user-owned config joined with the refresh token of the owner's Google account."""
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            """
            SELECT mc.*, a.refresh_token, a.provider
            FROM monitor_configs mc
            JOIN accounts a ON a.user_id=mc.user_id
            WHERE mc.id=? AND mc.user_id=? AND a.provider=?
            """,
            (config_id, user_id, GOOGLE_PROVIDER),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_configs_for_sweep(settings: RelaySettings) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT
              mc.id, mc.user_id, mc.script_id, mc.webhook_url, mc.is_active, mc.created_at_ts, mc.updated_at_ts,
              a.refresh_token, a.provider
            FROM monitor_configs mc
            JOIN accounts a ON a.user_id=mc.user_id
            WHERE mc.is_active=1 AND a.provider=?
            ORDER BY mc.created_at_ts ASC
            """,
            (GOOGLE_PROVIDER,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


# -----------------
# Monitor logs
# -----------------
def insert_log(
    settings: RelaySettings,
    *,
    config_id: str,
    error_details: str,
    error_count: int = 0,
    notification_sent: bool = False,
    delivery_status: str | None = None,
) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        lid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO monitor_logs (
              id, config_id, error_count, notification_sent, error_details, check_time_ts, delivery_status
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (lid, config_id, int(error_count), 1 if notification_sent else 0, error_details, now, delivery_status),
        )
        return {
            "id": lid,
            "config_id": config_id,
            "error_count": int(error_count),
            "notification_sent": 1 if notification_sent else 0,
            "error_details": error_details,
            "check_time_ts": now,
            "delivery_status": delivery_status,
        }
    finally:
        conn.close()


def list_logs(settings: RelaySettings, *, user_id: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT ml.*, mc.script_id, mc.webhook_url
            FROM monitor_logs ml
            JOIN monitor_configs mc ON mc.id=ml.config_id
            WHERE mc.user_id=?
            ORDER BY ml.check_time_ts DESC, ml.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, int(limit), int(offset)),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
