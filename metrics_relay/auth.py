from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import Depends, Request

from metrics_relay.errors import AuthenticationRequired
from metrics_relay.identity import resolve_session
from metrics_relay.schema import SessionUser
from metrics_relay.settings import RelaySettings


logger = structlog.get_logger(__name__)

SESSION_COOKIE = "session"
STATE_COOKIE = "oauth_state"


def get_settings(req: Request) -> RelaySettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, RelaySettings):
        raise RuntimeError("Relay settings not configured")
    return settings


def session_token(req: Request) -> str:
    return (req.cookies.get(SESSION_COOKIE) or "").strip()


async def get_current_user(req: Request, settings: RelaySettings = Depends(get_settings)) -> SessionUser | None:
    token = session_token(req)
    if not token:
        return None
    try:
        return await asyncio.to_thread(resolve_session, settings, token)
    except Exception:
        logger.exception("Session validation error")
        return None


async def require_user(user: SessionUser | None = Depends(get_current_user)) -> SessionUser:
    if user is None:
        raise AuthenticationRequired()
    return user
