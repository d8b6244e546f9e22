from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass

import httpx
import structlog
from pydantic import ValidationError

from metrics_relay import db as dbm
from metrics_relay.google_oauth import (
    build_authorization_url,
    exchange_code_for_tokens,
    get_user_info,
    new_oauth_state,
)
from metrics_relay.errors import AuthError
from metrics_relay.schema import SessionUser
from metrics_relay.settings import RelaySettings


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LoginStart:
    url: str
    state: str


@dataclass(frozen=True)
class LoginResult:
    session_token: str
    expires_ts: float
    user: SessionUser


def begin_login(settings: RelaySettings) -> LoginStart:
    state = new_oauth_state()
    return LoginStart(url=build_authorization_url(settings, state=state), state=state)


async def complete_login(client: httpx.AsyncClient, settings: RelaySettings, *, code: str) -> LoginResult:
    """
    Exchange the authorization code, fetch the profile and persist user, account and session.

    Raises AuthError when the code is empty or either provider call does not succeed.
    """
    code = (code or "").strip()
    if not code:
        raise AuthError("Authorization code not found")

    tokens = await exchange_code_for_tokens(client, settings, code=code)
    profile = await get_user_info(client, settings, access_token=tokens.access_token)
    if not tokens.refresh_token:
        logger.warning("Provider returned no refresh token", user_id=profile.id)

    user = SessionUser(id=profile.id, email=profile.email, name=profile.name, picture=profile.picture)
    session_token = secrets.token_urlsafe(32)
    expires_ts = await asyncio.to_thread(
        dbm.save_login,
        settings,
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        scope=tokens.scope or settings.oauth_scope,
        session_token=session_token,
    )
    logger.info("Login completed", user_id=user.id)
    return LoginResult(session_token=session_token, expires_ts=expires_ts, user=user)


def resolve_session(settings: RelaySettings, token: str | None) -> SessionUser | None:
    t = (token or "").strip()
    if not t:
        return None
    row = dbm.get_session_user(settings, token=t)
    if row is None:
        return None
    try:
        return SessionUser.model_validate(row)
    except ValidationError:
        logger.warning("Session row has malformed user data")
        return None


def end_login(settings: RelaySettings, token: str | None) -> None:
    t = (token or "").strip()
    if t:
        dbm.delete_session(settings, token=t)
