from __future__ import annotations

import secrets
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import ValidationError

from metrics_relay.errors import AuthError, UpstreamFailure
from metrics_relay.schema import GoogleUserInfo, OAuthTokenResponse
from metrics_relay.settings import RelaySettings


logger = structlog.get_logger(__name__)

HTTP_TIMEOUT_SECONDS = 30.0


def _error_body(resp: httpx.Response) -> str:
    text = (resp.text or "").strip()
    return text[:2000] if text else f"HTTP {resp.status_code}"


def new_oauth_state() -> str:
    return secrets.token_urlsafe(32)


def build_authorization_url(settings: RelaySettings, *, state: str) -> str:
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.oauth_redirect_uri,
        "response_type": "code",
        "scope": settings.oauth_scope,
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{settings.google_auth_url}?{urlencode(params)}"


async def exchange_code_for_tokens(
    client: httpx.AsyncClient, settings: RelaySettings, *, code: str
) -> OAuthTokenResponse:
    try:
        resp = await client.post(
            settings.google_token_url,
            data={
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.oauth_redirect_uri,
            },
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise AuthError(f"Token exchange failed: {type(exc).__name__}: {exc}") from exc
    if not resp.is_success:
        logger.warning("Token exchange rejected", status_code=resp.status_code)
        raise AuthError(f"Token exchange failed: {_error_body(resp)}")
    try:
        return OAuthTokenResponse.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise AuthError(f"Invalid response format from OAuth API: {exc}") from exc


async def get_user_info(client: httpx.AsyncClient, settings: RelaySettings, *, access_token: str) -> GoogleUserInfo:
    try:
        resp = await client.get(
            settings.google_userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise AuthError(f"Failed to get user info: {type(exc).__name__}: {exc}") from exc
    if not resp.is_success:
        logger.warning("Userinfo request rejected", status_code=resp.status_code)
        raise AuthError("Failed to get user info")
    try:
        return GoogleUserInfo.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise AuthError(f"Invalid user info response: {exc}") from exc


async def refresh_access_token(
    client: httpx.AsyncClient, settings: RelaySettings, *, refresh_token: str
) -> OAuthTokenResponse:
    try:
        resp = await client.post(
            settings.google_token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
            },
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise UpstreamFailure(f"Failed to refresh access token: {type(exc).__name__}: {exc}") from exc
    if not resp.is_success:
        raise UpstreamFailure(f"Token refresh failed: {_error_body(resp)}")
    try:
        return OAuthTokenResponse.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise UpstreamFailure(f"Invalid response format from OAuth API: {exc}") from exc
