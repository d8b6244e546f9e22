from __future__ import annotations

import asyncio
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from metrics_relay import db as dbm
from metrics_relay.auth import (
    SESSION_COOKIE,
    STATE_COOKIE,
    get_current_user,
    require_user,
    session_token,
)
from metrics_relay.errors import AuthError, NotFound, RelayError, ValidationFailed
from metrics_relay.identity import begin_login, complete_login, end_login
from metrics_relay.runner import USER_AGENT, check_config
from metrics_relay.schema import WEBHOOK_URL, CreateConfigRequest, SessionUser
from metrics_relay.scheduler import SweepScheduler
from metrics_relay.settings import RelaySettings


LOGGER = logging.getLogger("metrics-relay")

STATE_COOKIE_MAX_AGE_SECONDS = 10 * 60
DEFAULT_LOG_LIMIT = 50
MAX_LOG_LIMIT = 500
MISSING_CONFIG_FIELDS = "Missing required fields: script_id, webhook_url"
INVALID_WEBHOOK_URL = "Invalid webhook_url"


def _iso(ts: Any) -> str | None:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()
    except (TypeError, ValueError):
        return None


def _parse_int(raw: str | None, default: int) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return default


def _cors_headers(settings: RelaySettings) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": settings.frontend_origin,
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, Cookie",
        "Access-Control-Allow-Credentials": "true",
    }


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(settings: RelaySettings | None = None) -> FastAPI:
    app = FastAPI(title="GAS Metrics Relay", version="0.1.0")
    app.state.settings = settings or RelaySettings()
    app.state.sweep_scheduler = None

    @app.on_event("startup")
    async def _startup() -> None:
        settings2: RelaySettings = app.state.settings
        await asyncio.to_thread(dbm.ensure_schema, settings2)
        if settings2.scheduler_enabled:
            sched = SweepScheduler(settings2)
            sched.start()
            app.state.sweep_scheduler = sched

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        sched = app.state.sweep_scheduler
        if sched is not None:
            sched.stop()
            app.state.sweep_scheduler = None

    # -----------------
    # CORS and error rendering
    # -----------------
    @app.middleware("http")
    async def _cors(req: Request, call_next):
        headers = _cors_headers(app.state.settings)
        if req.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        resp = await call_next(req)
        for k, v in headers.items():
            resp.headers[k] = v
        return resp

    @app.exception_handler(RelayError)
    async def _relay_error(_req: Request, exc: RelayError) -> JSONResponse:
        return _error(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_req: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return _error(404, "Route not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unhandled(_req: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("API error: %s", exc)
        return _error(500, "Internal server error")

    # -----------------
    # Public routes
    # -----------------
    @app.get("/")
    async def root() -> PlainTextResponse:
        return PlainTextResponse("Gas Metrics API Server")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/auth/signin")
    async def auth_signin() -> RedirectResponse:
        settings2: RelaySettings = app.state.settings
        start = begin_login(settings2)
        resp = RedirectResponse(url=start.url, status_code=302)
        resp.set_cookie(
            STATE_COOKIE,
            start.state,
            max_age=STATE_COOKIE_MAX_AGE_SECONDS,
            path="/auth",
            httponly=True,
            secure=settings2.cookie_secure,
            samesite="lax",
        )
        return resp

    @app.get("/auth/callback")
    async def auth_callback(req: Request, code: str = "", state: str = "") -> Response:
        settings2: RelaySettings = app.state.settings
        if not code.strip():
            return _error(400, "Authorization code not found")

        expected_state = (req.cookies.get(STATE_COOKIE) or "").strip()
        if not expected_state or not hmac.compare_digest(expected_state, state.strip()):
            return _error(400, "Invalid OAuth state")

        try:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
                result = await complete_login(client, settings2, code=code)
        except AuthError as exc:
            LOGGER.warning("Authentication failed: %s", exc.message)
            return _error(500, "Authentication failed")
        except Exception:
            LOGGER.exception("Authentication failed")
            return _error(500, "Authentication failed")

        resp = RedirectResponse(url=settings2.frontend_origin, status_code=302)
        resp.set_cookie(
            SESSION_COOKIE,
            result.session_token,
            max_age=int(settings2.session_max_age_seconds),
            path="/",
            httponly=True,
            secure=settings2.cookie_secure,
            # Cross-site cookies are only accepted by browsers when marked Secure.
            samesite="none" if settings2.cookie_secure else "lax",
        )
        resp.delete_cookie(STATE_COOKIE, path="/auth")
        return resp

    @app.api_route("/auth/signout", methods=["GET", "POST"])
    async def auth_signout(req: Request) -> JSONResponse:
        await asyncio.to_thread(end_login, app.state.settings, session_token(req))
        resp = JSONResponse({"success": True})
        resp.delete_cookie(SESSION_COOKIE, path="/")
        return resp

    @app.get("/api/session")
    async def api_session(user: SessionUser | None = Depends(get_current_user)) -> dict[str, Any]:
        if user is None:
            return {"session": None}
        return {
            "session": {
                "user": {"id": user.id, "email": user.email, "name": user.name, "image": user.picture},
            }
        }

    # -----------------
    # Authenticated API
    # -----------------
    @app.get("/api/configs")
    async def api_list_configs(user: SessionUser = Depends(require_user)) -> dict[str, Any]:
        configs = await asyncio.to_thread(dbm.list_active_configs, app.state.settings, user_id=user.id)
        for cfg in configs:
            cfg["created_at"] = _iso(cfg.get("created_at_ts"))
            cfg["updated_at"] = _iso(cfg.get("updated_at_ts"))
        return {"configs": configs}

    @app.post("/api/configs")
    async def api_create_config(req: Request, user: SessionUser = Depends(require_user)) -> dict[str, Any]:
        try:
            body = await req.json()
            payload = CreateConfigRequest.model_validate(body)
        except (ValueError, ValidationError) as exc:
            raise ValidationFailed(MISSING_CONFIG_FIELDS) from exc
        script_id = payload.script_id.strip()
        webhook_url = payload.webhook_url.strip()
        if not script_id or not webhook_url:
            raise ValidationFailed(MISSING_CONFIG_FIELDS)
        try:
            WEBHOOK_URL.validate_python(webhook_url)
        except ValidationError as exc:
            raise ValidationFailed(INVALID_WEBHOOK_URL) from exc

        created = await asyncio.to_thread(
            dbm.insert_config,
            app.state.settings,
            user_id=user.id,
            script_id=script_id,
            webhook_url=webhook_url,
        )
        return {"success": True, "config_id": created["id"]}

    @app.post("/api/configs/{config_id}/test")
    async def api_test_config(config_id: str, user: SessionUser = Depends(require_user)) -> dict[str, Any]:
        settings2: RelaySettings = app.state.settings
        config = await asyncio.to_thread(dbm.get_config_for_run, settings2, user_id=user.id, config_id=config_id)
        if not config:
            raise NotFound("Config not found")

        LOGGER.info("Testing config: %s", config_id)
        try:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
                await check_config(config, settings2, client)
        except Exception:
            LOGGER.exception("Test execution error")
            return _error(500, "Failed to execute test")
        return {"message": "Test completed"}

    @app.get("/api/logs")
    async def api_list_logs(
        limit: str | None = None,
        offset: str | None = None,
        user: SessionUser = Depends(require_user),
    ) -> dict[str, Any]:
        lim = min(MAX_LOG_LIMIT, max(1, _parse_int(limit, DEFAULT_LOG_LIMIT)))
        off = max(0, _parse_int(offset, 0))
        logs = await asyncio.to_thread(dbm.list_logs, app.state.settings, user_id=user.id, limit=lim, offset=off)
        for entry in logs:
            entry["check_time"] = _iso(entry.get("check_time_ts"))
        return {"logs": logs, "pagination": {"limit": lim, "offset": off, "total": len(logs)}}

    return app


app = create_app()
