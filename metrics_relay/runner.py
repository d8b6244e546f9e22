"""Check one monitor config, or sweep all active ones.

A check is strictly sequential: refresh the access token, fetch the script's
daily metrics, deliver them to the webhook, then append one monitor log row.
Failures never propagate to the caller; they end up in the log row instead.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from metrics_relay import db as dbm
from metrics_relay.errors import RelayError
from metrics_relay.google_oauth import refresh_access_token
from metrics_relay.schema import WebhookPayload
from metrics_relay.script_metrics import get_script_metrics
from metrics_relay.settings import RelaySettings
from metrics_relay.webhook import send_notification


logger = structlog.get_logger(__name__)

USER_AGENT = "GAS Metrics Relay"


@dataclass(frozen=True)
class RunOutcome:
    succeeded: bool
    skipped: bool = False
    log_entry: dict[str, Any] | None = None


@dataclass
class SweepSummary:
    checked: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, RelayError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"


async def _write_log(settings: RelaySettings, **kwargs: Any) -> dict[str, Any] | None:
    try:
        return await asyncio.to_thread(dbm.insert_log, settings, **kwargs)
    except Exception:
        logger.exception("Failed to write monitor log", config_id=kwargs.get("config_id"))
        return None


async def check_config(config: dict[str, Any], settings: RelaySettings, client: httpx.AsyncClient) -> RunOutcome:
    config_id = str(config.get("id") or "")
    script_id = str(config.get("script_id") or "")
    user_id = str(config.get("user_id") or "")
    log = logger.bind(config_id=config_id, script_id=script_id, user_id=user_id)
    log.info("Checking script")

    refresh_token = str(config.get("refresh_token") or "").strip()
    if not refresh_token:
        log.info("No refresh token, skipping")
        return RunOutcome(succeeded=False, skipped=True)

    try:
        tokens = await refresh_access_token(client, settings, refresh_token=refresh_token)
        metrics = await get_script_metrics(
            client, settings, script_id=script_id, access_token=tokens.access_token
        )
    except Exception as exc:
        detail = _describe(exc)
        log.warning("Monitoring check failed", error=detail)
        entry = await _write_log(settings, config_id=config_id, error_details=f"Monitoring error: {detail}")
        return RunOutcome(succeeded=False, log_entry=entry)

    data = metrics.model_dump(mode="json", exclude_none=True)
    delivered = await send_notification(
        client,
        str(config.get("webhook_url") or ""),
        WebhookPayload(scriptId=script_id, data=data).model_dump(mode="json"),
    )
    entry = await _write_log(
        settings,
        config_id=config_id,
        error_details=dbm._json_dumps({"data": data}),
        delivery_status="delivered" if delivered else "failed",
    )
    log.info("Monitoring check completed", delivered=delivered)
    return RunOutcome(succeeded=True, log_entry=entry)


async def run_sweep(settings: RelaySettings, http_client: httpx.AsyncClient | None = None) -> SweepSummary:
    summary = SweepSummary()
    logger.info("Starting monitoring sweep")
    try:
        configs = await asyncio.to_thread(dbm.list_configs_for_sweep, settings)
    except Exception as exc:
        logger.exception("Failed to load monitor configs")
        summary.errors.append(_describe(exc))
        return summary

    logger.info("Found active monitoring configs", count=len(configs))

    async def _run_all(client: httpx.AsyncClient) -> None:
        for cfg in configs:
            summary.checked += 1
            try:
                outcome = await check_config(cfg, settings, client)
            except Exception as exc:
                logger.exception("Unexpected error checking config", config_id=cfg.get("id"))
                summary.failed += 1
                summary.errors.append(_describe(exc))
                continue
            if outcome.skipped:
                summary.skipped += 1
            elif outcome.succeeded:
                summary.succeeded += 1
            else:
                summary.failed += 1

    if http_client is not None:
        await _run_all(http_client)
    else:
        async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
            await _run_all(client)

    logger.info(
        "Monitoring sweep finished",
        checked=summary.checked,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary
