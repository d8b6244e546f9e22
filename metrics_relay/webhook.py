from __future__ import annotations

from typing import Any

import httpx
import structlog


logger = structlog.get_logger(__name__)

HTTP_TIMEOUT_SECONDS = 15.0


async def send_notification(client: httpx.AsyncClient, webhook_url: str, payload: dict[str, Any]) -> bool:
    """POST the payload as JSON. Failures are logged and reported as False, never raised."""
    try:
        resp = await client.post(webhook_url, json=payload, timeout=HTTP_TIMEOUT_SECONDS)
    except Exception as exc:
        # A stored URL can still fail below httpx (e.g. an out-of-range port in the socket layer).
        logger.error("Error sending notification", webhook_url=webhook_url, error=f"{type(exc).__name__}: {exc}")
        return False
    if not resp.is_success:
        logger.error("Webhook notification failed", webhook_url=webhook_url, status_code=resp.status_code)
        return False
    logger.info("Notification sent successfully", webhook_url=webhook_url)
    return True
