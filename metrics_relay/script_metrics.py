from __future__ import annotations

from urllib.parse import quote

import httpx
from pydantic import ValidationError

from metrics_relay.errors import UpstreamFailure
from metrics_relay.schema import ScriptMetricsResponse
from metrics_relay.settings import RelaySettings


HTTP_TIMEOUT_SECONDS = 30.0


def metrics_url(settings: RelaySettings, script_id: str) -> str:
    base = settings.script_api_base_url.rstrip("/")
    return f"{base}/v1/projects/{quote(script_id, safe='')}/metrics"


async def get_script_metrics(
    client: httpx.AsyncClient,
    settings: RelaySettings,
    *,
    script_id: str,
    access_token: str,
) -> ScriptMetricsResponse:
    """Fetch daily execution metrics for one Apps Script project."""
    try:
        resp = await client.get(
            metrics_url(settings, script_id),
            params={"metricsGranularity": "DAILY"},
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise UpstreamFailure(f"Failed to fetch metrics: {type(exc).__name__}: {exc}") from exc

    if not resp.is_success:
        body = (resp.text or "").strip()[:2000]
        raise UpstreamFailure(f"API request failed with status {resp.status_code}: {body}")

    try:
        return ScriptMetricsResponse.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise UpstreamFailure(f"Invalid response format from Google Apps Script Metrics API: {exc}") from exc
