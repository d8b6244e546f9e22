from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter


class CreateConfigRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    script_id: str = ""
    webhook_url: str = ""


# Webhook targets must be absolute http(s) URLs with a valid host and port.
WEBHOOK_URL = TypeAdapter(HttpUrl)


class SessionUser(BaseModel):
    id: str
    email: str
    name: str
    picture: str


# -----------------
# Google OAuth responses
# -----------------
class OAuthTokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., min_length=1)
    expires_in: int = 3600
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None


class GoogleUserInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    email: str
    name: str = ""
    picture: str = ""


# -----------------
# Apps Script metrics API
# -----------------
class MetricsValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    value: str | None = None
    startTime: str
    endTime: str


class ScriptMetricsResponse(BaseModel):
    """``projects.getMetrics`` payload; the three series are always present even when empty."""

    model_config = ConfigDict(extra="allow")

    activeUsers: list[MetricsValue]
    totalExecutions: list[MetricsValue]
    failedExecutions: list[MetricsValue]


class WebhookPayload(BaseModel):
    scriptId: str
    data: dict[str, Any]
