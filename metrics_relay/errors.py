from __future__ import annotations


class RelayError(Exception):
    """Base error carrying the HTTP status and the message rendered as ``{"error": ...}``."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(RelayError):
    status_code = 401
    default_message = "Authentication required"


class NotFound(RelayError):
    status_code = 404
    default_message = "Not found"


class ValidationFailed(RelayError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(RelayError):
    """Login could not be completed (code exchange or profile lookup failed)."""

    status_code = 500
    default_message = "Authentication failed"


class UpstreamFailure(RelayError):
    """A call to the OAuth token endpoint or the metrics API did not succeed."""

    status_code = 502
    default_message = "Upstream request failed"
