"""
Error taxonomy for the like/view engine and the reconciliation endpoint.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with.
"""

from typing import Optional


class EngagementError(Exception):
    """Base class for errors surfaced to callers."""

    code = "engagement_error"
    status_code = 500
    default_message = "Engagement operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class AuthenticationRequired(EngagementError):
    code = "authentication_required"
    status_code = 401
    default_message = "Authentication required"


class RateLimited(EngagementError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests. Please slow down."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after


class NotFound(EngagementError):
    code = "not_found"
    status_code = 404
    default_message = "Video not found"


class InvalidState(EngagementError):
    code = "invalid_state"
    status_code = 409
    default_message = "Video is not published"


class ToggleFailed(EngagementError):
    """Cache failure on the toggle path. Safe to retry."""

    code = "toggle_failed"
    status_code = 503
    default_message = "Failed to toggle like"


class ViewFailed(EngagementError):
    code = "view_failed"
    status_code = 503
    default_message = "Failed to record view"


class ServerMisconfigured(EngagementError):
    code = "server_misconfigured"
    status_code = 500
    default_message = "Server configuration error"


class Unauthorized(EngagementError):
    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"
