"""Custom exceptions for quotagate."""

from typing import Dict, Optional


class QuotaGateError(Exception):
    """Base class for quotagate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "quotagate error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(QuotaGateError):
    """Raised when limits, reset times or timezones are invalid."""
    status_code = 500


class StoreError(QuotaGateError):
    """Raised when the shared counter store returns an unusable reply."""
    status_code = 503


class StoreUnavailableError(StoreError):
    """Raised by administrative operations when the store cannot be reached.

    Admission checks never raise this; they go through the fail-open
    policy instead.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Counter store unavailable during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class AdmissionDeniedError(QuotaGateError):
    """Raised when a request is denied by a rate limit or quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        reason: str,
        message: str,
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.reason = reason
        self.retry_after = retry_after
        self.headers = dict(headers or {})
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": self.reason,
            "message": self.message,
            "retry_after": self.retry_after,
        }
