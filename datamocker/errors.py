"""
Error taxonomy for the mock data service.

Every error carries the HTTP status it maps to so the exception handler in
``main.py`` can render it without a lookup table.
"""

from typing import Any, Dict, Optional


class MockerError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(MockerError):
    """Malformed or out-of-range request fields."""

    status_code = 400


class InvalidCredential(MockerError):
    """Missing, unverifiable or expired API key."""

    status_code = 401

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(message)


class Unauthorized(MockerError):
    """Caller is known but not allowed to touch the resource."""

    status_code = 403


class NotFound(MockerError):
    status_code = 404


class QuotaExceeded(MockerError):
    """Daily generation limit reached."""

    status_code = 429


class ProviderError(MockerError):
    """
    Upstream AI call failed.

    Attributes:
        upstream_status: HTTP status returned by the provider, if any
        upstream_body: Response body returned by the provider, if any
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class StorageUnavailable(MockerError):
    """Counter or credential store could not be reached."""

    status_code = 503
