"""Custom exceptions for BandRec.

Defines specific exception types for crawl, fetch and lookup failures. Each
carries the HTTP status code used when it reaches an API caller.
"""

from typing import Any, Dict, Optional


class BandRecException(Exception):
    """Base exception for BandRec errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code for API responses
            details: Additional error details for debugging
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class UnknownUser(BandRecException):
    """Raised when a username does not resolve to a Bandcamp fan."""

    def __init__(self, username: str):
        super().__init__(
            message="User not found",
            status_code=404,
            details={"username": username},
        )


class CollectionTooSmall(BandRecException):
    """Raised when a user has too few collected items to recommend from."""

    def __init__(self, username: str, size: int, required: int):
        message = (
            f"User does not contain enough items (at least {required} required)"
        )
        super().__init__(
            message=message,
            status_code=404,
            details={"username": username, "size": size, "required": required},
        )


class NoActiveJob(BandRecException):
    """Raised when status or recommendations are requested without a job."""

    def __init__(self, username: str):
        super().__init__(
            message=f"No crawl job for user {username}. Request the user first.",
            status_code=404,
            details={"username": username},
        )


class CrawlInProgress(BandRecException):
    """Raised when recommendations are requested before the crawl finished."""

    def __init__(self, username: str, stage: int):
        super().__init__(
            message=f"Crawl for user {username} is still running (stage {stage})",
            status_code=409,
            details={"username": username, "stage": stage},
        )


class TransientFetchError(BandRecException):
    """Raised for fetch failures worth retrying (timeouts, 5xx, network)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=503, details=details)


class RateLimited(TransientFetchError):
    """Raised when Bandcamp answers with HTTP 429."""

    def __init__(self, url: str):
        super().__init__(message="Rate limit reached", details={"url": url})


class EntityGone(BandRecException):
    """Raised when a fetched item or collector no longer exists or is unsupported."""

    def __init__(self, url: str, reason: str = "Resource not found"):
        super().__init__(
            message=reason,
            status_code=404,
            details={"url": url},
        )


class PageFormatError(BandRecException):
    """Raised when a fetched page lacks the data the fetcher expects."""

    def __init__(self, url: str, error: Optional[Exception] = None):
        details: Dict[str, Any] = {"url": url}
        if error is not None:
            details["error"] = str(error)
            details["error_type"] = type(error).__name__
        super().__init__(
            message="Page content error",
            status_code=502,
            details=details,
        )
