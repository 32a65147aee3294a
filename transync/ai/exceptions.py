"""
Service Exceptions

This module contains exception classes for the external translation and
evaluation services, plus the failure taxonomy the orchestrators act on.
Separated to avoid circular imports between client.py and the orchestrators.
"""

from typing import Optional


class TranslationError(Exception):
    """Translation service error with optional code and details."""

    def __init__(self, message: str, code: str = None, details: dict = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class RateLimitError(TranslationError):
    """HTTP 429: the service asked us to slow down."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None,
                 details: dict = None):
        super().__init__(message, code="rate_limited", details=details)
        self.retry_after = retry_after


class QuotaExceededError(TranslationError):
    """HTTP 402: billing or quota exhausted. Fatal for the current run."""

    def __init__(self, message: str = "Service quota exceeded, check billing", details: dict = None):
        super().__init__(message, code="quota_exceeded", details=details)


class ServiceTimeoutError(TranslationError):
    """The service did not answer in time. Recoverable by pause and resume."""

    def __init__(self, message: str = "Service request timed out", details: dict = None):
        super().__init__(message, code="timeout", details=details)


class ServiceError(TranslationError):
    """Any other service failure (non-2xx, transport error, malformed body)."""

    def __init__(self, message: str, code: str = "service_error", status_code: int = None,
                 details: dict = None):
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class PersistenceError(TranslationError):
    """Writing to the store failed; the checkpoint may not reflect reality."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message, code="persistence_error", details=details)


# Failure classes the orchestrators branch on
FAILURE_RATE_LIMIT = "rate_limit"
FAILURE_QUOTA = "quota"
FAILURE_TIMEOUT = "timeout"
FAILURE_PERSISTENCE = "persistence"
FAILURE_ITEM = "item"


def classify_failure(error: BaseException) -> str:
    """Map an exception onto the failure taxonomy."""
    if isinstance(error, RateLimitError):
        return FAILURE_RATE_LIMIT
    if isinstance(error, QuotaExceededError):
        return FAILURE_QUOTA
    if isinstance(error, ServiceTimeoutError):
        return FAILURE_TIMEOUT
    if isinstance(error, PersistenceError):
        return FAILURE_PERSISTENCE
    return FAILURE_ITEM
