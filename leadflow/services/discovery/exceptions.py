"""Custom exceptions for the discovery run service."""

from leadflow.core.exceptions import AppError


class DiscoveryError(AppError):
    """Base exception for discovery run failures."""

    code = "DISCOVERY_ERROR"


class QuotaExceededError(DiscoveryError):
    """Raised when a user has used up their daily discovery runs."""

    status_code = 429
    code = "DISCOVERY_DAILY_LIMIT_REACHED"
    retryable = False


class RunNotFoundError(DiscoveryError):
    """Raised when a run does not exist or belongs to another user."""

    status_code = 404
    code = "DISCOVERY_RUN_NOT_FOUND"
    retryable = False

    def __init__(self, message: str = "Discovery run not found"):
        super().__init__(message)


class DiscoveryStorageError(DiscoveryError):
    """Raised when discovery runs or their lead links cannot be read or written."""

    status_code = 500
    code = "DISCOVERY_STORAGE_FAILED"
