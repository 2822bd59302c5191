"""Custom exceptions for the job queue."""

from leadflow.core.exceptions import AppError


class QueueError(AppError):
    """Base exception for queue failures."""

    status_code = 503
    code = "LEAD_QUEUE_ERROR"


class QueueClosedError(QueueError):
    """Raised when a closed queue is used."""

    code = "LEAD_QUEUE_CLOSED"
