"""Base exception shared by every leadflow service."""

GENERIC_FAILURE_MESSAGE = "Lead discovery failed"


class AppError(Exception):
    """Caller-visible error with a stable code and an HTTP-equivalent status.

    ``message`` is safe to show to end users. Anything more detailed (raw
    provider or storage payloads) belongs in the server-side logs only.
    ``retryable`` tells queue workers whether another attempt can help.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


def public_error_message(error: BaseException) -> str:
    """Human-readable message for a failure, without raw payloads."""
    if isinstance(error, AppError):
        return error.message
    return GENERIC_FAILURE_MESSAGE


def is_retryable(error: BaseException) -> bool:
    return getattr(error, "retryable", True)
