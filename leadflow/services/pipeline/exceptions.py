"""Custom exceptions for the lead ingestion pipeline."""

from leadflow.core.exceptions import AppError


class PipelineError(AppError):
    """Base exception for pipeline stage failures."""

    code = "LEAD_PIPELINE_ERROR"


class PersistenceError(PipelineError):
    """Raised when upserting leads into storage fails."""

    status_code = 500
    code = "LEAD_PERSISTENCE_FAILED"
