"""
Global Exception Handling

Error taxonomy for the acquisition pipeline and structured error
responses for the HTTP layer.

User-correctable errors (validation, ownership) are raised synchronously
by the ingestion service. Pipeline errors raised inside the worker are
marked ``retryable`` so the job queue can decide whether to redeliver.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class AcquisitionBaseException(Exception):
    """Base exception for the acquisition service."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AcquisitionBaseException):
    """Raised when submitted input is missing or malformed."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, code=400, **kwargs)
        if field:
            self.details["field"] = field


class NotFoundError(AcquisitionBaseException):
    """Raised when a referenced farm, coordinate or image does not exist."""

    def __init__(self, resource: str, resource_id: str, **kwargs):
        super().__init__(f"{resource} not found: {resource_id}", code=404, **kwargs)
        self.details["resource"] = resource
        self.details["id"] = resource_id


class ForbiddenError(AcquisitionBaseException):
    """Raised when the caller does not own the referenced resource."""

    def __init__(self, resource: str, resource_id: str, **kwargs):
        super().__init__(f"Not authorized to access {resource}: {resource_id}", code=403, **kwargs)
        self.details["resource"] = resource
        self.details["id"] = resource_id


class AuthError(AcquisitionBaseException):
    """Raised when the imagery provider refuses to issue an access token."""

    retryable = True

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["http_status"] = http_status


class ProviderError(AcquisitionBaseException):
    """Raised when an imagery request returns a non-success response."""

    retryable = True

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class StorageError(AcquisitionBaseException):
    """Raised when a blob upload or datastore write fails."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", 500)
        super().__init__(message, **kwargs)


class EnqueueError(StorageError):
    """Raised when a fetch job cannot be handed to the job queue."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


class InvalidStatusTransitionError(AcquisitionBaseException):
    """Raised when a coordinate status write would break the state machine."""

    def __init__(self, coordinate_id: str, current: str, requested: str, **kwargs):
        super().__init__(
            f"Coordinate {coordinate_id} cannot move from '{current}' to '{requested}'",
            code=409,
            **kwargs
        )
        self.details["current"] = current
        self.details["requested"] = requested


class ExhaustedRetriesError(AcquisitionBaseException):
    """Raised when a job failed on its final delivery attempt."""

    def __init__(self, message: str, attempts: int, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["attempts"] = attempts


def is_retryable(exc: BaseException) -> bool:
    """
    Whether a failed attempt should be redelivered by the job queue.

    Taxonomy errors carry their own flag; anything else (timeouts, driver
    errors that escaped wrapping) is treated as transient.
    """
    if isinstance(exc, AcquisitionBaseException):
        return exc.retryable
    return True


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: AcquisitionBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "code": exc.code,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(AcquisitionBaseException)
    async def acquisition_exception_handler(request: Request, exc: AcquisitionBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "request_failed",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
