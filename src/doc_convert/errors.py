"""Error taxonomy for the conversion job pipeline.

Every error carries a stable ``code`` and the HTTP status it maps to when it
reaches the API boundary. The worker pool only recovers ``ConversionError``
(and its ``ConversionTimeout`` subclass) locally; everything else propagates.
"""

from typing import Any, Dict, Optional


class DocConvertError(Exception):
    """Base class for all errors raised by doc_convert."""

    code = "INTERNAL_ERROR"
    http_status = 500
    title = "Internal server error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.title,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(DocConvertError):
    """Bad request shape or options. Never retried."""

    code = "VALIDATION_ERROR"
    http_status = 400
    title = "Validation failed"


class UnsupportedTypeError(ValidationError):
    """No converter is registered for the requested conversion type."""

    code = "UNSUPPORTED_TYPE"
    title = "Unsupported conversion type"


class ConversionError(DocConvertError):
    """Business failure reported by a converter. Retryable up to max_attempts."""

    code = "CONVERSION_ERROR"
    http_status = 422
    title = "Conversion failed"


class ConversionTimeout(ConversionError):
    """Converter exceeded the job timeout."""

    code = "CONVERSION_TIMEOUT"
    title = "Conversion timed out"


class ConversionCancelled(DocConvertError):
    """Raised by a cooperative converter that observed a cancellation request."""

    code = "CONVERSION_CANCELLED"
    http_status = 409
    title = "Conversion cancelled"


class InfrastructureError(DocConvertError):
    """Queue store or transport unreachable. Never consumes an attempt."""

    code = "INFRASTRUCTURE_ERROR"
    http_status = 503
    title = "Infrastructure failure"


class ServiceUnavailableError(DocConvertError):
    """The job queue backing service is unavailable."""

    code = "SERVICE_UNAVAILABLE"
    http_status = 503
    title = "Job queue not available"


class JobNotFoundError(DocConvertError):
    code = "JOB_NOT_FOUND"
    http_status = 404
    title = "Job not found"


class InvalidStateError(DocConvertError):
    """Operation is illegal for the job's current state."""

    code = "INVALID_STATE"
    http_status = 400
    title = "Invalid job state"


class ConflictError(DocConvertError):
    """Store-level rejection of a mutation (terminal job, lost claim)."""

    code = "CONFLICT"
    http_status = 409
    title = "Conflict"
