from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"


class PipelineError(Exception):
    """
    Base error for everything raised by the processing pipeline.
    Carries enough context (step, correlation id) to be traced through logs and audits.
    """
    error_type: ErrorType = ErrorType.PROCESSING_ERROR
    status_code: int = 500

    def __init__(self,
                 message: str,
                 details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None,
                 step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "step": self.step,
            "details": self.details,
        }


class ValidationError(PipelineError):
    error_type = ErrorType.VALIDATION_ERROR
    status_code = 400


class NotFoundError(PipelineError):
    error_type = ErrorType.NOT_FOUND
    status_code = 404


class InvalidStateError(PipelineError):
    error_type = ErrorType.INVALID_STATE
    status_code = 409


class ProcessingError(PipelineError):
    error_type = ErrorType.PROCESSING_ERROR
    status_code = 500


class ExternalServiceError(PipelineError):
    error_type = ErrorType.EXTERNAL_SERVICE_ERROR
    status_code = 502
