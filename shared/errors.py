"""
Shared error handling for the RuleGate rule evaluation layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RuleGateException(Exception):
    """Base exception for RuleGate components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RuleGateException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "VALIDATION_ERROR"):
        super().__init__(code, message, details)


class NotFoundError(RuleGateException):
    """Lookup of an unknown entity."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None,
                 code: str = "NOT_FOUND"):
        super().__init__(code, message, details)


class ServiceError(RuleGateException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None,
                 code: str = "SERVICE_ERROR"):
        super().__init__(code, message, details)


class ExternalServiceError(RuleGateException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
