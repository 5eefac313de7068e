"""
Shared error handling for the Household Permissions service.
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


class ServiceException(Exception):
    """Base exception for permissions service errors."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
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


class AuthorizationError(ServiceException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(ServiceException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class MalformedRuleSet(ServiceException):
    """Packed rule data could not be turned back into a rule set."""

    status_code = 500

    def __init__(self, message: str = "Malformed rule set", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_RULE_SET", message, details)


class RoleDataUnavailable(ServiceException):
    """The role-data source failed while building a user context."""

    status_code = 503

    def __init__(self, message: str = "Role data unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("ROLE_DATA_UNAVAILABLE", message, details)


class ExternalServiceError(ServiceException):
    """External service errors."""

    status_code = 503

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
