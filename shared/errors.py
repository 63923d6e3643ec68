"""
Shared error handling for the External Metrics Service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class ExternalMetricsException(Exception):
    """Base exception for External Metrics services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ComputationError(ExternalMetricsException):
    """A metric computation failed or returned something other than a Value."""

    def __init__(self, namespace: str, name: str, message: str = "Metric computation failed",
                 details: Optional[Dict[str, Any]] = None):
        details = {"namespace": namespace, "name": name, **(details or {})}
        super().__init__("COMPUTATION_ERROR", message, details)


class MetricNotFoundError(ExternalMetricsException):
    """Namespace or metric name is not registered."""

    def __init__(self, message: str = "Metric not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("METRIC_NOT_FOUND", message, details)


class MalformedRequestError(ExternalMetricsException):
    """Request path could not be parsed into namespace and metric name."""

    def __init__(self, message: str = "Malformed request", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_REQUEST", message, details)


class SerializationError(ExternalMetricsException):
    """Response body could not be encoded."""

    def __init__(self, message: str = "Serialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class RegistrationError(ExternalMetricsException):
    """Metric registration was rejected."""

    def __init__(self, message: str = "Registration failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("REGISTRATION_ERROR", message, details)
