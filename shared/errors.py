"""
Shared error handling for the policy layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PolicyLayerException(Exception):
    """Base exception for policy layer services."""

    http_status: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(PolicyLayerException):
    """Authentication-related errors."""

    http_status = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(PolicyLayerException):
    """Authorization-related errors."""

    http_status = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(PolicyLayerException):
    """A referenced user, organization, project or token does not exist."""

    http_status = 404

    def __init__(self, entity: str, entity_id: str, details: Optional[Dict[str, Any]] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__("NOT_FOUND", f"{entity} not found: {entity_id}", details)


class ValidationError(PolicyLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InitializationError(PolicyLayerException):
    """The policy rule set could not be loaded."""

    http_status = 503

    def __init__(self, message: str = "Policy enforcer initialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("INITIALIZATION_ERROR", message, details)


class MutationError(PolicyLayerException):
    """A write to the policy store failed; in-memory state is unchanged."""

    http_status = 503

    def __init__(self, operation: str, message: str = "Policy store write failed", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("MUTATION_ERROR", f"{operation}: {message}", details)


class ExternalServiceError(PolicyLayerException):
    """External service errors."""

    http_status = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
