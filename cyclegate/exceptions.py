from fastapi import Request, status
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

class CycleGateError(Exception):
    """Base exception for the Cycle Gate service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.error(f"{self.__class__.__name__}: {message}", extra={"details": self.details})

class AuthenticationError(CycleGateError):
    """Raised when the caller's identity cannot be established."""

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason, {"auth_failure_reason": reason})

class TokenExpiredError(AuthenticationError):
    """Raised when the identity token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")

class InvalidTokenError(AuthenticationError):
    """Raised when the identity token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")

class WebhookValidationError(CycleGateError):
    """Raised when a webhook cannot be authenticated or parsed."""

    def __init__(self, provider: str, reason: str = "Invalid signature"):
        message = f"Webhook validation failed for {provider}: {reason}"
        details = {"provider": provider, "validation_error": reason}
        super().__init__(message, details)

class CheckoutValidationError(CycleGateError):
    """Raised when a checkout request is missing caller data."""

    def __init__(self, field: str, reason: str):
        message = f"Invalid checkout request: {field} {reason}"
        super().__init__(message, {"field": field})

class ContentLockedError(CycleGateError):
    """Raised when a day is outside the caller's unlocked content."""

    def __init__(self, cycle: int, day: int, unlocked_cycles: int):
        message = f"Cycle {cycle} day {day} is locked"
        details = {"cycle": cycle, "day": day, "unlocked_cycles": unlocked_cycles}
        super().__init__(message, details)

class EntitlementRequiredError(CycleGateError):
    """Raised when a members-only feature is used without an active entitlement."""

    def __init__(self, feature: str):
        super().__init__(f"An active subscription is required for {feature}", {"feature": feature})

class InputValidationError(CycleGateError):
    """Raised when request data passes schema validation but is not acceptable."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid value for {field}: {reason}", {"field": field})

class NotFoundError(CycleGateError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource: str, identifier: Any):
        message = f"{resource} '{identifier}' not found"
        super().__init__(message, {"resource": resource})

class DatabaseError(CycleGateError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, error: str):
        message = f"Database operation '{operation}' failed: {error}"
        details = {"operation": operation, "database_error": error}
        super().__init__(message, details)

class ConfigurationError(CycleGateError):
    """Raised when application configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        message = f"Configuration error for '{setting}': {reason}"
        details = {"setting": setting, "reason": reason}
        super().__init__(message, details)

class MissingWebhookSecretError(ConfigurationError):
    """Raised when a webhook arrives but no signing secret is configured."""

    def __init__(self):
        super().__init__("STRIPE_WEBHOOK_SECRET", "webhook signing secret is not configured")

class ExternalServiceError(CycleGateError):
    """Raised when external service calls fail."""

    def __init__(self, service: str, error: str, status_code: int = None):
        message = f"External service '{service}' error: {error}"
        details = {
            "service": service,
            "error": error,
            "status_code": status_code
        }
        super().__init__(message, details)

# Exception to HTTP status code mapping
status_code_mapping = {
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    TokenExpiredError: status.HTTP_401_UNAUTHORIZED,
    InvalidTokenError: status.HTTP_401_UNAUTHORIZED,
    WebhookValidationError: status.HTTP_400_BAD_REQUEST,
    MissingWebhookSecretError: status.HTTP_400_BAD_REQUEST,
    CheckoutValidationError: status.HTTP_400_BAD_REQUEST,
    ContentLockedError: status.HTTP_402_PAYMENT_REQUIRED,
    EntitlementRequiredError: status.HTTP_402_PAYMENT_REQUIRED,
    InputValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    DatabaseError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}

def status_code_for(exc: CycleGateError) -> int:
    return status_code_mapping.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

def to_json_response(exc: CycleGateError) -> JSONResponse:
    """Render an application exception as ``{"error": message, ...details}``."""
    return JSONResponse(
        status_code=status_code_for(exc),
        content={
            "error": exc.message,
            **exc.details
        }
    )

async def cyclegate_exception_handler(request: Request, exc: CycleGateError) -> JSONResponse:
    return to_json_response(exc)
