"""CallPanion Exception Hierarchy.

Provides structured error handling with context preservation
and proper HTTP status code mapping.
"""

from __future__ import annotations

from typing import Any


class CallPanionError(Exception):
    """Base exception for all CallPanion errors.

    All custom exceptions should inherit from this class.
    Provides:
    - Structured error context
    - HTTP status code mapping
    - Logging-friendly representation
    """

    status_code: int = 500
    error_code: str = "CALLPANION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Additional context for debugging
            cause: Original exception if wrapping
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to API-friendly dictionary (cause excluded)."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """String representation for logging."""
        parts = [f"{self.error_code}: {self.message}"]
        if self.details:
            parts.append(f"details={self.details}")
        if self.cause:
            parts.append(f"cause={self.cause}")
        return " | ".join(parts)


# =============================================================================
# Request Errors
# =============================================================================


class ValidationError(CallPanionError):
    """Malformed or missing input, rejected before any side effect."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFoundError(CallPanionError):
    """Requested record not found.

    Pairing claims raise this for invalid, expired and already claimed
    credentials alike.
    """

    status_code = 404
    error_code = "NOT_FOUND"


# =============================================================================
# Authorization Errors
# =============================================================================


class UnauthorizedError(CallPanionError):
    """Request carries no usable identity."""

    status_code = 401
    error_code = "UNAUTHORIZED"


class WebhookSignatureError(UnauthorizedError):
    """Provider webhook signature validation failed."""

    error_code = "INVALID_SIGNATURE"


class ForbiddenError(CallPanionError):
    """Origin not allowed, rate limit exceeded or ownership check failed."""

    status_code = 403
    error_code = "FORBIDDEN"


class RateLimitedError(ForbiddenError):
    """Too many requests for one caller identity."""

    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["retry_after"] = self.retry_after
        return result


class ConcurrentCallLimitError(ForbiddenError):
    """Household already has the maximum number of open calls."""

    status_code = 429
    error_code = "CONCURRENT_CALL_LIMIT"


# =============================================================================
# State Machine Errors
# =============================================================================


class InvalidTransitionError(CallPanionError):
    """Requested state change is illegal given the current state."""

    status_code = 409
    error_code = "INVALID_TRANSITION"


class ActiveSessionExistsError(InvalidTransitionError):
    """Relative already has an open session in the requested slot."""

    error_code = "ACTIVE_SESSION_EXISTS"


# =============================================================================
# Integration Errors
# =============================================================================


class IntegrationError(CallPanionError):
    """Base class for external integration errors."""

    status_code = 502
    error_code = "INTEGRATION_ERROR"


class UpstreamError(IntegrationError):
    """Conversation-token provider failed or timed out."""

    error_code = "UPSTREAM_ERROR"


class DeliveryError(IntegrationError):
    """A push attempt failed."""

    error_code = "DELIVERY_ERROR"

