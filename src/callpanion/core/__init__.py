"""Core building blocks: state machine, errors, logging, clock and retry."""

from callpanion.core.call_state import (
    CallOutcome,
    CallTrigger,
    CallType,
    FailureReason,
    SessionState,
    validate_transition,
)
from callpanion.core.exceptions import (
    CallPanionError,
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    WebhookSignatureError,
    ForbiddenError,
    RateLimitedError,
    ConcurrentCallLimitError,
    InvalidTransitionError,
    ActiveSessionExistsError,
    IntegrationError,
    UpstreamError,
    DeliveryError,
)
from callpanion.core.logging import get_logger, setup_logging

__all__ = [
    # State machine
    "CallOutcome",
    "CallTrigger",
    "CallType",
    "FailureReason",
    "SessionState",
    "validate_transition",
    # Exceptions
    "CallPanionError",
    "ValidationError",
    "NotFoundError",
    "UnauthorizedError",
    "WebhookSignatureError",
    "ForbiddenError",
    "RateLimitedError",
    "ConcurrentCallLimitError",
    "InvalidTransitionError",
    "ActiveSessionExistsError",
    "IntegrationError",
    "UpstreamError",
    "DeliveryError",
    # Logging
    "get_logger",
    "setup_logging",
]
