"""Call session state machine.

States advance in one direction only:

    created -> credential_requested -> dispatched -> ringing -> active -> ended

``ringing`` is optional (in-app clients go straight to ``active``), and
``ended``/``failed`` are reachable from every non-terminal state.
"""

from __future__ import annotations

from enum import Enum

from callpanion.core.exceptions import InvalidTransitionError


class SessionState(str, Enum):
    """States in the call session state machine."""

    CREATED = "created"  # Row exists, nothing external attempted
    CREDENTIAL_REQUESTED = "credential_requested"  # Conversation token requested
    DISPATCHED = "dispatched"  # Push handed to a gateway
    RINGING = "ringing"  # Device acknowledged the call
    ACTIVE = "active"  # Conversation established with the provider
    ENDED = "ended"  # Terminal, carries an outcome
    FAILED = "failed"  # Terminal, carries a failure reason

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class CallOutcome(str, Enum):
    """Outcome of an ended call."""

    ANSWERED = "answered"
    MISSED = "missed"
    BUSY = "busy"
    DECLINED = "declined"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a session entered ``failed``."""

    CREDENTIAL_ISSUANCE = "credential_issuance"
    TIMEOUT = "timeout"


class CallType(str, Enum):
    """How the relative is reached."""

    IN_APP = "in_app"
    TELEPHONY = "telephony"


class CallTrigger(str, Enum):
    """What started the call."""

    SCHEDULED = "scheduled"
    AD_HOC = "ad_hoc"


TERMINAL_STATES = frozenset({SessionState.ENDED, SessionState.FAILED})

OPEN_STATES = tuple(state for state in SessionState if state not in TERMINAL_STATES)

# Forward edges between non-terminal states; terminal edges are implicit
_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.CREDENTIAL_REQUESTED}),
    SessionState.CREDENTIAL_REQUESTED: frozenset(
        {SessionState.DISPATCHED, SessionState.ACTIVE}
    ),
    SessionState.DISPATCHED: frozenset({SessionState.RINGING, SessionState.ACTIVE}),
    SessionState.RINGING: frozenset({SessionState.ACTIVE}),
    SessionState.ACTIVE: frozenset(),
}

_FAILURE_CATEGORIES: dict[FailureReason, str] = {
    FailureReason.CREDENTIAL_ISSUANCE: "credential",
    FailureReason.TIMEOUT: "timeout",
}

# Provider status strings mapped onto outcomes; anything else is FAILED
_OUTCOME_ALIASES: dict[str, CallOutcome] = {
    "done": CallOutcome.ANSWERED,
    "success": CallOutcome.ANSWERED,
    "successful": CallOutcome.ANSWERED,
    "completed": CallOutcome.ANSWERED,
    "ok": CallOutcome.ANSWERED,
    "answered": CallOutcome.ANSWERED,
    "cancelled": CallOutcome.MISSED,
    "canceled": CallOutcome.MISSED,
    "hangup": CallOutcome.MISSED,
    "hang-up": CallOutcome.MISSED,
    "no_answer": CallOutcome.MISSED,
    "no-answer": CallOutcome.MISSED,
    "missed": CallOutcome.MISSED,
    "busy": CallOutcome.BUSY,
    "declined": CallOutcome.DECLINED,
    "rejected": CallOutcome.DECLINED,
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    """Whether ``current -> target`` is a legal edge."""
    if current in TERMINAL_STATES:
        return False
    if target in TERMINAL_STATES:
        return True
    return target in _TRANSITIONS[current]


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move session from {current.value} to {target.value}",
            details={"from_state": current.value, "to_state": target.value},
        )


def failure_category(reason: str | None) -> str | None:
    """Family-facing category for a failure reason."""
    if reason is None:
        return None
    try:
        return _FAILURE_CATEGORIES[FailureReason(reason)]
    except ValueError:
        return "unknown"


def normalize_outcome(status: str | None) -> CallOutcome:
    """Map a provider or client status string onto a CallOutcome."""
    if not status:
        return CallOutcome.FAILED
    return _OUTCOME_ALIASES.get(status.strip().lower(), CallOutcome.FAILED)
