"""Tests for the call session state machine rules."""

from __future__ import annotations

import pytest

from callpanion.core.call_state import (
    CallOutcome,
    FailureReason,
    SessionState,
    can_transition,
    failure_category,
    normalize_outcome,
    validate_transition,
)
from callpanion.core.exceptions import InvalidTransitionError


ORDER = [
    SessionState.CREATED,
    SessionState.CREDENTIAL_REQUESTED,
    SessionState.DISPATCHED,
    SessionState.RINGING,
    SessionState.ACTIVE,
]


class TestTransitions:
    """Forward-only edges between states."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (SessionState.CREATED, SessionState.CREDENTIAL_REQUESTED),
            (SessionState.CREDENTIAL_REQUESTED, SessionState.DISPATCHED),
            (SessionState.CREDENTIAL_REQUESTED, SessionState.ACTIVE),
            (SessionState.DISPATCHED, SessionState.RINGING),
            (SessionState.DISPATCHED, SessionState.ACTIVE),
            (SessionState.RINGING, SessionState.ACTIVE),
        ],
    )
    def test_forward_edges_allowed(self, current, target):
        assert can_transition(current, target)
        validate_transition(current, target)

    @pytest.mark.parametrize("current", ORDER)
    def test_terminal_reachable_from_every_open_state(self, current):
        assert can_transition(current, SessionState.ENDED)
        assert can_transition(current, SessionState.FAILED)

    def test_backward_moves_rejected(self):
        for i, current in enumerate(ORDER):
            for target in ORDER[: i + 1]:
                assert not can_transition(current, target), (current, target)

    def test_created_cannot_skip_to_active(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(SessionState.CREATED, SessionState.ACTIVE)

        assert exc_info.value.details == {"from_state": "created", "to_state": "active"}

    @pytest.mark.parametrize("terminal", [SessionState.ENDED, SessionState.FAILED])
    def test_nothing_leaves_a_terminal_state(self, terminal):
        for target in SessionState:
            assert not can_transition(terminal, target)

    def test_is_terminal(self):
        assert SessionState.ENDED.is_terminal
        assert SessionState.FAILED.is_terminal
        assert not SessionState.ACTIVE.is_terminal


class TestOutcomeNormalization:
    """Provider status strings map onto outcomes."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("done", CallOutcome.ANSWERED),
            ("Success", CallOutcome.ANSWERED),
            ("completed", CallOutcome.ANSWERED),
            ("cancelled", CallOutcome.MISSED),
            ("hang-up", CallOutcome.MISSED),
            ("no_answer", CallOutcome.MISSED),
            ("busy", CallOutcome.BUSY),
            ("rejected", CallOutcome.DECLINED),
            ("exploded", CallOutcome.FAILED),
            ("", CallOutcome.FAILED),
            (None, CallOutcome.FAILED),
        ],
    )
    def test_normalize_outcome(self, status, expected):
        assert normalize_outcome(status) == expected


class TestFailureCategory:
    def test_known_reasons(self):
        assert failure_category(FailureReason.CREDENTIAL_ISSUANCE.value) == "credential"
        assert failure_category(FailureReason.TIMEOUT.value) == "timeout"

    def test_no_reason(self):
        assert failure_category(None) is None

    def test_unknown_reason_is_generic(self):
        assert failure_category("provider_said_500") == "unknown"
