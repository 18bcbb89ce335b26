"""Orchestration services: pairing, sessions, security gate, realtime."""

from callpanion.services.credential_ledger import ClaimResult, CredentialLedger
from callpanion.services.orchestrator import (
    CallOrchestrator,
    ReconcileReport,
    StartCallResult,
    session_view,
)
from callpanion.services.push_targets import PushTargetRegistry
from callpanion.services.realtime import RealtimeHub, get_realtime_hub
from callpanion.services.reconciliation import ReconciliationScheduler
from callpanion.services.security_gate import CallerContext, SecurityGate
from callpanion.services.session_store import SessionStore

__all__ = [
    "CallOrchestrator",
    "CallerContext",
    "ClaimResult",
    "CredentialLedger",
    "PushTargetRegistry",
    "RealtimeHub",
    "ReconcileReport",
    "ReconciliationScheduler",
    "SecurityGate",
    "SessionStore",
    "StartCallResult",
    "get_realtime_hub",
    "session_view",
]
