"""Dependency Injection for CallPanion.

Provides FastAPI dependency functions for services and components.
Ensures proper lifecycle management and testability.

Thread Safety:
    All singleton factories use threading.Lock() to prevent race conditions
    during concurrent initialization.

Usage:
    from callpanion.dependencies import OrchestratorDep

    @router.post("/calls")
    async def start_call(orchestrator: OrchestratorDep):
        ...
"""

from __future__ import annotations

import threading
from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callpanion.api.auth import AuthenticatedUser, get_optional_user
from callpanion.api.webhook_security import ProviderSignatureValidator, get_client_ip
from callpanion.config import Settings, get_settings
from callpanion.db.session import get_db as _get_db, get_session_factory
from callpanion.integrations.conversation.base import ConversationBroker
from callpanion.integrations.conversation.factory import get_conversation_broker
from callpanion.integrations.push.dispatcher import PushDispatcher
from callpanion.integrations.push.factory import get_push_dispatcher
from callpanion.services.orchestrator import CallOrchestrator
from callpanion.services.realtime import RealtimeHub, get_realtime_hub
from callpanion.services.security_gate import CallerContext, SecurityGate


# =============================================================================
# Thread-Safe Singleton Locks
# =============================================================================

_gate_lock = threading.Lock()
_webhook_lock = threading.Lock()


# =============================================================================
# Settings Dependency
# =============================================================================


def get_app_settings() -> Settings:
    """Get application settings.

    Returns cached settings instance.
    """
    return get_settings()


SettingsDep = Annotated[Settings, Depends(get_app_settings)]


# =============================================================================
# Database Dependencies
# =============================================================================


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session for request.

    Yields session that auto-commits on success, rolls back on error.
    """
    async for session in _get_db():
        yield session


DatabaseDep = Annotated[AsyncSession, Depends(get_db)]


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for connections that outlive a request (WebSockets)."""
    return get_session_factory()


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_db_session_factory)]


# =============================================================================
# Security Dependencies
# =============================================================================


_security_gate: SecurityGate | None = None
_webhook_validator: ProviderSignatureValidator | None = None


def get_security_gate() -> SecurityGate:
    """Get the process-wide security gate.

    Thread-safe via double-checked locking pattern.
    """
    global _security_gate

    if _security_gate is None:
        with _gate_lock:
            if _security_gate is None:
                settings = get_settings()
                _security_gate = SecurityGate(
                    settings.allowed_origins,
                    rate_limit=settings.rate_limit_per_window,
                    window_seconds=settings.rate_limit_window_seconds,
                    service_key=settings.service_api_key,
                )

    return _security_gate


SecurityGateDep = Annotated[SecurityGate, Depends(get_security_gate)]


def get_webhook_validator() -> ProviderSignatureValidator:
    """Get the conversation-provider webhook validator."""
    global _webhook_validator

    if _webhook_validator is None:
        with _webhook_lock:
            if _webhook_validator is None:
                conversation = get_settings().conversation
                _webhook_validator = ProviderSignatureValidator(
                    conversation.webhook_secret,
                    tolerance_seconds=conversation.webhook_tolerance_seconds,
                )

    return _webhook_validator


WebhookValidatorDep = Annotated[ProviderSignatureValidator, Depends(get_webhook_validator)]


def get_caller_context(
    request: Request,
    settings: SettingsDep,
    user: Annotated[AuthenticatedUser | None, Depends(get_optional_user)],
) -> CallerContext:
    """Build the caller context the security gate decides on."""
    return CallerContext(
        user_id=user.id if user else None,
        device_token=request.headers.get("X-Device-Token"),
        origin=request.headers.get("Origin"),
        ip=get_client_ip(request, settings.trusted_proxies),
        user_agent=request.headers.get("User-Agent"),
        service_key=request.headers.get("X-Service-Key"),
    )


CallerDep = Annotated[CallerContext, Depends(get_caller_context)]


# =============================================================================
# Provider Dependencies
# =============================================================================


def get_broker() -> ConversationBroker:
    """Get the process-wide conversation token broker."""
    return get_conversation_broker()


BrokerDep = Annotated[ConversationBroker, Depends(get_broker)]


def get_dispatcher() -> PushDispatcher:
    """Get the process-wide push dispatcher."""
    return get_push_dispatcher()


DispatcherDep = Annotated[PushDispatcher, Depends(get_dispatcher)]


def get_hub() -> RealtimeHub:
    """Get the process-wide realtime hub."""
    return get_realtime_hub()


HubDep = Annotated[RealtimeHub, Depends(get_hub)]


# =============================================================================
# Orchestrator
# =============================================================================


def build_orchestrator(
    session: AsyncSession,
    *,
    settings: Settings | None = None,
    gate: SecurityGate | None = None,
    broker: ConversationBroker | None = None,
    dispatcher: PushDispatcher | None = None,
    hub: RealtimeHub | None = None,
) -> CallOrchestrator:
    """Wire an orchestrator for one database session.

    Collaborators not passed in come from the process-wide singletons
    (the reconciliation scheduler builds orchestrators this way).
    """
    return CallOrchestrator(
        session,
        settings=settings if settings is not None else get_settings(),
        gate=gate if gate is not None else get_security_gate(),
        broker=broker if broker is not None else get_conversation_broker(),
        dispatcher=dispatcher if dispatcher is not None else get_push_dispatcher(),
        hub=hub if hub is not None else get_realtime_hub(),
    )


def get_orchestrator(
    db: DatabaseDep,
    settings: SettingsDep,
    gate: SecurityGateDep,
    broker: BrokerDep,
    dispatcher: DispatcherDep,
    hub: HubDep,
) -> CallOrchestrator:
    """Get an orchestrator bound to the request's database session."""
    return build_orchestrator(
        db,
        settings=settings,
        gate=gate,
        broker=broker,
        dispatcher=dispatcher,
        hub=hub,
    )


OrchestratorDep = Annotated[CallOrchestrator, Depends(get_orchestrator)]


def reset_dependencies() -> None:
    """Reset all cached dependencies (for testing).

    Does not clean up resources, just clears references.
    """
    global _security_gate, _webhook_validator

    _security_gate = None
    _webhook_validator = None
