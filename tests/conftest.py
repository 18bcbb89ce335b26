"""Pytest configuration and fixtures for CallPanion tests."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator
from uuid import UUID

import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Set test environment
os.environ["CALLPANION_ENV"] = "development"
os.environ["CALLPANION_DATABASE__URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CALLPANION_RECONCILE_ENABLED"] = "false"
os.environ["CALLPANION_JWT_SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"

from callpanion.config import Settings  # noqa: E402
from callpanion.core.exceptions import UpstreamError  # noqa: E402
from callpanion.db.models import (  # noqa: E402
    HouseholdMemberModel,
    HouseholdModel,
    RelativeModel,
)
from callpanion.db.session import create_test_engine, get_test_session_factory  # noqa: E402
from callpanion.integrations.conversation.base import (  # noqa: E402
    ConversationBroker,
    ConversationContext,
    ConversationCredential,
    ConversationStatus,
)
from callpanion.integrations.conversation.elevenlabs import build_dynamic_variables  # noqa: E402
from callpanion.integrations.push.base import (  # noqa: E402
    DeliveryResult,
    DeliveryStatus,
    PushBackend,
    PushBackendKind,
    PushNotification,
    PushTarget,
)
from callpanion.integrations.push.dispatcher import PushDispatcher  # noqa: E402
from callpanion.services.orchestrator import CallOrchestrator  # noqa: E402
from callpanion.services.realtime import RealtimeHub  # noqa: E402
from callpanion.services.security_gate import CallerContext, SecurityGate  # noqa: E402


ADMIN_ID = "user-admin"
MEMBER_ID = "user-member"
OUTSIDER_ID = "user-outsider"


# ============================================================================
# Test Doubles
# ============================================================================

class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeBroker(ConversationBroker):
    """Conversation broker that records requests instead of calling out."""

    provider = "elevenlabs"

    def __init__(self, *, fail: bool = False, with_conversation_ids: bool = False):
        self.fail = fail
        self.with_conversation_ids = with_conversation_ids
        self.requests: list[ConversationContext] = []
        self.statuses: dict[str, ConversationStatus] = {}
        self.status_error = False

    async def request_token(self, context: ConversationContext) -> ConversationCredential:
        self.requests.append(context)
        if self.fail:
            raise UpstreamError("Conversation provider unreachable", details={"status": 503})

        n = len(self.requests)
        return ConversationCredential(
            token=f"conv-token-{n}",
            agent_id="agent-test",
            provider_conversation_id=f"conv_{n}" if self.with_conversation_ids else None,
            dynamic_variables=build_dynamic_variables(context),
        )

    async def get_conversation_status(self, conversation_id: str) -> ConversationStatus | None:
        if self.status_error:
            raise UpstreamError("Conversation status lookup failed")
        return self.statuses.get(conversation_id)


class RecordingBackend(PushBackend):
    """Push backend that records sends and answers with a fixed result."""

    def __init__(
        self,
        kind: PushBackendKind,
        *,
        status: DeliveryStatus = DeliveryStatus.DELIVERED,
        error: Exception | None = None,
    ):
        self.kind = kind
        self.status = status
        self.error = error
        self.sent: list[tuple[PushTarget, PushNotification]] = []

    async def send(self, target: PushTarget, notification: PushNotification) -> DeliveryResult:
        self.sent.append((target, notification))
        if self.error is not None:
            raise self.error
        delivered = self.status == DeliveryStatus.DELIVERED
        return DeliveryResult(
            status=self.status,
            backend=self.kind.value,
            message_id=f"{self.kind.value}-msg-{len(self.sent)}" if delivered else None,
            error=None if delivered else "UNREGISTERED",
        )


@dataclass
class SeededHousehold:
    """Ids of a seeded household."""

    household_id: UUID
    relative_id: UUID
    other_relative_id: UUID
    admin_id: str
    member_id: str


async def seed_household(
    session,
    *,
    name: str = "Smith",
    admin_id: str = ADMIN_ID,
    member_id: str = MEMBER_ID,
) -> SeededHousehold:
    """Create a household with an admin, a member and two relatives."""
    household = HouseholdModel(name=name)
    session.add(household)
    await session.flush()

    relative = RelativeModel(household_id=household.id, first_name="Margaret", last_name=name)
    other = RelativeModel(household_id=household.id, first_name="Arthur", last_name=name)
    session.add_all(
        [
            HouseholdMemberModel(household_id=household.id, user_id=admin_id, role="admin"),
            HouseholdMemberModel(household_id=household.id, user_id=member_id, role="member"),
            relative,
            other,
        ]
    )
    await session.commit()

    return SeededHousehold(
        household_id=household.id,
        relative_id=relative.id,
        other_relative_id=other.id,
        admin_id=admin_id,
        member_id=member_id,
    )


# ============================================================================
# Settings and Clock
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Settings with test-friendly defaults."""
    return Settings(
        environment="test",
        debug=True,
        jwt_secret_key="test-secret-key-that-is-long-enough-for-hs256",
        reconcile_enabled=False,
        pairing_ttl_seconds=600,
        session_timeout_seconds=7200,
        scheduled_missed_after_seconds=900,
        max_concurrent_calls_per_household=3,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with all tables, fresh per test."""
    engine = await create_test_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed SQLite engine for tests that race separate connections."""
    engine = await create_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_test_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    """Database session for one test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def household(db_session) -> SeededHousehold:
    return await seed_household(db_session)


# ============================================================================
# Orchestrator Collaborators
# ============================================================================

@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fcm_backend() -> RecordingBackend:
    return RecordingBackend(PushBackendKind.FCM)


@pytest.fixture
def apns_backend() -> RecordingBackend:
    return RecordingBackend(PushBackendKind.APNS)


@pytest.fixture
def dispatcher(fcm_backend, apns_backend) -> PushDispatcher:
    return PushDispatcher({PushBackendKind.FCM: fcm_backend, PushBackendKind.APNS: apns_backend})


@pytest.fixture
def gate() -> SecurityGate:
    return SecurityGate(rate_limit=1000, window_seconds=60)


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture
def make_orchestrator(settings, gate, broker, dispatcher, hub, clock):
    """Build an orchestrator bound to a given database session."""

    def _make(session) -> CallOrchestrator:
        return CallOrchestrator(
            session,
            settings=settings,
            gate=gate,
            broker=broker,
            dispatcher=dispatcher,
            hub=hub,
            clock=clock,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, db_session) -> CallOrchestrator:
    return make_orchestrator(db_session)


@pytest.fixture
def admin() -> CallerContext:
    return CallerContext(user_id=ADMIN_ID, ip="192.0.2.10")


@pytest.fixture
def pair(orchestrator, household, admin):
    """Pair a device to a relative and return its device token."""

    async def _pair(
        *,
        relative_id: UUID | None = None,
        platform: str = "android",
        push_token: str | None = "fcm-device-token",
        voip_token: str | None = None,
    ) -> str:
        credential = await orchestrator.issue_pairing(
            admin,
            household.household_id,
            relative_id or household.relative_id,
        )
        device_info = {"device_id": "tablet-1", "platform": platform}
        if push_token:
            device_info["push_token"] = push_token
        if voip_token:
            device_info["voip_token"] = voip_token

        await orchestrator.claim_device(
            CallerContext(ip="198.51.100.7"),
            credential.code,
            credential.token,
            device_info,
        )
        return credential.token

    return _pair
