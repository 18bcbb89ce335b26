"""Tests for the HTTP and WebSocket API."""

import json
import time

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from callpanion.api.auth import create_access_token
from callpanion.api.rate_limits import limiter
from callpanion.api.webhook_security import ProviderSignatureValidator, compute_signature
from callpanion.db.repositories.realtime import household_channel
from callpanion.db.session import close_db, create_session_factory, get_test_session_factory
from callpanion.dependencies import (
    get_app_settings,
    get_broker,
    get_db,
    get_db_session_factory,
    get_dispatcher,
    get_hub,
    get_security_gate,
    get_webhook_validator,
)
from callpanion.main import create_app
from callpanion.services.security_gate import SecurityGate

from conftest import ADMIN_ID, MEMBER_ID, OUTSIDER_ID, seed_household


WEBHOOK_SECRET = "wsec_api_test"


def bearer(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def device_headers(token: str) -> dict[str, str]:
    return {"X-Device-Token": token}


def signed(body: bytes, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    return {
        "elevenlabs-signature": f"t={timestamp},v0={compute_signature(secret, timestamp, body)}",
        "Content-Type": "application/json",
    }


@pytest.fixture(autouse=True)
def reset_route_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def app(settings, session_factory, gate, broker, dispatcher, hub):
    """Application wired to the test database and collaborators."""
    application = create_app()

    async def override_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_db
    application.dependency_overrides[get_app_settings] = lambda: settings
    application.dependency_overrides[get_broker] = lambda: broker
    application.dependency_overrides[get_dispatcher] = lambda: dispatcher
    application.dependency_overrides[get_db_session_factory] = lambda: session_factory
    application.dependency_overrides[get_security_gate] = lambda: gate
    application.dependency_overrides[get_hub] = lambda: hub
    application.dependency_overrides[get_webhook_validator] = lambda: ProviderSignatureValidator(
        WEBHOOK_SECRET
    )
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


async def pair_device(client, household, *, push_token: str = "fcm-api-token") -> str:
    issued = await client.post(
        "/api/v1/pairing/codes",
        json={
            "household_id": str(household.household_id),
            "relative_id": str(household.relative_id),
        },
        headers=bearer(ADMIN_ID),
    )
    assert issued.status_code == 201
    code = issued.json()

    claimed = await client.post(
        "/api/v1/pairing/claim",
        json={
            "code": code["code"],
            "token": code["token"],
            "device_info": {"device_id": "tablet-1", "platform": "android", "push_token": push_token},
        },
    )
    assert claimed.status_code == 200
    return code["token"]


async def start_call(client, household, user_id: str = ADMIN_ID) -> httpx.Response:
    return await client.post(
        "/api/v1/calls",
        json={
            "household_id": str(household.household_id),
            "relative_id": str(household.relative_id),
        },
        headers=bearer(user_id),
    )


class TestPairingAPI:
    @pytest.mark.asyncio
    async def test_issue_and_claim(self, client, household):
        issued = await client.post(
            "/api/v1/pairing/codes",
            json={
                "household_id": str(household.household_id),
                "relative_id": str(household.relative_id),
            },
            headers=bearer(ADMIN_ID),
        )

        assert issued.status_code == 201
        body = issued.json()
        assert len(body["code"]) == 6
        assert body["expires_at"].endswith("+00:00")

        claimed = await client.post(
            "/api/v1/pairing/claim",
            json={"code": body["code"], "token": body["token"], "device_info": {"device_id": "tablet-1"}},
        )
        assert claimed.status_code == 200
        assert claimed.json()["relative_name"] == "Margaret"

        again = await client.post(
            "/api/v1/pairing/claim",
            json={"code": body["code"], "token": body["token"]},
        )
        assert again.status_code == 404
        assert again.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_issue_requires_bearer(self, client, household):
        response = await client.post(
            "/api/v1/pairing/codes",
            json={
                "household_id": str(household.household_id),
                "relative_id": str(household.relative_id),
            },
        )
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_issue_by_outsider_forbidden(self, client, household):
        response = await client.post(
            "/api/v1/pairing/codes",
            json={
                "household_id": str(household.household_id),
                "relative_id": str(household.relative_id),
            },
            headers=bearer(OUTSIDER_ID),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_malformed_code(self, client):
        response = await client.post("/api/v1/pairing/claim", json={"code": "12ab", "token": "x"})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_claim_rate_limited(self, app, client, household):
        limited = SecurityGate(rate_limit=1, window_seconds=60)
        app.dependency_overrides[get_security_gate] = lambda: limited

        first = await client.post("/api/v1/pairing/claim", json={"code": "123456", "token": "nope"})
        second = await client.post("/api/v1/pairing/claim", json={"code": "123456", "token": "nope"})

        assert first.status_code == 404
        assert second.status_code == 429
        assert second.json()["error"] == "RATE_LIMITED"
        assert int(second.headers["Retry-After"]) >= 1


class TestCallFlowAPI:
    """Pair, register, call, report."""

    @pytest.mark.asyncio
    async def test_full_call_flow(self, client, household, fcm_backend):
        device_token = await pair_device(client, household)

        registered = await client.post(
            "/api/v1/devices/push-target",
            json={"push_token": "fcm-refreshed", "platform": "android"},
            headers=device_headers(device_token),
        )
        assert registered.status_code == 201
        assert "fcm-refreshed" not in registered.text

        started = await start_call(client, household)
        assert started.status_code == 201
        body = started.json()
        session_id = body["session"]["id"]
        assert body["session"]["state"] == "dispatched"
        assert body["delivery"]["status"] == "delivered"
        assert "token" not in body["conversation"]
        assert fcm_backend.sent[0][0].device_identifier == "fcm-refreshed"

        credential = await client.post(
            f"/api/v1/calls/{session_id}/credential",
            headers=device_headers(device_token),
        )
        assert credential.status_code == 200
        assert credential.json()["token"] == "conv-token-2"

        ringing = await client.post(f"/api/v1/calls/{session_id}/ringing", headers=device_headers(device_token))
        assert ringing.json()["state"] == "ringing"

        active = await client.post(
            f"/api/v1/calls/{session_id}/conversation",
            json={"provider_conversation_id": "conv_api"},
            headers=device_headers(device_token),
        )
        assert active.json()["state"] == "active"

        ended = await client.post(
            f"/api/v1/calls/{session_id}/outcome",
            json={"outcome": "answered", "duration_seconds": 42},
            headers=device_headers(device_token),
        )
        assert ended.status_code == 200
        assert ended.json()["state"] == "ended"

        fetched = await client.get(f"/api/v1/calls/{session_id}", headers=bearer(MEMBER_ID))
        assert fetched.status_code == 200
        assert fetched.json()["outcome"] == "answered"
        assert fetched.json()["duration_seconds"] == 42

        repeated = await client.post(
            f"/api/v1/calls/{session_id}/outcome",
            json={"outcome": "missed"},
            headers=bearer(ADMIN_ID),
        )
        assert repeated.status_code == 409
        assert repeated.json()["error"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_second_call_for_same_slot_conflicts(self, client, household):
        await pair_device(client, household)
        await start_call(client, household)

        response = await start_call(client, household)

        assert response.status_code == 409
        assert response.json()["error"] == "ACTIVE_SESSION_EXISTS"

    @pytest.mark.asyncio
    async def test_credential_failure_returns_502(self, client, household, broker, fcm_backend):
        await pair_device(client, household)
        broker.fail = True

        response = await start_call(client, household)

        assert response.status_code == 502
        session = response.json()["session"]
        assert session["state"] == "failed"
        assert session["failure_category"] == "credential"
        assert fcm_backend.sent == []

    @pytest.mark.asyncio
    async def test_upstream_error_body_is_generic(self, client, household, broker):
        device_token = await pair_device(client, household)
        started = await start_call(client, household)
        broker.fail = True

        response = await client.post(
            f"/api/v1/calls/{started.json()['session']['id']}/credential",
            headers=device_headers(device_token),
        )

        assert response.status_code == 502
        assert response.json() == {
            "error": "UPSTREAM_ERROR",
            "message": "An upstream service failed",
        }

    @pytest.mark.asyncio
    async def test_start_call_without_auth(self, client, household):
        response = await client.post(
            "/api/v1/calls",
            json={
                "household_id": str(household.household_id),
                "relative_id": str(household.relative_id),
            },
        )
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_start_call_validation(self, client, household):
        response = await client.post(
            "/api/v1/calls",
            json={"household_id": str(household.household_id)},
            headers=bearer(ADMIN_ID),
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"][0]["field"] == "relative_id"

    @pytest.mark.asyncio
    async def test_negative_duration_rejected(self, client, household):
        await pair_device(client, household)
        started = await start_call(client, household)

        response = await client.post(
            f"/api/v1/calls/{started.json()['session']['id']}/outcome",
            json={"outcome": "answered", "duration_seconds": -5},
            headers=bearer(ADMIN_ID),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_disallowed_origin(self, app, client, household):
        restricted = SecurityGate(["https://app.callpanion.org"])
        app.dependency_overrides[get_security_gate] = lambda: restricted
        await pair_device(client, household)

        response = await client.post(
            "/api/v1/calls",
            json={
                "household_id": str(household.household_id),
                "relative_id": str(household.relative_id),
            },
            headers={**bearer(ADMIN_ID), "Origin": "https://evil.example"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_scheduler_starts_call_with_service_key(self, app, client, household):
        scheduler_gate = SecurityGate(service_key="scheduler-key")
        app.dependency_overrides[get_security_gate] = lambda: scheduler_gate
        body = {
            "household_id": str(household.household_id),
            "relative_id": str(household.relative_id),
            "call_type": "telephony",
            "trigger": "scheduled",
        }

        started = await client.post("/api/v1/calls", json=body, headers={"X-Service-Key": "scheduler-key"})
        refused = await client.post(
            "/api/v1/calls",
            json={**body, "relative_id": str(household.other_relative_id)},
            headers={"X-Service-Key": "guessed"},
        )

        assert started.status_code == 201
        assert started.json()["session"]["trigger"] == "scheduled"
        assert refused.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_session(self, client):
        response = await client.get(
            "/api/v1/calls/00000000-0000-0000-0000-000000000000",
            headers=bearer(ADMIN_ID),
        )
        assert response.status_code == 404


class TestWebhookAPI:
    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        body = json.dumps({"type": "post_call_transcription", "data": {}}).encode()

        response = await client.post(
            "/api/v1/webhooks/conversation",
            content=body,
            headers=signed(body, secret="wrong"),
        )
        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_unmatched_event_acknowledged(self, client):
        body = json.dumps({"type": "post_call_transcription", "data": {"conversation_id": "conv_x"}}).encode()

        response = await client.post("/api/v1/webhooks/conversation", content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_event_finalizes_session(self, client, household):
        await pair_device(client, household)
        started = await start_call(client, household)
        session_id = started.json()["session"]["id"]

        body = json.dumps(
            {
                "type": "post_call_transcription",
                "data": {
                    "conversation_id": "conv_hook",
                    "status": "done",
                    "metadata": {"call_duration_secs": 75},
                    "analysis": {"transcript_summary": "Lovely chat"},
                    "conversation_initiation_client_data": {
                        "dynamic_variables": {"session_id": session_id},
                    },
                },
            }
        ).encode()

        response = await client.post("/api/v1/webhooks/conversation", content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "session_id": session_id, "state": "ended"}

        fetched = await client.get(f"/api/v1/calls/{session_id}", headers=bearer(ADMIN_ID))
        assert fetched.json()["duration_seconds"] == 75

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        body = b"not json"

        response = await client.post("/api/v1/webhooks/conversation", content=body, headers=signed(body))

        assert response.status_code == 400


class TestEventsAPI:
    @pytest.mark.asyncio
    async def test_recent_events(self, client, household):
        await pair_device(client, household)
        await start_call(client, household)

        response = await client.get(
            f"/api/v1/households/{household.household_id}/events",
            headers=bearer(MEMBER_ID),
        )

        assert response.status_code == 200
        events = response.json()["events"]
        assert [e["event"] for e in events] == ["call_started"]
        assert events[0]["channel"] == household_channel(household.household_id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_events(self, client, household):
        response = await client.get(
            f"/api/v1/households/{household.household_id}/events",
            headers=bearer(OUTSIDER_ID),
        )
        assert response.status_code == 403


class TestHealthAPI:
    @pytest.mark.asyncio
    async def test_health(self, client):
        try:
            response = await client.get("/health")
        finally:
            await close_db()

        assert response.status_code == 200
        body = response.json()
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["push"]["backends"] == []
        assert body["status"] == "degraded"


@pytest_asyncio.fixture
async def stream_household(file_engine):
    async with get_test_session_factory(file_engine)() as session:
        ids = await seed_household(session)
    return ids, file_engine.url.render_as_string(hide_password=False)


@pytest.fixture
def stream_app(app, stream_household):
    """App whose WebSocket handler opens connections on the client's own loop."""
    _, url = stream_household
    engine = create_async_engine(url, poolclass=NullPool, connect_args={"check_same_thread": False})
    app.dependency_overrides[get_db_session_factory] = lambda: create_session_factory(engine)
    return app


class TestRealtimeStream:
    """Household WebSocket authentication and fan-out."""

    @pytest.mark.asyncio
    async def test_missing_token_closes(self, stream_app, stream_household):
        ids, _ = stream_household

        with TestClient(stream_app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(f"/api/v1/ws/households/{ids.household_id}"):
                    pass

        assert exc_info.value.code == 4401

    @pytest.mark.asyncio
    async def test_bad_token_closes(self, stream_app, stream_household):
        ids, _ = stream_household

        with TestClient(stream_app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(f"/api/v1/ws/households/{ids.household_id}?token=garbage"):
                    pass

        assert exc_info.value.code == 4401

    @pytest.mark.asyncio
    async def test_outsider_closes_forbidden(self, stream_app, stream_household):
        ids, _ = stream_household
        token = create_access_token(OUTSIDER_ID)

        with TestClient(stream_app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(f"/api/v1/ws/households/{ids.household_id}?token={token}"):
                    pass

        assert exc_info.value.code == 4403

    @pytest.mark.asyncio
    async def test_member_receives_events(self, stream_app, stream_household, hub):
        ids, _ = stream_household
        token = create_access_token(MEMBER_ID)
        channel = household_channel(ids.household_id)

        with TestClient(stream_app) as client:
            with client.websocket_connect(f"/api/v1/ws/households/{ids.household_id}?token={token}") as ws:
                deadline = time.monotonic() + 5
                while client.portal.call(hub.subscriber_count, channel) == 0:
                    assert time.monotonic() < deadline
                    time.sleep(0.01)

                client.portal.call(hub.publish, channel, {"event": "call_started", "payload": {"n": 1}})
                message = ws.receive_json()

        assert message == {"event": "call_started", "payload": {"n": 1}}
