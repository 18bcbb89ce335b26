"""Tests for the FCM and APNs backends and the push dispatcher."""

from __future__ import annotations

import json
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from callpanion.core.exceptions import DeliveryError, ForbiddenError
from callpanion.core.retry import RetryConfig
from callpanion.integrations.push.apns import APNsBackend, load_signing_key
from callpanion.integrations.push.base import (
    DeliveryStatus,
    Platform,
    PushBackendKind,
    PushNotification,
    PushTarget,
    select_backend,
    stringify_data,
)
from callpanion.integrations.push.dispatcher import PushDispatcher
from callpanion.integrations.push.fcm import FCMBackend

from conftest import RecordingBackend


NO_RETRY = RetryConfig(max_attempts=1)
EPOCH = 1_700_000_000.0
TOKEN_URI = "https://oauth2.test/token"


def epoch_clock() -> float:
    return EPOCH


@pytest.fixture(scope="module")
def service_account() -> dict:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return {
        "type": "service_account",
        "project_id": "callpanion-test",
        "private_key_id": "key-1",
        "private_key": pem,
        "client_email": "push@callpanion-test.iam.gserviceaccount.com",
        "token_uri": TOKEN_URI,
    }


@pytest.fixture(scope="module")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def make_target(platform: Platform = Platform.ANDROID, **kwargs) -> PushTarget:
    defaults = {
        "id": uuid4(),
        "device_identifier": "device-token-abc",
        "platform": platform,
        "owner_household_id": uuid4(),
        "owner_relative_id": uuid4(),
    }
    defaults.update(kwargs)
    return PushTarget(**defaults)


def incoming_call(**kwargs) -> PushNotification:
    return PushNotification(
        title="Incoming call",
        body="Your family is calling",
        data={"type": "incoming_call", "session_id": "s-1", "attempt": 1, "voip": True},
        **kwargs,
    )


class GatewayRecorder:
    """MockTransport handler answering token and send requests."""

    def __init__(self, send_responses: list[httpx.Response] | None = None):
        self.send_responses = list(send_responses or [])
        self.token_requests: list[httpx.Request] = []
        self.send_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URI:
            self.token_requests.append(request)
            n = len(self.token_requests)
            return httpx.Response(200, json={"access_token": f"ya29.token-{n}", "expires_in": 3600})

        self.send_requests.append(request)
        if self.send_responses:
            return self.send_responses.pop(0)
        return httpx.Response(200, json={"name": "projects/callpanion-test/messages/1"})


def fcm_backend(service_account, recorder: GatewayRecorder) -> FCMBackend:
    return FCMBackend(
        service_account,
        client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        clock=epoch_clock,
        retry_config=NO_RETRY,
    )


class TestStringifyData:
    def test_values_become_strings(self):
        assert stringify_data({"a": 1, "b": True, "c": None, "d": {"x": 1}}) == {
            "a": "1",
            "b": "true",
            "d": '{"x":1}',
        }


class TestSelectBackend:
    def test_platform_mapping(self):
        assert select_backend("android") == PushBackendKind.FCM
        assert select_backend(Platform.IOS) == PushBackendKind.APNS

    def test_unknown_platform(self):
        with pytest.raises(ValueError):
            select_backend("symbian")


class TestFCMBackend:
    """FCM HTTP v1 requests against a mock gateway."""

    @pytest.mark.asyncio
    async def test_send_builds_v1_envelope(self, service_account):
        recorder = GatewayRecorder()
        backend = fcm_backend(service_account, recorder)
        target = make_target()

        result = await backend.send(target, incoming_call())

        assert result.status == DeliveryStatus.DELIVERED
        assert result.message_id == "projects/callpanion-test/messages/1"

        request = recorder.send_requests[0]
        assert request.url.path == "/v1/projects/callpanion-test/messages:send"
        assert request.headers["authorization"] == "Bearer ya29.token-1"

        message = json.loads(request.content)["message"]
        assert message["token"] == "device-token-abc"
        assert message["android"]["priority"] == "high"
        assert message["android"]["notification"]["channel_id"] == "callpanion_calls"
        assert message["data"]["session_id"] == "s-1"
        assert message["data"]["attempt"] == "1"
        assert message["data"]["voip"] == "true"
        assert message["data"]["household_id"] == str(target.owner_household_id)
        assert all(isinstance(v, str) for v in message["data"].values())

    @pytest.mark.asyncio
    async def test_token_exchange_uses_jwt_bearer_grant(self, service_account):
        recorder = GatewayRecorder()
        backend = fcm_backend(service_account, recorder)

        await backend.send(make_target(), incoming_call())

        form = parse_qs(recorder.token_requests[0].content.decode())
        assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
        claims = jwt.decode(form["assertion"][0], options={"verify_signature": False})
        assert claims["iss"] == service_account["client_email"]
        assert claims["aud"] == TOKEN_URI
        assert claims["scope"] == "https://www.googleapis.com/auth/firebase.messaging"

    @pytest.mark.asyncio
    async def test_access_token_fetched_once_across_sends(self, service_account):
        recorder = GatewayRecorder()
        backend = fcm_backend(service_account, recorder)

        for _ in range(3):
            await backend.send(make_target(), incoming_call())

        assert len(recorder.token_requests) == 1
        assert len(recorder.send_requests) == 3

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(self, service_account):
        recorder = GatewayRecorder([httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}})])
        backend = fcm_backend(service_account, recorder)

        with pytest.raises(DeliveryError):
            await backend.send(make_target(), incoming_call())

        await backend.send(make_target(), incoming_call())
        assert len(recorder.token_requests) == 2
        assert recorder.send_requests[-1].headers["authorization"] == "Bearer ya29.token-2"

    @pytest.mark.asyncio
    async def test_unregistered_token_is_rejected(self, service_account):
        body = {
            "error": {
                "code": 404,
                "status": "NOT_FOUND",
                "details": [
                    {
                        "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                        "errorCode": "UNREGISTERED",
                    }
                ],
            }
        }
        recorder = GatewayRecorder([httpx.Response(404, json=body)])
        backend = fcm_backend(service_account, recorder)

        result = await backend.send(make_target(), incoming_call())

        assert result.status == DeliveryStatus.REJECTED
        assert result.error == "UNREGISTERED"

    @pytest.mark.asyncio
    async def test_server_error_raises(self, service_account):
        recorder = GatewayRecorder([httpx.Response(503, json={"error": {"status": "UNAVAILABLE"}})])
        backend = fcm_backend(service_account, recorder)

        with pytest.raises(DeliveryError) as exc_info:
            await backend.send(make_target(), incoming_call())
        assert exc_info.value.details["error"] == "UNAVAILABLE"

    def test_project_id_required(self, service_account):
        info = {k: v for k, v in service_account.items() if k != "project_id"}
        with pytest.raises(ValueError):
            FCMBackend(info, client=httpx.AsyncClient())


class APNsRecorder:
    def __init__(self, responses: list[httpx.Response] | None = None):
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, headers={"apns-id": "apns-uuid-1"})


def apns_backend(ec_key, recorder: APNsRecorder, **kwargs) -> APNsBackend:
    return APNsBackend(
        key_id="KEY123",
        team_id="TEAM456",
        signing_key=ec_key,
        bundle_id="org.callpanion.app",
        client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        clock=epoch_clock,
        retry_config=NO_RETRY,
        **kwargs,
    )


class TestAPNsBackend:
    """APNs requests against a mock gateway."""

    @pytest.mark.asyncio
    async def test_voip_wake_uses_pushkit_topic(self, ec_key):
        recorder = APNsRecorder()
        backend = apns_backend(ec_key, recorder)
        target = make_target(Platform.IOS, voip_identifier="voip-token-xyz")

        result = await backend.send(target, incoming_call())

        assert result.status == DeliveryStatus.DELIVERED
        assert result.message_id == "apns-uuid-1"

        request = recorder.requests[0]
        assert request.url.host == "api.sandbox.push.apple.com"
        assert request.url.path == "/3/device/voip-token-xyz"
        assert request.headers["apns-topic"] == "org.callpanion.app.voip"
        assert request.headers["apns-push-type"] == "voip"
        assert request.headers["apns-priority"] == "10"
        assert request.headers["apns-expiration"] == "0"

        payload = json.loads(request.content)
        assert payload["aps"]["category"] == "INCOMING_CALL"
        assert payload["session_id"] == "s-1"

    @pytest.mark.asyncio
    async def test_provider_token_is_es256_with_kid(self, ec_key):
        recorder = APNsRecorder()
        backend = apns_backend(ec_key, recorder)

        await backend.send(make_target(Platform.IOS), incoming_call())

        scheme, token = recorder.requests[0].headers["authorization"].split(" ", 1)
        assert scheme == "bearer"
        header = jwt.get_unverified_header(token)
        assert header["alg"] == "ES256"
        assert header["kid"] == "KEY123"
        claims = jwt.decode(token, ec_key.public_key(), algorithms=["ES256"])
        assert claims == {"iss": "TEAM456", "iat": int(EPOCH)}

    def test_alert_fallback_without_voip_token(self, ec_key):
        backend = apns_backend(ec_key, APNsRecorder())
        target = make_target(Platform.IOS)

        device_token, headers, payload = backend.build_request(target, incoming_call())

        assert device_token == "device-token-abc"
        assert headers["apns-topic"] == "org.callpanion.app"
        assert headers["apns-push-type"] == "alert"
        assert "category" not in payload["aps"]

    def test_voip_disabled_by_capabilities(self, ec_key):
        backend = apns_backend(ec_key, APNsRecorder())
        target = make_target(Platform.IOS, voip_identifier="voip-token", capabilities={"voip": False})

        device_token, headers, _ = backend.build_request(target, incoming_call())

        assert device_token == "device-token-abc"
        assert headers["apns-push-type"] == "alert"

    def test_production_host(self, ec_key):
        backend = apns_backend(ec_key, APNsRecorder(), production=True)
        assert backend.host == APNsBackend.PRODUCTION_HOST

    @pytest.mark.asyncio
    async def test_bad_device_token_is_rejected(self, ec_key):
        recorder = APNsRecorder([httpx.Response(400, json={"reason": "BadDeviceToken"})])
        backend = apns_backend(ec_key, recorder)

        result = await backend.send(make_target(Platform.IOS), incoming_call())

        assert result.status == DeliveryStatus.REJECTED
        assert result.error == "BadDeviceToken"

    @pytest.mark.asyncio
    async def test_expired_provider_token_is_reminted_once(self, ec_key):
        recorder = APNsRecorder([httpx.Response(403, json={"reason": "ExpiredProviderToken"})])
        backend = apns_backend(ec_key, recorder)

        result = await backend.send(make_target(Platform.IOS), incoming_call())

        assert result.status == DeliveryStatus.DELIVERED
        assert len(recorder.requests) == 2
        assert backend.token_cache.refresh_count == 2

    @pytest.mark.asyncio
    async def test_provider_token_rejected_twice_raises(self, ec_key):
        recorder = APNsRecorder(
            [
                httpx.Response(403, json={"reason": "InvalidProviderToken"}),
                httpx.Response(403, json={"reason": "InvalidProviderToken"}),
            ]
        )
        backend = apns_backend(ec_key, recorder)

        with pytest.raises(DeliveryError):
            await backend.send(make_target(Platform.IOS), incoming_call())

        assert len(recorder.requests) == 2

    def test_load_signing_key_from_pem(self, ec_key):
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

        loaded = load_signing_key(private_key=pem.replace("\n", "\\n"))
        assert loaded.public_key().public_numbers() == ec_key.public_key().public_numbers()

    def test_load_signing_key_requires_input(self):
        with pytest.raises(ValueError):
            load_signing_key()


class TestPushDispatcher:
    """Routing and binding checks."""

    @pytest.mark.asyncio
    async def test_routes_by_platform(self):
        fcm = RecordingBackend(PushBackendKind.FCM)
        apns = RecordingBackend(PushBackendKind.APNS)
        dispatcher = PushDispatcher({PushBackendKind.FCM: fcm, PushBackendKind.APNS: apns})
        target = make_target(Platform.IOS)

        result = await dispatcher.notify(
            target,
            incoming_call(),
            household_id=target.owner_household_id,
            relative_id=target.owner_relative_id,
        )

        assert result.backend == "apns"
        assert len(apns.sent) == 1
        assert fcm.sent == []

    @pytest.mark.asyncio
    async def test_no_target_is_skipped(self):
        dispatcher = PushDispatcher({})

        result = await dispatcher.notify(
            None, incoming_call(), household_id=uuid4(), relative_id=uuid4()
        )
        assert result.status == DeliveryStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_foreign_target_refused(self):
        fcm = RecordingBackend(PushBackendKind.FCM)
        dispatcher = PushDispatcher({PushBackendKind.FCM: fcm})
        target = make_target()

        with pytest.raises(ForbiddenError):
            await dispatcher.notify(
                target,
                incoming_call(),
                household_id=target.owner_household_id,
                relative_id=uuid4(),
            )
        assert fcm.sent == []

    @pytest.mark.asyncio
    async def test_missing_backend_raises(self):
        dispatcher = PushDispatcher({PushBackendKind.FCM: RecordingBackend(PushBackendKind.FCM)})
        target = make_target(Platform.IOS)

        with pytest.raises(DeliveryError):
            await dispatcher.notify(
                target,
                incoming_call(),
                household_id=target.owner_household_id,
                relative_id=target.owner_relative_id,
            )

    @pytest.mark.asyncio
    async def test_backend_failure_propagates(self):
        failing = RecordingBackend(PushBackendKind.FCM, error=DeliveryError("gateway down"))
        dispatcher = PushDispatcher({PushBackendKind.FCM: failing})
        target = make_target()

        with pytest.raises(DeliveryError):
            await dispatcher.notify(
                target,
                incoming_call(),
                household_id=target.owner_household_id,
                relative_id=target.owner_relative_id,
            )
