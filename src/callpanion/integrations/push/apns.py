"""Apple Push Notification service backend.

Uses token-based provider authentication: an ES256 JWT signed with the
team's .p8 key, valid for an hour and cached until shortly before that.
Call wakes go to the PushKit VoIP topic when the device registered a
VoIP token, otherwise to the app's standard alert topic.

API Documentation: https://developer.apple.com/documentation/usernotifications
"""
from __future__ import annotations

import base64
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from callpanion.core.exceptions import DeliveryError
from callpanion.core.logging import get_logger
from callpanion.core.retry import PROVIDER_RETRY_CONFIG, RetryConfig, retry_async
from callpanion.integrations.push.base import (
    DeliveryResult,
    DeliveryStatus,
    PushBackend,
    PushBackendKind,
    PushNotification,
    PushTarget,
    stringify_data,
)
from callpanion.integrations.push.token_cache import AccessTokenCache, CachedToken

log = get_logger(__name__)

# Reasons meaning the provider JWT itself must be re-minted
_PROVIDER_TOKEN_REASONS = {"ExpiredProviderToken", "InvalidProviderToken"}

# Reasons meaning the device token is unusable
_DEVICE_TOKEN_REASONS = {"BadDeviceToken", "DeviceTokenNotForTopic", "Unregistered"}


def load_signing_key(
    private_key: str = "",
    private_key_base64: str = "",
) -> ec.EllipticCurvePrivateKey:
    """Load the APNs .p8 key from PEM text or its base64 encoding.

    The base64 form may wrap either the PEM text or raw PKCS8 DER.
    """
    if private_key:
        raw = private_key.replace("\\n", "\n").encode("utf-8")
    elif private_key_base64:
        raw = base64.b64decode(private_key_base64)
    else:
        raise ValueError("No APNs private key configured")

    if raw.lstrip().startswith(b"-----BEGIN"):
        key = serialization.load_pem_private_key(raw, password=None)
    else:
        key = serialization.load_der_private_key(raw, password=None)

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("APNs key must be an EC (P-256) private key")
    return key


class APNsBackend(PushBackend):
    """APNs HTTP/2 backend.

    Attributes:
        bundle_id: Standard alert topic
        voip_topic: PushKit topic used for VoIP wakes
        host: Production or sandbox gateway
    """

    kind = PushBackendKind.APNS
    PRODUCTION_HOST = "https://api.push.apple.com"
    SANDBOX_HOST = "https://api.sandbox.push.apple.com"
    TOKEN_LIFETIME = 3600

    def __init__(
        self,
        *,
        key_id: str,
        team_id: str,
        signing_key: ec.EllipticCurvePrivateKey,
        bundle_id: str,
        voip_topic: str | None = None,
        production: bool = False,
        client: httpx.AsyncClient | None = None,
        token_cache: AccessTokenCache | None = None,
        clock: Callable[[], float] = time.time,
        retry_config: RetryConfig = PROVIDER_RETRY_CONFIG,
        timeout: float = 10.0,
    ) -> None:
        if not (key_id and team_id and bundle_id):
            raise ValueError("APNs key_id, team_id and bundle_id are required")

        self.key_id = key_id
        self.team_id = team_id
        self.bundle_id = bundle_id
        self.voip_topic = voip_topic or f"{bundle_id}.voip"
        self.host = self.PRODUCTION_HOST if production else self.SANDBOX_HOST
        self._signing_key = signing_key
        self._clock = clock
        self._retry_config = retry_config

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(http2=True, timeout=timeout)
        self._tokens = token_cache or AccessTokenCache(
            self._mint_provider_token,
            name="apns",
            clock=clock,
        )

    @property
    def token_cache(self) -> AccessTokenCache:
        return self._tokens

    async def _mint_provider_token(self) -> CachedToken:
        """Sign a provider authentication token (ES256, one hour)."""
        now = int(self._clock())
        token = jwt.encode(
            {"iss": self.team_id, "iat": now},
            self._signing_key,
            algorithm="ES256",
            headers={"kid": self.key_id},
        )
        return CachedToken(value=token, expires_at=now + self.TOKEN_LIFETIME)

    def build_request(
        self,
        target: PushTarget,
        notification: PushNotification,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Build (device token, headers without auth, payload) for a push."""
        use_voip = notification.call_wake and target.supports_voip
        device_token = target.voip_identifier if use_voip else target.device_identifier

        headers = {
            "apns-topic": self.voip_topic if use_voip else self.bundle_id,
            "apns-push-type": "voip" if use_voip else "alert",
            "apns-priority": "10" if notification.call_wake else "5",
        }
        if notification.call_wake:
            headers["apns-expiration"] = "0"

        aps: dict[str, Any] = {
            "alert": {"title": notification.title, "body": notification.body},
            "sound": "default",
            "badge": 1,
            "content-available": 1,
            "mutable-content": 1,
        }
        if use_voip:
            aps["category"] = "INCOMING_CALL"
            aps["interruption-level"] = "critical"

        payload = {
            "aps": aps,
            **stringify_data(
                {
                    **notification.data,
                    "household_id": target.owner_household_id,
                    "relative_id": target.owner_relative_id,
                    "timestamp": datetime.fromtimestamp(
                        self._clock(), tz=timezone.utc
                    ).isoformat(),
                }
            ),
        }
        return device_token, headers, payload

    async def send(self, target: PushTarget, notification: PushNotification) -> DeliveryResult:
        """Send one notification through APNs.

        A rejected provider token is re-minted and the push sent once more.

        Raises:
            DeliveryError: Transport failure, rejected provider token or gateway error
        """
        device_token, headers, payload = self.build_request(target, notification)
        response = await self._post(device_token, headers, payload)

        if response.status_code != 200 and _reason(response) in _PROVIDER_TOKEN_REASONS:
            log.warning("APNs provider token rejected, refreshing", reason=_reason(response))
            self._tokens.invalidate()
            response = await self._post(device_token, headers, payload)

        if response.status_code == 200:
            return DeliveryResult(
                status=DeliveryStatus.DELIVERED,
                backend=self.kind.value,
                message_id=response.headers.get("apns-id"),
                sent_at=datetime.now(timezone.utc),
            )

        reason = _reason(response)

        if reason in _PROVIDER_TOKEN_REASONS:
            self._tokens.invalidate()
            raise DeliveryError(
                "APNs rejected the provider token",
                details={"status": response.status_code, "reason": reason},
            )

        if reason in _DEVICE_TOKEN_REASONS or response.status_code == 410:
            return DeliveryResult(
                status=DeliveryStatus.REJECTED,
                backend=self.kind.value,
                error=reason or f"http_{response.status_code}",
            )

        raise DeliveryError(
            "APNs send failed",
            details={"status": response.status_code, "reason": reason},
        )

    async def _post(
        self,
        device_token: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> httpx.Response:
        provider_token = await self._tokens.get()
        try:
            return await retry_async(
                self._client.post,
                f"{self.host}/3/device/{device_token}",
                json=payload,
                headers={**headers, "authorization": f"bearer {provider_token}"},
                config=self._retry_config,
            )
        except httpx.HTTPError as e:
            raise DeliveryError("APNs request failed", cause=e)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _reason(response: httpx.Response) -> str | None:
    """APNs error bodies look like {"reason": "BadDeviceToken"}."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("reason") if isinstance(body, dict) else None
