"""Firebase Cloud Messaging (HTTP v1) push backend.

Authenticates as a Google service account: a short-lived assertion is
signed with the account's RSA key and exchanged for an OAuth access
token, which is cached until shortly before it expires.

API Documentation: https://firebase.google.com/docs/cloud-messaging/send-message
"""
from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from google.auth import crypt
from google.auth import jwt as google_jwt

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

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Gateway answers meaning "this device token is no good"
_TOKEN_REJECTION_STATUSES = {400, 404, 410}


def load_service_account(
    service_account_json: str = "",
    service_account_file: str = "",
) -> dict[str, Any]:
    """Load service account info from inline JSON or a file path."""
    if service_account_json:
        return json.loads(service_account_json)
    if service_account_file:
        with open(service_account_file, encoding="utf-8") as f:
            return json.load(f)
    raise ValueError("No FCM service account configured")


class FCMBackend(PushBackend):
    """FCM HTTP v1 backend.

    Attributes:
        project_id: Firebase project receiving the send requests
        channel_id: Android notification channel for call alerts
    """

    kind = PushBackendKind.FCM
    API_BASE = "https://fcm.googleapis.com/v1"
    ASSERTION_LIFETIME = 3600

    def __init__(
        self,
        service_account_info: dict[str, Any],
        *,
        project_id: str | None = None,
        channel_id: str = "callpanion_calls",
        client: httpx.AsyncClient | None = None,
        token_cache: AccessTokenCache | None = None,
        clock: Callable[[], float] = time.time,
        retry_config: RetryConfig = PROVIDER_RETRY_CONFIG,
        timeout: float = 10.0,
    ) -> None:
        self.project_id = project_id or service_account_info.get("project_id")
        if not self.project_id:
            raise ValueError("FCM project_id missing from settings and service account")

        self.channel_id = channel_id
        self._client_email = service_account_info["client_email"]
        self._token_uri = service_account_info.get("token_uri") or DEFAULT_TOKEN_URI
        self._signer = crypt.RSASigner.from_service_account_info(service_account_info)
        self._clock = clock
        self._retry_config = retry_config

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._tokens = token_cache or AccessTokenCache(
            self._fetch_access_token,
            name="fcm",
            clock=clock,
        )

    @property
    def token_cache(self) -> AccessTokenCache:
        return self._tokens

    async def _fetch_access_token(self) -> CachedToken:
        """Sign a service-account assertion and exchange it for an access token."""
        now = int(self._clock())
        assertion = google_jwt.encode(
            self._signer,
            {
                "iss": self._client_email,
                "scope": FCM_SCOPE,
                "aud": self._token_uri,
                "iat": now,
                "exp": now + self.ASSERTION_LIFETIME,
            },
        )
        if isinstance(assertion, bytes):
            assertion = assertion.decode("ascii")

        try:
            response = await retry_async(
                self._client.post,
                self._token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                config=self._retry_config,
            )
        except httpx.HTTPError as e:
            log.error("FCM token exchange failed", error_type=type(e).__name__)
            raise DeliveryError("FCM token exchange failed", cause=e)

        if response.status_code != 200:
            log.error("FCM token exchange rejected", status=response.status_code)
            raise DeliveryError(
                "FCM token exchange rejected",
                details={"status": response.status_code},
            )

        body = response.json()
        expires_in = int(body.get("expires_in", self.ASSERTION_LIFETIME))
        return CachedToken(value=body["access_token"], expires_at=now + expires_in)

    def build_message(self, target: PushTarget, notification: PushNotification) -> dict[str, Any]:
        """Build the HTTP v1 message envelope for one device."""
        data = stringify_data(
            {
                **notification.data,
                "household_id": target.owner_household_id,
                "relative_id": target.owner_relative_id,
                "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            }
        )
        priority = "high" if notification.call_wake else "normal"
        return {
            "token": target.device_identifier,
            "notification": {
                "title": notification.title,
                "body": notification.body,
            },
            "data": data,
            "android": {
                "priority": priority,
                "notification": {
                    "sound": "default",
                    "channel_id": self.channel_id,
                    "click_action": "FLUTTER_NOTIFICATION_CLICK",
                },
            },
            "apns": {
                "headers": {"apns-priority": "10" if notification.call_wake else "5"},
                "payload": {
                    "aps": {
                        "sound": "default",
                        "content-available": 1,
                    },
                },
            },
        }

    async def send(self, target: PushTarget, notification: PushNotification) -> DeliveryResult:
        """Send one message through FCM.

        Raises:
            DeliveryError: Transport failure, rejected credentials or gateway error
        """
        access_token = await self._tokens.get()
        url = f"{self.API_BASE}/projects/{self.project_id}/messages:send"

        try:
            response = await retry_async(
                self._client.post,
                url,
                json={"message": self.build_message(target, notification)},
                headers={"Authorization": f"Bearer {access_token}"},
                config=self._retry_config,
            )
        except httpx.HTTPError as e:
            raise DeliveryError("FCM request failed", cause=e)

        if response.status_code == 200:
            return DeliveryResult(
                status=DeliveryStatus.DELIVERED,
                backend=self.kind.value,
                message_id=response.json().get("name"),
                sent_at=datetime.now(timezone.utc),
            )

        error_status = _error_status(response)

        if response.status_code == 401:
            self._tokens.invalidate()
            raise DeliveryError(
                "FCM rejected the access token",
                details={"status": 401},
            )

        if response.status_code in _TOKEN_REJECTION_STATUSES:
            return DeliveryResult(
                status=DeliveryStatus.REJECTED,
                backend=self.kind.value,
                error=error_status or f"http_{response.status_code}",
            )

        raise DeliveryError(
            "FCM send failed",
            details={"status": response.status_code, "error": error_status},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_status(response: httpx.Response) -> str | None:
    """Extract the google.rpc status (e.g. UNREGISTERED) from an error body."""
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return None
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")
