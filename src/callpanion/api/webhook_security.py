"""Webhook security and client identification.

Provides:
- ElevenLabs post-call webhook signature verification
  (``elevenlabs-signature: t=<unix>,v0=<hex>``, HMAC-SHA256 over
  ``"{t}.{raw_body}"``) with replay protection
- Trusted-proxy aware client IP extraction
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import re
import time
from typing import TYPE_CHECKING, Callable

from callpanion.core.exceptions import WebhookSignatureError
from callpanion.core.logging import get_logger

if TYPE_CHECKING:
    from fastapi import Request

log = get_logger(__name__)

SIGNATURE_HEADER = "elevenlabs-signature"

_SIGNATURE_PATTERN = re.compile(r"t=(\d+),\s*v0=([a-f0-9]+)", re.IGNORECASE)


def _is_ip_in_network(ip: str, networks: list[str]) -> bool:
    """Check if an IP address is in any of the given networks.

    Args:
        ip: IP address to check
        networks: List of IPs or CIDR ranges (e.g., ["127.0.0.1", "10.0.0.0/8"])
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for network in networks:
        try:
            if "/" in network:
                if addr in ipaddress.ip_network(network, strict=False):
                    return True
            elif addr == ipaddress.ip_address(network):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: "Request", trusted_proxies: list[str] | None = None) -> str:
    """Extract client IP from request.

    X-Forwarded-For is client-controlled, so it is only honoured when the
    direct connection comes from a trusted proxy.
    """
    client = request.client
    direct_ip = client.host if client else "unknown"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and trusted_proxies:
        if _is_ip_in_network(direct_ip, trusted_proxies):
            return forwarded.split(",")[0].strip()
        log.warning(
            "X-Forwarded-For header from untrusted source ignored",
            direct_ip=direct_ip,
        )

    return direct_ip


def compute_signature(secret: str, timestamp: int | str, body: bytes) -> str:
    """Hex HMAC-SHA256 over ``"{timestamp}.{body}"``."""
    data = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


class ProviderSignatureValidator:
    """Validates the conversation provider's webhook signature.

    Args:
        secret: Shared webhook secret
        tolerance_seconds: Maximum accepted signature age
        clock: Epoch-seconds clock, injectable for tests
    """

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def validate(self, header: str | None, body: bytes) -> None:
        """Check a signature header against the raw body.

        Raises:
            WebhookSignatureError: Missing secret, malformed header, stale
                timestamp or signature mismatch
        """
        if not self.secret:
            log.warning("Webhook secret not configured")
            raise WebhookSignatureError("Webhook verification is not configured")

        match = _SIGNATURE_PATTERN.search(header or "")
        if not match:
            raise WebhookSignatureError("Missing or malformed signature")

        timestamp = int(match.group(1))
        supplied = match.group(2).lower()

        if timestamp < self._clock() - self.tolerance_seconds:
            log.warning("Stale webhook signature", age=int(self._clock() - timestamp))
            raise WebhookSignatureError("Signature timestamp too old")

        expected = compute_signature(self.secret, timestamp, body)
        if not hmac.compare_digest(expected, supplied):
            log.warning("Invalid webhook signature")
            raise WebhookSignatureError("Invalid signature")

    async def validate_request(self, request: "Request") -> bytes:
        """Validate a FastAPI request and return its raw body."""
        body = await request.body()
        self.validate(request.headers.get(SIGNATURE_HEADER), body)
        return body
