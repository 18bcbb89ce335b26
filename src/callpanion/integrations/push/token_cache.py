"""Expiry-aware cache for signed provider credentials.

Both push backends authenticate with short-lived bearer credentials (an
OAuth access token for FCM, a self-signed ES256 JWT for APNs). The cache
hands out the current credential until ``refresh_margin`` seconds before
it expires; a refresh runs under a lock and concurrent callers wait for
it and reuse its result, so one validity window costs one fetch.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from callpanion.core.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class CachedToken:
    """A bearer credential and its absolute expiry (epoch seconds)."""

    value: str
    expires_at: float


TokenFetcher = Callable[[], Awaitable[CachedToken]]


class AccessTokenCache:
    """Single-flight cache around a token fetcher.

    Args:
        fetch: Coroutine function producing a fresh CachedToken
        name: Label used in log events
        refresh_margin: Seconds before expiry at which to refresh
        clock: Epoch-seconds clock, injectable for tests
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        name: str = "token",
        refresh_margin: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch = fetch
        self._name = name
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: CachedToken | None = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self, token: CachedToken | None) -> bool:
        return token is not None and token.expires_at - self._refresh_margin > self._clock()

    async def get(self) -> str:
        """Return a valid token, refreshing at most once per expiry window."""
        token = self._token
        if self._is_fresh(token):
            return token.value

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if self._is_fresh(token):
                return token.value

            token = await self._fetch()
            self._token = token
            self.refresh_count += 1
            log.debug(
                "Provider token refreshed",
                cache=self._name,
                expires_in=round(token.expires_at - self._clock()),
            )
            return token.value

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the gateway rejected it."""
        self._token = None
