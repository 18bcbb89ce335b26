"""Rate limiting configuration for API endpoints.

Coarse per-IP route limits using slowapi. The per-caller limits that
guard orchestrator operations live in the security gate.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address


# Rate limiter instance - shared across the application
limiter = Limiter(key_func=get_remote_address)


class RateLimits:
    """Rate limit constants for different endpoint types."""

    # Session reads (dashboards poll these)
    READ = "120/minute"

    # Call starts and session callbacks
    WRITE = "60/minute"

    # Pairing (code guessing target)
    PAIRING = "10/minute"

    # Provider webhooks
    WEBHOOK = "200/minute"

    # Health checks (allow frequent polling)
    HEALTH = "300/minute"
