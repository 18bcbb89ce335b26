"""Conversation Broker Factory.

Creates the conversation broker based on configuration.

Supported providers:
- elevenlabs: ElevenLabs Conversational AI
"""

from __future__ import annotations

from callpanion.config import Settings, get_settings
from callpanion.core.exceptions import UpstreamError
from callpanion.core.logging import get_logger
from callpanion.integrations.conversation.base import (
    ConversationBroker,
    ConversationContext,
    ConversationCredential,
    ConversationStatus,
)

log = get_logger(__name__)


# Singleton instance
_broker: ConversationBroker | None = None


class UnconfiguredBroker(ConversationBroker):
    """Stand-in used when no provider credentials are configured.

    Every request fails as an upstream error, so sessions end in
    ``failed(credential_issuance)`` instead of the service refusing to start.
    """

    def __init__(self, provider: str):
        self.provider = provider

    async def request_token(self, context: ConversationContext) -> ConversationCredential:
        raise UpstreamError(
            "Conversation provider is not configured",
            details={"provider": self.provider},
        )

    async def get_conversation_status(self, conversation_id: str) -> ConversationStatus | None:
        raise UpstreamError(
            "Conversation provider is not configured",
            details={"provider": self.provider},
        )


def build_conversation_broker(settings: Settings) -> ConversationBroker:
    """Build the broker for the configured provider."""
    config = settings.conversation
    provider = config.provider.lower()

    if provider != "elevenlabs":
        log.warning("Unknown conversation provider, broker disabled", provider=provider)
        return UnconfiguredBroker(provider)

    if not config.api_key or not config.agent_id:
        log.warning("ElevenLabs credentials not configured, broker disabled")
        return UnconfiguredBroker(provider)

    from callpanion.integrations.conversation.elevenlabs import ElevenLabsBroker

    log.info("ElevenLabs broker initialized", agent_id=config.agent_id)
    return ElevenLabsBroker(
        api_key=config.api_key,
        agent_id=config.agent_id,
        base_url=config.base_url,
        timeout=config.timeout,
    )


def get_conversation_broker() -> ConversationBroker:
    """Get the configured conversation broker."""
    global _broker

    if _broker is None:
        _broker = build_conversation_broker(get_settings())
    return _broker


async def reset_conversation_broker() -> None:
    """Close and drop the broker (shutdown and tests)."""
    global _broker

    if _broker is not None:
        await _broker.close()
    _broker = None
