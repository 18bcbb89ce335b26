"""Conversational-AI provider integration."""

from callpanion.integrations.conversation.base import (
    ConversationBroker,
    ConversationContext,
    ConversationCredential,
    ConversationStatus,
)
from callpanion.integrations.conversation.factory import (
    build_conversation_broker,
    get_conversation_broker,
    reset_conversation_broker,
)

__all__ = [
    "ConversationBroker",
    "ConversationContext",
    "ConversationCredential",
    "ConversationStatus",
    "build_conversation_broker",
    "get_conversation_broker",
    "reset_conversation_broker",
]
