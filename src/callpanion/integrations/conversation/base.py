"""Base Conversation Broker Interface.

A broker obtains a short-lived voice-session credential from the
conversational-AI provider and, for reconciliation, reports what the
provider knows about a conversation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class ConversationContext:
    """Who the conversation is for, passed to the provider as opaque variables."""

    session_id: UUID
    household_id: UUID
    relative_id: UUID
    relative_name: str
    locale: str = "en-GB"


@dataclass
class ConversationCredential:
    """Short-lived credential authorizing one voice session.

    ``provider_conversation_id`` is None when the provider only assigns an
    id once the client connects; the client reports it afterwards.
    """

    token: str
    agent_id: str
    provider_conversation_id: str | None = None
    dynamic_variables: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for the device."""
        return {
            "token": self.token,
            "agent_id": self.agent_id,
            "provider_conversation_id": self.provider_conversation_id,
            "dynamic_variables": self.dynamic_variables,
        }


@dataclass
class ConversationStatus:
    """Provider-side view of a conversation."""

    conversation_id: str
    status: str
    duration_seconds: int | None = None
    summary: dict[str, Any] | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in ("done", "failed")


class ConversationBroker(ABC):
    """Abstract base class for conversational-AI providers."""

    provider: str

    @abstractmethod
    async def request_token(self, context: ConversationContext) -> ConversationCredential:
        """Request a conversation credential for one session.

        Raises:
            UpstreamError: Provider unreachable or request rejected
        """

    @abstractmethod
    async def get_conversation_status(self, conversation_id: str) -> ConversationStatus | None:
        """Fetch a conversation's status, None when the provider has no record.

        Raises:
            UpstreamError: Provider unreachable or request rejected
        """

    async def close(self) -> None:
        """Release HTTP resources."""
