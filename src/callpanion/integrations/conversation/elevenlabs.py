"""ElevenLabs Conversational AI broker.

The device opens the voice session directly against ElevenLabs with the
token issued here; the conversation id is only known once it connects,
so the client reports it back afterwards (or the post-call webhook does).

API Documentation: https://elevenlabs.io/docs/conversational-ai/api-reference
"""
from __future__ import annotations

from typing import Any

import httpx

from callpanion.core.exceptions import UpstreamError
from callpanion.core.logging import get_logger
from callpanion.core.retry import PROVIDER_RETRY_CONFIG, RetryConfig, retry_async
from callpanion.integrations.conversation.base import (
    ConversationBroker,
    ConversationContext,
    ConversationCredential,
    ConversationStatus,
)

log = get_logger(__name__)


def build_dynamic_variables(context: ConversationContext) -> dict[str, Any]:
    """Variables the agent sees during the call.

    ``secret__`` variables reach webhooks and tools but are never spoken
    or shown to the model.
    """
    return {
        "session_id": str(context.session_id),
        "secret__household_id": str(context.household_id),
        "secret__relative_id": str(context.relative_id),
        "relative_name": context.relative_name,
        "locale": context.locale,
    }


class ElevenLabsBroker(ConversationBroker):
    """ElevenLabs conversation token broker.

    Attributes:
        agent_id: Conversational agent the token is scoped to
        base_url: API base URL
    """

    provider = "elevenlabs"

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        *,
        base_url: str = "https://api.elevenlabs.io",
        client: httpx.AsyncClient | None = None,
        retry_config: RetryConfig = PROVIDER_RETRY_CONFIG,
        timeout: float = 15.0,
    ):
        if not api_key or not agent_id:
            raise ValueError("ElevenLabs api_key and agent_id are required")

        self.agent_id = agent_id
        self.base_url = base_url.rstrip("/")
        self._retry_config = retry_config

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"xi-api-key": api_key, "Accept": "application/json"}

    async def _get(self, path: str, **params: Any) -> httpx.Response:
        try:
            return await retry_async(
                self._client.get,
                f"{self.base_url}{path}",
                params=params or None,
                headers=self._headers,
                config=self._retry_config,
            )
        except httpx.HTTPError as e:
            log.error(
                "ElevenLabs request failed",
                path=path,
                error_type=type(e).__name__,
            )
            raise UpstreamError("Conversation provider unreachable", cause=e)

    async def request_token(self, context: ConversationContext) -> ConversationCredential:
        """Request a conversation token for the session's agent.

        Raises:
            UpstreamError: Transport failure or non-200 answer
        """
        response = await self._get(
            "/v1/convai/conversation/token",
            agent_id=self.agent_id,
        )

        if response.status_code != 200:
            log.error(
                "ElevenLabs token request rejected",
                status=response.status_code,
                session_id=str(context.session_id),
            )
            raise UpstreamError(
                "Conversation provider rejected the token request",
                details={"status": response.status_code},
            )

        try:
            body = response.json()
            token = body["token"]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamError("Malformed conversation token response", cause=e)

        log.info(
            "Conversation token issued",
            provider=self.provider,
            session_id=str(context.session_id),
        )
        return ConversationCredential(
            token=token,
            agent_id=self.agent_id,
            provider_conversation_id=body.get("conversation_id"),
            dynamic_variables=build_dynamic_variables(context),
        )

    async def get_conversation_status(self, conversation_id: str) -> ConversationStatus | None:
        """Poll a conversation's status and duration."""
        response = await self._get(f"/v1/convai/conversations/{conversation_id}")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError(
                "Conversation status lookup failed",
                details={"status": response.status_code},
            )

        body = response.json()
        metadata = body.get("metadata") or {}
        analysis = body.get("analysis") or {}
        duration = metadata.get("call_duration_secs")

        return ConversationStatus(
            conversation_id=conversation_id,
            status=(body.get("status") or "").lower(),
            duration_seconds=int(duration) if duration is not None else None,
            summary=analysis or None,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
