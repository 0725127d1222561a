"""Mock conversation provider — deterministic start-configuration for dev and tests.

Never touches the network. `fail_start` / `fail_end` simulate an outage.
"""
import asyncio
import logging
from typing import Any, Dict, List

from core.exceptions import ProviderError
from provider.interface import ConversationProvider, ConversationStart

logger = logging.getLogger(__name__)

MOCK_AGENT_ID = "mock-agent"


class MockConversationProvider(ConversationProvider):
    """Deterministic mock provider for development and testing."""

    def __init__(
        self,
        latency_ms: float = 0.0,
        emits_end_event: bool = True,
        fail_start: bool = False,
        fail_end: bool = False,
    ):
        self._latency_ms = latency_ms
        self.emits_end_event = emits_end_event
        self.fail_start = fail_start
        self.fail_end = fail_end
        self.started: List[Dict[str, Any]] = []
        self.ended: List[str] = []

    async def start_conversation(
        self, user_id: str, device_id: str, metadata: Dict[str, Any],
    ) -> ConversationStart:
        if self._latency_ms:
            await asyncio.sleep(self._latency_ms / 1000.0)
        if self.fail_start:
            raise ProviderError("Mock provider: start_conversation failed")

        session_id = metadata.get("session_id", "")
        self.started.append({"user_id": user_id, "device_id": device_id, **metadata})
        logger.info("[MockProvider] Conversation started: session=%s device=%s", session_id, device_id)
        return ConversationStart(
            connection_params={"signed_url": f"wss://mock.invalid/convai?session={session_id}"},
            agent_id=MOCK_AGENT_ID,
            identity_variables={"user_id": user_id, "device_id": device_id, **metadata},
            config={"agent": {"first_message": "Hi! How can I help?"}},
        )

    async def end_conversation(self, session_id: str) -> None:
        self.ended.append(session_id)
        if self.fail_end:
            raise ProviderError("Mock provider: end_conversation failed")
        logger.info("[MockProvider] Conversation ended: session=%s", session_id)

    async def is_healthy(self) -> bool:
        return not self.fail_start

    def get_status(self) -> dict:
        return {"type": "mock", "configured": True}
