"""ElevenLabs conversation provider — signed-URL conversational agent.

start_conversation fetches a signed WebSocket URL for the configured agent;
the device then talks to ElevenLabs directly. Conversations end when the
device closes that socket, so end_conversation is local bookkeeping only.
"""
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

import httpx

from config.settings import Settings, get_settings
from core.exceptions import AuthenticationError, ProviderError
from provider.interface import ConversationProvider, ConversationStart, ConversationSummary
from schemas.post_call import PostCallEvent

logger = logging.getLogger(__name__)

SIGNED_URL_PATH = "/v1/convai/conversation/get-signed-url"
POST_CALL_TRANSCRIPTION = "post_call_transcription"
SIGNATURE_HEADER = "elevenlabs-signature"
SIGNATURE_TOLERANCE_S = 30 * 60

AGENT_PROMPT = (
    "You are a helpful AI assistant integrated with AI glasses. "
    "You can help users with tasks like managing emails, calendars, notes, "
    "and various productivity workflows. Keep responses concise and "
    "conversational since this is a voice interface.\n\n"
    "User ID: {{user_id}}\n"
    "Device ID: {{device_id}}"
)
FIRST_MESSAGE = "Hi! I'm your AI assistant. How can I help you today?"


class ElevenLabsConversationProvider(ConversationProvider):
    """Real ElevenLabs conversational-agent provider."""

    emits_end_event = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._active: Dict[str, float] = {}  # session_id → monotonic start

    @property
    def configured(self) -> bool:
        return bool(self.settings.ELEVENLABS_API_KEY and self.settings.ELEVENLABS_AGENT_ID)

    async def _get_signed_url(self) -> str:
        url = self.settings.ELEVENLABS_API_URL.rstrip("/") + SIGNED_URL_PATH
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.PROVIDER_TIMEOUT_S, transport=self._transport,
            ) as client:
                response = await client.get(
                    url,
                    params={"agent_id": self.settings.ELEVENLABS_AGENT_ID},
                    headers={"xi-api-key": self.settings.ELEVENLABS_API_KEY},
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Signed URL request failed: {type(e).__name__}")

        if response.status_code >= 400:
            logger.warning(
                "[ElevenLabs] Signed URL rejected: status=%d body=%s",
                response.status_code, response.text[:200],
            )
            raise ProviderError(f"Failed to get signed URL: HTTP {response.status_code}")

        try:
            signed_url = response.json().get("signed_url")
        except ValueError:
            signed_url = None
        if not signed_url:
            raise ProviderError("Signed URL response missing signed_url")
        return signed_url

    async def start_conversation(
        self, user_id: str, device_id: str, metadata: Dict[str, Any],
    ) -> ConversationStart:
        if not self.settings.ELEVENLABS_API_KEY:
            raise ProviderError("ElevenLabs API key not configured")
        if not self.settings.ELEVENLABS_AGENT_ID:
            raise ProviderError("ElevenLabs Agent ID not configured")

        start = time.monotonic()
        signed_url = await self._get_signed_url()
        session_id = metadata.get("session_id")
        if session_id:
            self._active[session_id] = start

        logger.info(
            "[ElevenLabs] Conversation configured: session=%s device=%s latency=%.0fms",
            session_id, device_id, (time.monotonic() - start) * 1000,
        )
        return ConversationStart(
            connection_params={"signed_url": signed_url},
            agent_id=self.settings.ELEVENLABS_AGENT_ID,
            identity_variables={"user_id": user_id, "device_id": device_id, **metadata},
            config={"agent": {"prompt": AGENT_PROMPT, "first_message": FIRST_MESSAGE}},
        )

    async def end_conversation(self, session_id: str) -> None:
        started = self._active.pop(session_id, None)
        if started is None:
            logger.debug("[ElevenLabs] End for untracked conversation: session=%s", session_id)
            return
        logger.info(
            "[ElevenLabs] Conversation ended: session=%s duration=%.1fs",
            session_id, time.monotonic() - started,
        )

    async def is_healthy(self) -> bool:
        return self.configured

    def get_status(self) -> dict:
        return {
            "type": "elevenlabs",
            "configured": self.configured,
            "has_api_key": bool(self.settings.ELEVENLABS_API_KEY),
            "has_agent_id": bool(self.settings.ELEVENLABS_AGENT_ID),
            "open_conversations": len(self._active),
        }


def parse_post_call(event: PostCallEvent) -> Optional[ConversationSummary]:
    """Extract a ConversationSummary from a post-call webhook. None for other event types."""
    if event.type != POST_CALL_TRANSCRIPTION or event.data is None:
        return None
    data = event.data

    user_turns = [e.message for e in data.transcript if e.role == "user" and e.message]
    agent_turns = [e.message for e in data.transcript if e.role == "agent" and e.message]
    tool_calls = [call for e in data.transcript if e.tool_calls for call in e.tool_calls]

    dynamic = (
        data.conversation_initiation_client_data.dynamic_variables
        if data.conversation_initiation_client_data else {}
    )
    summary = ConversationSummary(
        conversation_id=data.conversation_id,
        session_id=dynamic.get("session_id"),
        agent_id=data.agent_id,
        transcription=" ".join(user_turns) or None,
        ai_response=agent_turns[-1] if agent_turns else None,
        tools_used=tool_calls,
        processing_time=data.metadata.call_duration_secs,
    )
    logger.info(
        "[ElevenLabs] Post-call parsed: conversation=%s session=%s turns=%d tool_calls=%d",
        summary.conversation_id, summary.session_id, len(data.transcript), len(tool_calls),
    )
    return summary


def verify_webhook_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> None:
    """Check a `t=<unix>,v0=<hex hmac-sha256>` post-call signature. Raises AuthenticationError."""
    if not header:
        raise AuthenticationError("Missing signature header")
    parts = dict(p.strip().split("=", 1) for p in header.split(",") if "=" in p)
    timestamp, received = parts.get("t"), parts.get("v0")
    if not timestamp or not received or not timestamp.isdigit():
        raise AuthenticationError("Invalid signature format")

    now = time.time() if now is None else now
    if int(timestamp) < now - SIGNATURE_TOLERANCE_S:
        raise AuthenticationError("Signature expired")

    signed = f"{timestamp}.".encode() + raw_body
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, received):
        raise AuthenticationError("Invalid signature")
