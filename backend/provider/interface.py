"""Conversation Provider interface — provider-agnostic contract.

The provider turns captured audio into conversation turns and tool actions.
The coordinator only asks it for start-configuration and tells it to end;
everything in between happens between the device and the provider directly.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ConversationStart:
    """Start-configuration handed to the device in provider_config."""
    connection_params: Dict[str, Any]
    agent_id: Optional[str] = None
    identity_variables: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationSummary:
    """Post-call result reported by the provider after a conversation ends."""
    conversation_id: str
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    transcription: Optional[str] = None
    ai_response: Optional[str] = None
    tools_used: List[Any] = field(default_factory=list)
    processing_time: Optional[float] = None


class ConversationProvider(ABC):
    """Abstract conversation provider."""

    # True when the device reports conversation_ended after a release,
    # so a released session waits in `processing` for it.
    emits_end_event: bool = True

    @abstractmethod
    async def start_conversation(
        self, user_id: str, device_id: str, metadata: Dict[str, Any],
    ) -> ConversationStart:
        """Request start-configuration. Raises ProviderError."""
        ...

    @abstractmethod
    async def end_conversation(self, session_id: str) -> None:
        """Tell the provider a session is over. Raises ProviderError."""
        ...

    @abstractmethod
    async def is_healthy(self) -> bool:
        ...

    @abstractmethod
    def get_status(self) -> dict:
        ...
