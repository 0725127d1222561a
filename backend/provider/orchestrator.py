"""Provider selection — mock or ElevenLabs, driven by MOCK_PROVIDER."""
import logging
from typing import Optional

from config.settings import Settings, get_settings
from provider.elevenlabs import ElevenLabsConversationProvider
from provider.interface import ConversationProvider
from provider.mock import MockConversationProvider

logger = logging.getLogger(__name__)


def create_conversation_provider(settings: Optional[Settings] = None) -> ConversationProvider:
    """Build the configured conversation provider for one app instance."""
    settings = settings or get_settings()
    if settings.MOCK_PROVIDER:
        logger.info("[Provider] Provider=MockConversationProvider (MOCK_PROVIDER=true)")
        return MockConversationProvider()
    logger.info("[Provider] Provider=ElevenLabsConversationProvider (MOCK_PROVIDER=false)")
    return ElevenLabsConversationProvider(settings)
