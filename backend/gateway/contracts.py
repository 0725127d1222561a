"""WS protocol contracts — version registry."""
from schemas.ws_messages import FanoutEvent

WS_PROTOCOL_VERSION = "v1"

# All supported message types for v1
SUPPORTED_CLIENT_MESSAGES = {
    "connect", "button_press",
    "conversation_started", "conversation_ended",
    "heartbeat", "audio_chunk", "device_error",
    "ping", "disconnect",
}

SUPPORTED_SERVER_MESSAGES = {
    "connection_confirmed", "connection_rejected",
    "provider_config", "stream_started", "stream_stopped", "stream_error",
    "heartbeat_ack", "pong", "error",
} | {e.value for e in FanoutEvent}

# Client messages a companion (mobile app) connection may send
COMPANION_ALLOWED_MESSAGES = {"heartbeat", "ping", "disconnect"}
