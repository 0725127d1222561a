"""WebSocket message schemas — canonical contract between clients and the coordinator.

Version: v1
All WS communication flows through typed envelopes {type, id, timestamp, payload}.
Inbound envelopes are parsed into a tagged union at the transport boundary,
so the state machine never sees an unvalidated payload.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from core.exceptions import ProtocolViolation


# ---- Enums ----

class ClientType(str, Enum):
    DEVICE = "device"        # wearable; drives the session state machine
    COMPANION = "companion"  # mobile app; receives fan-out only


class WSMessageType(str, Enum):
    # Client → Server
    CONNECT = "connect"
    BUTTON_PRESS = "button_press"
    CONVERSATION_STARTED = "conversation_started"
    CONVERSATION_ENDED = "conversation_ended"
    HEARTBEAT = "heartbeat"
    AUDIO_CHUNK = "audio_chunk"
    DEVICE_ERROR = "device_error"
    PING = "ping"
    DISCONNECT = "disconnect"

    # Server → Client
    CONNECTION_CONFIRMED = "connection_confirmed"
    CONNECTION_REJECTED = "connection_rejected"
    PROVIDER_CONFIG = "provider_config"
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    STREAM_ERROR = "stream_error"
    HEARTBEAT_ACK = "heartbeat_ack"
    PONG = "pong"
    ERROR = "error"


class FanoutEvent(str, Enum):
    """Lifecycle events broadcast to a user's other connections."""
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    CONVERSATION_ACTIVE = "conversation_active"
    CONVERSATION_ENDED = "conversation_ended"
    PROCESSING_ERROR = "processing_error"
    DEVICE_ERROR = "device_error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================
#  Client → Server Payloads
# =====================================================

class ConnectPayload(BaseModel):
    user_id: str = ""
    device_id: str = ""
    device_name: str = ""
    credential: str = ""
    client_type: ClientType = ClientType.DEVICE
    firmware_version: Optional[str] = None


class ButtonPressPayload(BaseModel):
    type: Literal["press", "release"]
    timestamp: Optional[float] = None  # client epoch ms


class ConversationEventPayload(BaseModel):
    conversation_id: str
    session_id: str


class HeartbeatPayload(BaseModel):
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    firmware_version: Optional[str] = None


class AudioChunkPayload(BaseModel):
    session_id: str
    seq: int = Field(ge=0)


class DeviceErrorPayload(BaseModel):
    message: str = "Unknown error"


class DisconnectPayload(BaseModel):
    reason: str = "client_disconnect"


class EmptyPayload(BaseModel):
    pass


# ---- Inbound envelopes (tagged union on `type`) ----

class _Inbound(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: Optional[datetime] = None


class ConnectMessage(_Inbound):
    type: Literal["connect"]
    payload: ConnectPayload


class ButtonPressMessage(_Inbound):
    type: Literal["button_press"]
    payload: ButtonPressPayload


class ConversationStartedMessage(_Inbound):
    type: Literal["conversation_started"]
    payload: ConversationEventPayload


class ConversationEndedMessage(_Inbound):
    type: Literal["conversation_ended"]
    payload: ConversationEventPayload


class HeartbeatMessage(_Inbound):
    type: Literal["heartbeat"]
    payload: HeartbeatPayload = Field(default_factory=HeartbeatPayload)


class AudioChunkMessage(_Inbound):
    type: Literal["audio_chunk"]
    payload: AudioChunkPayload


class DeviceErrorMessage(_Inbound):
    type: Literal["device_error"]
    payload: DeviceErrorPayload = Field(default_factory=DeviceErrorPayload)


class PingMessage(_Inbound):
    type: Literal["ping"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class DisconnectMessage(_Inbound):
    type: Literal["disconnect"]
    payload: DisconnectPayload = Field(default_factory=DisconnectPayload)


ClientMessage = Annotated[
    Union[
        ConnectMessage,
        ButtonPressMessage,
        ConversationStartedMessage,
        ConversationEndedMessage,
        HeartbeatMessage,
        AudioChunkMessage,
        DeviceErrorMessage,
        PingMessage,
        DisconnectMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> ClientMessage:
    """Validate a raw inbound frame. Raises ProtocolViolation(INVALID_MESSAGE)."""
    try:
        return _client_message_adapter.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        detail = first.get("msg", "invalid message")
        raise ProtocolViolation(
            f"Invalid message: {loc}: {detail}" if loc else f"Invalid message: {detail}",
            code="INVALID_MESSAGE",
        )


# =====================================================
#  Server → Client Payloads
# =====================================================

class WSEnvelope(BaseModel):
    """Every outbound WS message is wrapped in this envelope."""
    type: str
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)


class ConnectionConfirmedPayload(BaseModel):
    device_id: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ConnectionRejectedPayload(BaseModel):
    reason: str
    code: str = "AUTH_ERROR"


class ProviderConfigPayload(BaseModel):
    session_id: str
    connection_params: Dict[str, Any]
    identity_variables: Dict[str, Any]
    conversation_config: Dict[str, Any]
    agent_id: Optional[str] = None


class StreamStartedPayload(BaseModel):
    session_id: str
    type: str
    timestamp: datetime = Field(default_factory=_utcnow)


class StreamStoppedPayload(BaseModel):
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class StreamErrorPayload(BaseModel):
    error: str
    code: str
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class HeartbeatAckPayload(BaseModel):
    server_ts: datetime = Field(default_factory=_utcnow)


class PongPayload(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorPayload(BaseModel):
    message: str
    code: str
    recoverable: bool = True


class FanoutPayload(BaseModel):
    """Carried by every fan-out event."""
    device_id: str
    device_name: str
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


def make_envelope(msg_type: str, payload: BaseModel) -> str:
    """Create a JSON string envelope for sending."""
    envelope = WSEnvelope(type=msg_type, payload=payload.model_dump(mode="json"))
    return envelope.model_dump_json()
