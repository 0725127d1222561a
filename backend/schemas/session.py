"""Session schemas — device presence and streaming session records.

Both records are persisted as Redis hashes: one JSON-encoded value per
field so partial updates touch only the fields they name.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import json

from pydantic import BaseModel, Field, model_validator
from pydantic_core import to_jsonable_python


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def encode_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    """Encode python values into hash field strings."""
    return {k: json.dumps(to_jsonable_python(v)) for k, v in fields.items()}


def decode_fields(raw: Dict[str, str]) -> Dict[str, Any]:
    """Decode hash field strings back into JSON values."""
    return {k: json.loads(v) for k, v in raw.items()}


class _HashRecord(BaseModel):
    def to_hash(self) -> Dict[str, str]:
        return encode_fields(self.model_dump(mode="json"))

    @classmethod
    def from_hash(cls, raw: Dict[str, str]):
        return cls.model_validate(decode_fields(raw))


class DeviceSession(_HashRecord):
    """One per connected device. Removed on disconnect or TTL expiry (24h)."""
    device_id: str
    user_id: str
    device_name: str
    connected_at: datetime = Field(default_factory=_now)
    last_seen: datetime = Field(default_factory=_now)
    is_active: bool = True
    is_streaming: bool = False
    current_session_id: Optional[str] = None
    battery_level: Optional[int] = None
    firmware_version: Optional[str] = None

    @model_validator(mode="after")
    def _streaming_iff_session(self):
        if self.is_streaming != (self.current_session_id is not None):
            raise ValueError("is_streaming must be true iff current_session_id is set")
        return self


class StreamingSession(_HashRecord):
    """One per voice interaction, from press to finalization."""
    session_id: str
    device_id: str
    user_id: str
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    is_active: bool = True
    audio_chunk_count: int = 0
    transcription: Optional[str] = None
    ai_response: Optional[str] = None
    tools_used: List[Any] = Field(default_factory=list)
    processing_time: Optional[float] = None  # seconds
    error: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    external_conversation_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


STREAMING_SESSION_FIELDS = frozenset(StreamingSession.model_fields)
DEVICE_SESSION_FIELDS = frozenset(DeviceSession.model_fields)
