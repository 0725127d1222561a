"""Post-call webhook payload sent by the conversation provider.

Only the fields the coordinator reads are modelled; everything else is ignored.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    message: Optional[str] = None
    tool_calls: Optional[List[Any]] = None
    time_in_call_secs: Optional[float] = None


class CallMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start_time_unix_secs: Optional[int] = None
    call_duration_secs: Optional[float] = None


class InitiationClientData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dynamic_variables: Dict[str, Any] = Field(default_factory=dict)


class PostCallData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    agent_id: Optional[str] = None
    status: Optional[str] = None
    transcript: List[TranscriptEntry] = Field(default_factory=list)
    metadata: CallMetadata = Field(default_factory=CallMetadata)
    conversation_initiation_client_data: Optional[InitiationClientData] = None


class PostCallEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    event_timestamp: Optional[int] = None
    data: Optional[PostCallData] = None
