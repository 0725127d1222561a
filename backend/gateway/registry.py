"""Connection registry — live connections owned by one server instance.

Maps connection_id → ConnectionEntry. Authoritative only inside this process;
cross-instance device state lives in the SessionStore.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol
import uuid

from pydantic import BaseModel

from auth.authenticator import DeviceIdentity
from schemas.ws_messages import ClientType, make_envelope

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can deliver a text frame (FastAPI WebSocket in production)."""

    async def send_text(self, data: str) -> None:
        ...


@dataclass
class ConnectionEntry:
    connection_id: str
    identity: DeviceIdentity
    transport: Transport
    is_streaming: bool = False
    session_id: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    @property
    def device_name(self) -> str:
        return self.identity.device_name

    @property
    def is_device(self) -> bool:
        return self.identity.client_type == ClientType.DEVICE

    def set_streaming(self, session_id: Optional[str]) -> None:
        self.session_id = session_id
        self.is_streaming = session_id is not None

    async def send(self, msg_type: str, payload: BaseModel) -> bool:
        """Best-effort send. Returns False if the transport is gone."""
        try:
            await self.transport.send_text(make_envelope(msg_type, payload))
            return True
        except Exception as e:
            logger.debug(
                "Send failed: conn=%s device=%s type=%s error=%s",
                self.connection_id, self.device_id, msg_type, str(e),
            )
            return False


class ConnectionRegistry:
    """Per-instance map of live connections."""

    def __init__(self):
        self._connections: Dict[str, ConnectionEntry] = {}

    @staticmethod
    def new_connection_id() -> str:
        return f"conn_{uuid.uuid4().hex}"

    def register(
        self,
        connection_id: str,
        identity: DeviceIdentity,
        transport: Transport,
    ) -> ConnectionEntry:
        """Record an authenticated connection. Idempotent per connection_id."""
        existing = self._connections.get(connection_id)
        if existing is not None:
            return existing
        entry = ConnectionEntry(
            connection_id=connection_id,
            identity=identity,
            transport=transport,
        )
        self._connections[connection_id] = entry
        logger.info(
            "Registered: conn=%s device=%s user=%s total=%d",
            connection_id, identity.device_id, identity.user_id, len(self._connections),
        )
        return entry

    def unregister(self, connection_id: str) -> Optional[ConnectionEntry]:
        """Drop a connection. Returns the entry, or None if already gone."""
        entry = self._connections.pop(connection_id, None)
        if entry is not None:
            logger.info(
                "Unregistered: conn=%s device=%s total=%d",
                connection_id, entry.device_id, len(self._connections),
            )
        return entry

    def get(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._connections.get(connection_id)

    def list_by_user(self, user_id: str) -> List[ConnectionEntry]:
        return [c for c in self._connections.values() if c.user_id == user_id]

    def list_by_device(self, device_id: str) -> List[ConnectionEntry]:
        return [c for c in self._connections.values() if c.device_id == device_id]

    def count(self) -> int:
        return len(self._connections)
