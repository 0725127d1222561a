"""WebSocket server — device/companion gateway.

Protocol:
  1. Client connects
  2. Client sends CONNECT {user_id, device_id, device_name, credential, client_type}
  3. Server authenticates, registers, sends CONNECTION_CONFIRMED
  4. Device drives its session with BUTTON_PRESS / CONVERSATION_* / AUDIO_CHUNK
  5. Every client sends HEARTBEAT; companions only receive fan-out

A CoordinatorError raised while handling one message becomes an error event
and the loop keeps running. Anything else ends only this connection; the
finally block always runs disconnect cleanup.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from auth.authenticator import authenticate
from config.settings import Settings, get_settings
from core.exceptions import AuthenticationError, CoordinatorError, ProtocolViolation
from gateway.contracts import COMPANION_ALLOWED_MESSAGES
from gateway.registry import ConnectionEntry, ConnectionRegistry
from schemas.ws_messages import (
    AudioChunkMessage,
    ButtonPressMessage,
    ConnectionConfirmedPayload,
    ConnectionRejectedPayload,
    ConnectMessage,
    ConversationEndedMessage,
    ConversationStartedMessage,
    DeviceErrorMessage,
    DisconnectMessage,
    ErrorPayload,
    HeartbeatAckPayload,
    HeartbeatMessage,
    PingMessage,
    PongPayload,
    StreamErrorPayload,
    WSMessageType,
    make_envelope,
    parse_client_message,
)
from sessions.state_machine import SessionStateMachine
from store.session_store import SessionStore

logger = logging.getLogger(__name__)

CLOSE_AUTH_FAILED = 4003
CLOSE_AUTH_TIMEOUT = 4008


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceGateway:
    """Per-instance WS handler wired to one registry and state machine."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        machine: SessionStateMachine,
        store: SessionStore,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.machine = machine
        self.store = store

    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()
        entry: Optional[ConnectionEntry] = None
        reason = "transport_closed"

        try:
            # ---- Phase 1: Admission ----
            try:
                raw = await asyncio.wait_for(
                    websocket.receive_text(), timeout=self.settings.AUTH_TIMEOUT_S,
                )
            except asyncio.TimeoutError:
                await websocket.close(code=CLOSE_AUTH_TIMEOUT, reason="Auth timeout")
                logger.warning("WS auth timeout: no CONNECT within %.0fs", self.settings.AUTH_TIMEOUT_S)
                return

            try:
                msg = parse_client_message(raw)
                if not isinstance(msg, ConnectMessage):
                    raise AuthenticationError("First message must be connect")
                identity = authenticate(msg.payload, self.settings)
            except (AuthenticationError, ProtocolViolation) as e:
                await websocket.send_text(make_envelope(
                    WSMessageType.CONNECTION_REJECTED.value,
                    ConnectionRejectedPayload(reason=e.message, code=e.code),
                ))
                await websocket.close(code=CLOSE_AUTH_FAILED, reason="Auth failed")
                logger.warning("WS connection rejected: code=%s reason=%s", e.code, e.message)
                return

            entry = self.registry.register(
                self.registry.new_connection_id(), identity, websocket,
            )
            if entry.is_device:
                await self.machine.attach_device(entry)
            await entry.send(WSMessageType.CONNECTION_CONFIRMED.value, ConnectionConfirmedPayload(
                device_id=entry.device_id,
            ))
            logger.info(
                "WS connected: conn=%s device=%s user=%s type=%s",
                entry.connection_id, entry.device_id, entry.user_id, identity.client_type.value,
            )

            # ---- Phase 2: Message Loop ----
            while True:
                raw = await websocket.receive_text()
                stop_reason = await self.handle_message(entry, raw)
                if stop_reason is not None:
                    reason = stop_reason
                    await websocket.close(code=1000, reason=reason[:120])
                    break

        except WebSocketDisconnect:
            logger.info("WS disconnected: device=%s", entry.device_id if entry else None)
        except Exception as e:
            logger.error(
                "WS error: device=%s error=%s",
                entry.device_id if entry else None, str(e), exc_info=True,
            )
            reason = "error"
        finally:
            if entry is not None:
                self.registry.unregister(entry.connection_id)
                if entry.is_device:
                    try:
                        await self.machine.detach_device(entry, reason=reason)
                    except Exception as e:
                        logger.error("Disconnect cleanup failed: device=%s error=%s", entry.device_id, str(e))

    async def handle_message(self, entry: ConnectionEntry, raw: str) -> Optional[str]:
        """Process one inbound frame. Returns a reason string when the client asked to disconnect."""
        msg = None
        try:
            msg = parse_client_message(raw)
            if not entry.is_device and msg.type not in COMPANION_ALLOWED_MESSAGES:
                raise ProtocolViolation(
                    f"{msg.type} is not allowed for companion clients", code="COMPANION_NOT_ALLOWED",
                )
            return await self._route(entry, msg)
        except CoordinatorError as e:
            logger.warning(
                "WS message rejected: device=%s type=%s code=%s reason=%s",
                entry.device_id, msg.type if msg else None, e.code, e.message,
            )
            if isinstance(msg, ButtonPressMessage):
                await entry.send(WSMessageType.STREAM_ERROR.value, StreamErrorPayload(
                    error=e.message, code=e.code, session_id=entry.session_id,
                ))
            else:
                await entry.send(WSMessageType.ERROR.value, ErrorPayload(
                    message=e.message, code=e.code, recoverable=e.code != "STORE_UNAVAILABLE",
                ))
            return None

    async def _route(self, entry: ConnectionEntry, msg) -> Optional[str]:
        if isinstance(msg, ButtonPressMessage):
            if msg.payload.type == "press":
                await self.machine.press(entry)
            else:
                await self.machine.release(entry)

        elif isinstance(msg, ConversationStartedMessage):
            await self.machine.conversation_started(entry, msg.payload)

        elif isinstance(msg, ConversationEndedMessage):
            await self.machine.conversation_ended(entry, msg.payload)

        elif isinstance(msg, HeartbeatMessage):
            server_ts = _utcnow()
            if entry.is_device:
                server_ts = await self.machine.heartbeat(entry, msg.payload)
            await entry.send(WSMessageType.HEARTBEAT_ACK.value, HeartbeatAckPayload(server_ts=server_ts))

        elif isinstance(msg, AudioChunkMessage):
            self.machine.record_audio_chunk(entry, msg.payload.session_id)

        elif isinstance(msg, DeviceErrorMessage):
            await self.machine.device_error(entry, msg.payload.message)

        elif isinstance(msg, PingMessage):
            await entry.send(WSMessageType.PONG.value, PongPayload())

        elif isinstance(msg, DisconnectMessage):
            logger.info("Disconnect requested: device=%s reason=%s", entry.device_id, msg.payload.reason)
            return msg.payload.reason

        elif isinstance(msg, ConnectMessage):
            raise ProtocolViolation("Connection already admitted", code="ALREADY_CONNECTED")

        return None
