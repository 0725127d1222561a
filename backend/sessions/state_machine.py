"""Session State Machine — one streaming session per device.

States:
  Idle → ACTIVE → PROCESSING → COMPLETED
                → COMPLETED            (provider without end events)
  any non-terminal → FAILED           (disconnect, device error, timeout)

Rules:
  - At most one non-terminal StreamingSession per device
  - Every inbound event for a device runs under that device's lock
  - A transition is durable once its store write returns (or is a degraded no-op)
  - Fan-out always follows the store write that triggered it
  - fail_session is idempotent: a second call for the same session is a no-op
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import uuid

from abuse.circuit_breakers import CircuitBreaker
from config.settings import Settings, get_settings
from core.exceptions import CoordinatorError, ProtocolViolation, ProviderError, StoreUnavailableError
from gateway.fanout import NotificationFanout
from gateway.registry import ConnectionEntry, ConnectionRegistry
from presence.heartbeat import record_heartbeat
from provider.interface import ConversationProvider, ConversationStart, ConversationSummary
from schemas.session import DeviceSession, SessionStatus, StreamingSession
from schemas.ws_messages import (
    ConversationEventPayload,
    FanoutEvent,
    FanoutPayload,
    HeartbeatPayload,
    ProviderConfigPayload,
    StreamErrorPayload,
    StreamStartedPayload,
    StreamStoppedPayload,
    WSMessageType,
)
from store.session_store import SessionStore

logger = logging.getLogger(__name__)


# Valid transitions
_VALID_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.PROCESSING, SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.PROCESSING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),  # terminal
    SessionStatus.FAILED: set(),  # terminal
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


@dataclass
class TrackedSession:
    """Process-local view of a non-terminal session."""
    session: StreamingSession
    device_name: str
    connection_id: str

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def device_id(self) -> str:
        return self.session.device_id

    @property
    def user_id(self) -> str:
        return self.session.user_id

    @property
    def status(self) -> SessionStatus:
        return self.session.status


class SessionStateMachine:
    """Owns the session lifecycle for every device connected to this instance."""

    def __init__(
        self,
        store: SessionStore,
        provider: ConversationProvider,
        fanout: NotificationFanout,
        registry: ConnectionRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self._provider = provider
        self._fanout = fanout
        self._registry = registry
        self._clock = clock
        self._breaker = breaker or CircuitBreaker(
            "conversation_provider",
            failure_threshold=self.settings.PROVIDER_BREAKER_THRESHOLD,
            recovery_timeout_s=self.settings.PROVIDER_BREAKER_RECOVERY_S,
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sessions: Dict[str, TrackedSession] = {}  # session_id → non-terminal session
        self._device_sessions: Dict[str, str] = {}  # device_id → session_id

    # ---- Tracking ----

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def _current(self, device_id: str) -> Optional[TrackedSession]:
        session_id = self._device_sessions.get(device_id)
        return self._sessions.get(session_id) if session_id else None

    def get_tracked(self, session_id: str) -> Optional[TrackedSession]:
        return self._sessions.get(session_id)

    def tracked_sessions(self) -> List[TrackedSession]:
        return list(self._sessions.values())

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _fanout_payload(self, tracked: TrackedSession, **extra: Any) -> FanoutPayload:
        return FanoutPayload(
            device_id=tracked.device_id,
            device_name=tracked.device_name,
            timestamp=self._clock(),
            session_id=tracked.session_id,
            **extra,
        )

    async def _transition(self, tracked: TrackedSession, to_status: SessionStatus, **fields: Any) -> None:
        """Validate, persist, then apply a status change to a tracked session."""
        current = tracked.status
        if to_status not in _VALID_TRANSITIONS[current]:
            raise ProtocolViolation(
                f"Invalid transition: {current.value} -> {to_status.value}",
                code="INVALID_TRANSITION",
            )
        update = {"status": to_status, **fields}
        await self._store.update_streaming_session(tracked.session_id, update)
        tracked.session = tracked.session.model_copy(update=update)

        if to_status.is_terminal:
            self._sessions.pop(tracked.session_id, None)
            if self._device_sessions.get(tracked.device_id) == tracked.session_id:
                del self._device_sessions[tracked.device_id]

        logger.info(
            "Session transition: session=%s device=%s %s -> %s",
            tracked.session_id, tracked.device_id, current.value, to_status.value,
        )

    async def _clear_device_streaming(self, tracked: TrackedSession) -> None:
        await self._store.update_device_session(
            tracked.device_id, is_streaming=False, current_session_id=None,
        )
        entry = self._registry.get(tracked.connection_id)
        if entry is not None and entry.session_id == tracked.session_id:
            entry.set_streaming(None)

    # ---- Provider calls ----

    async def _start_provider(self, entry: ConnectionEntry, session_id: str) -> ConversationStart:
        allowed, reason = self._breaker.is_allowed()
        if not allowed:
            raise ProviderError(reason)

        timeout_s = self.settings.PROVIDER_TIMEOUT_S
        metadata = {"session_id": session_id, "device_name": entry.device_name}
        try:
            start = await asyncio.wait_for(
                self._provider.start_conversation(entry.user_id, entry.device_id, metadata),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            self._breaker.record_failure()
            raise ProviderError(f"start_conversation timed out after {timeout_s}s")
        except ProviderError:
            self._breaker.record_failure()
            raise
        except Exception as e:
            self._breaker.record_failure()
            raise ProviderError(f"start_conversation failed: {e}")
        self._breaker.record_success()
        return start

    async def end_provider_conversation(self, session_id: str) -> bool:
        """Best-effort end_conversation. Errors are logged, never raised."""
        try:
            await asyncio.wait_for(
                self._provider.end_conversation(session_id),
                timeout=self.settings.PROVIDER_TIMEOUT_S,
            )
            return True
        except Exception as e:
            logger.warning(
                "[Provider] end_conversation failed: session=%s error=%s",
                session_id, str(e) or type(e).__name__,
            )
            return False

    async def _broadcast_press_error(self, entry: ConnectionEntry, error: CoordinatorError) -> None:
        await self._fanout.broadcast(
            entry.user_id,
            FanoutEvent.PROCESSING_ERROR,
            FanoutPayload(
                device_id=entry.device_id,
                device_name=entry.device_name,
                timestamp=self._clock(),
                error=error.message,
                code=error.code,
            ),
            exclude_connection_id=entry.connection_id,
        )

    async def _discard_start(self, session_id: str) -> None:
        """Undo a press whose store writes failed part-way: end the provider, fail the record."""
        logger.warning("[Store] Press not persisted, discarding: session=%s", session_id)
        await self.end_provider_conversation(session_id)
        try:
            if await self._store.health_check():
                await self._store.update_streaming_session(session_id, {
                    "status": SessionStatus.FAILED,
                    "is_active": False,
                    "end_time": self._clock(),
                    "error": "store_unavailable",
                })
        except StoreUnavailableError as e:
            logger.warning("[Store] Could not fail discarded session=%s: %s", session_id, e.message)

    # ---- Device admission ----

    async def attach_device(self, entry: ConnectionEntry) -> DeviceSession:
        """Write the DeviceSession for a newly admitted device, reconciling orphans first."""
        async with self._lock(entry.device_id):
            now = self._clock()
            await self._reconcile_orphan(entry.device_id, now)

            live = self._current(entry.device_id)
            streaming = live if live is not None and live.status == SessionStatus.ACTIVE else None
            device = DeviceSession(
                device_id=entry.device_id,
                user_id=entry.user_id,
                device_name=entry.device_name,
                connected_at=now,
                last_seen=now,
                is_streaming=streaming is not None,
                current_session_id=streaming.session_id if streaming else None,
                firmware_version=entry.identity.firmware_version,
            )
            await self._store.set_device_session(device)

        await self._fanout.broadcast(
            entry.user_id,
            FanoutEvent.DEVICE_CONNECTED,
            FanoutPayload(device_id=entry.device_id, device_name=entry.device_name, timestamp=now),
            exclude_connection_id=entry.connection_id,
        )
        logger.info("Device attached: device=%s user=%s", entry.device_id, entry.user_id)
        return device

    async def _reconcile_orphan(self, device_id: str, now: datetime) -> None:
        """Fail a session left non-terminal by an instance that died mid-stream."""
        previous = await self._store.get_device_session(device_id)
        if previous is None or previous.current_session_id is None:
            return
        session_id = previous.current_session_id
        if session_id in self._sessions:
            return
        stale = await self._store.get_streaming_session(session_id)
        if stale is None or stale.is_terminal:
            return
        await self._store.update_streaming_session(session_id, {
            "status": SessionStatus.FAILED,
            "is_active": False,
            "end_time": now,
            "error": "orphaned",
        })
        logger.warning("Orphaned session failed: session=%s device=%s", session_id, device_id)

    async def detach_device(self, entry: ConnectionEntry, reason: str = "disconnected") -> None:
        """Disconnect cleanup. Safe to call more than once for the same connection."""
        async with self._lock(entry.device_id):
            current = self._current(entry.device_id)
            if current is not None and current.connection_id == entry.connection_id:
                await self._fail_locked(current, "disconnected", code="DISCONNECTED")
            if not self._registry.list_by_device(entry.device_id):
                await self._store.remove_device_session(entry.device_id)

        if not self._registry.list_by_device(entry.device_id):
            lock = self._locks.get(entry.device_id)
            if lock is not None and not lock.locked():
                del self._locks[entry.device_id]

        await self._fanout.broadcast(
            entry.user_id,
            FanoutEvent.DEVICE_DISCONNECTED,
            FanoutPayload(
                device_id=entry.device_id,
                device_name=entry.device_name,
                timestamp=self._clock(),
                reason=reason,
            ),
            exclude_connection_id=entry.connection_id,
        )
        logger.info("Device detached: device=%s reason=%s", entry.device_id, reason)

    # ---- Button events ----

    async def press(self, entry: ConnectionEntry) -> Optional[StreamingSession]:
        """Idle --press--> ACTIVE. Returns the new session, or None when ignored.

        Raises ProtocolViolation(ALREADY_STREAMING) under the reject policy and
        ProviderError when the provider cannot start a conversation.
        """
        async with self._lock(entry.device_id):
            current = self._current(entry.device_id)
            if current is not None:
                if current.status == SessionStatus.ACTIVE:
                    if self.settings.PRESS_WHILE_STREAMING == "ignore":
                        logger.info(
                            "Press ignored, already streaming: device=%s session=%s",
                            entry.device_id, current.session_id,
                        )
                        return None
                    raise ProtocolViolation("Device is already streaming", code="ALREADY_STREAMING")
                # Released but the provider end event never arrived
                await self._transition(
                    current, SessionStatus.COMPLETED, end_time=self._clock(), error="superseded",
                )

            session_id = new_session_id()
            try:
                start = await self._start_provider(entry, session_id)
            except ProviderError as e:
                logger.warning(
                    "[Provider] start_conversation failed: device=%s error=%s", entry.device_id, e.message,
                )
                await self._broadcast_press_error(entry, e)
                raise

            session = StreamingSession(
                session_id=session_id,
                device_id=entry.device_id,
                user_id=entry.user_id,
                start_time=self._clock(),
            )
            try:
                await self._store.set_streaming_session(session)
                await self._store.update_device_session(
                    entry.device_id, is_streaming=True, current_session_id=session_id,
                )
            except StoreUnavailableError as e:
                await self._discard_start(session_id)
                await self._broadcast_press_error(entry, e)
                raise
            tracked = TrackedSession(session, entry.device_name, entry.connection_id)
            self._sessions[session_id] = tracked
            self._device_sessions[entry.device_id] = session_id
            entry.set_streaming(session_id)

            await entry.send(WSMessageType.PROVIDER_CONFIG.value, ProviderConfigPayload(
                session_id=session_id,
                connection_params=start.connection_params,
                identity_variables=start.identity_variables,
                conversation_config=start.config,
                agent_id=start.agent_id,
            ))
            await entry.send(WSMessageType.STREAM_STARTED.value, StreamStartedPayload(
                session_id=session_id, type="press", timestamp=session.start_time,
            ))
            await self._fanout.broadcast(
                entry.user_id, FanoutEvent.STREAM_STARTED, self._fanout_payload(tracked),
                exclude_connection_id=entry.connection_id,
            )
        logger.info("Streaming started: session=%s device=%s", session_id, entry.device_id)
        return session

    async def release(self, entry: ConnectionEntry) -> StreamingSession:
        """ACTIVE --release--> PROCESSING (or COMPLETED when no end event will follow)."""
        async with self._lock(entry.device_id):
            tracked = self._current(entry.device_id)
            if tracked is None or tracked.status != SessionStatus.ACTIVE:
                raise ProtocolViolation("Release without an active session", code="NO_ACTIVE_SESSION")

            fields: Dict[str, Any] = {
                "is_active": False,
                "audio_chunk_count": tracked.session.audio_chunk_count,
            }
            if self._provider.emits_end_event:
                target = SessionStatus.PROCESSING
            else:
                target = SessionStatus.COMPLETED
                fields["end_time"] = self._clock()

            await self._transition(tracked, target, **fields)
            await self.end_provider_conversation(tracked.session_id)
            await self._clear_device_streaming(tracked)

            await entry.send(WSMessageType.STREAM_STOPPED.value, StreamStoppedPayload(
                session_id=tracked.session_id, timestamp=self._clock(),
            ))
            await self._fanout.broadcast(
                entry.user_id, FanoutEvent.STREAM_STOPPED, self._fanout_payload(tracked),
                exclude_connection_id=entry.connection_id,
            )
        logger.info("Streaming stopped: session=%s device=%s", tracked.session_id, entry.device_id)
        return tracked.session

    # ---- Provider events relayed by the device ----

    def _owned_session(self, entry: ConnectionEntry, session_id: str) -> Optional[TrackedSession]:
        tracked = self._sessions.get(session_id)
        if tracked is not None and tracked.device_id != entry.device_id:
            raise ProtocolViolation(
                f"Session {session_id} does not belong to this device", code="SESSION_MISMATCH",
            )
        return tracked

    async def conversation_started(
        self, entry: ConnectionEntry, payload: ConversationEventPayload,
    ) -> StreamingSession:
        """ACTIVE/PROCESSING --conversation_started--> attach externalConversationId."""
        async with self._lock(entry.device_id):
            tracked = self._owned_session(entry, payload.session_id)
            if tracked is None:
                raise ProtocolViolation(
                    f"No open session {payload.session_id}", code="NO_ACTIVE_SESSION",
                )
            update = {"external_conversation_id": payload.conversation_id}
            await self._store.update_streaming_session(tracked.session_id, update)
            tracked.session = tracked.session.model_copy(update=update)

            await self._fanout.broadcast(
                entry.user_id,
                FanoutEvent.CONVERSATION_ACTIVE,
                self._fanout_payload(tracked, conversation_id=payload.conversation_id),
                exclude_connection_id=entry.connection_id,
            )
        logger.info(
            "Conversation active: session=%s conversation=%s",
            tracked.session_id, payload.conversation_id,
        )
        return tracked.session

    async def conversation_ended(
        self, entry: ConnectionEntry, payload: ConversationEventPayload,
    ) -> Optional[StreamingSession]:
        """PROCESSING (or ACTIVE) --conversation_ended--> COMPLETED.

        A duplicate or late end event for a finished session is ignored.
        """
        async with self._lock(entry.device_id):
            tracked = self._owned_session(entry, payload.session_id)
            if tracked is None:
                logger.debug("Conversation end for finished session ignored: session=%s", payload.session_id)
                return None

            was_active = tracked.status == SessionStatus.ACTIVE
            await self._transition(
                tracked,
                SessionStatus.COMPLETED,
                is_active=False,
                end_time=self._clock(),
                external_conversation_id=payload.conversation_id,
                audio_chunk_count=tracked.session.audio_chunk_count,
            )
            if was_active:
                await self._clear_device_streaming(tracked)
                await self._fanout.broadcast(
                    entry.user_id, FanoutEvent.STREAM_STOPPED, self._fanout_payload(tracked),
                    exclude_connection_id=entry.connection_id,
                )
            await self._fanout.broadcast(
                entry.user_id,
                FanoutEvent.CONVERSATION_ENDED,
                self._fanout_payload(tracked, conversation_id=payload.conversation_id),
                exclude_connection_id=entry.connection_id,
            )
        logger.info("Conversation ended: session=%s conversation=%s", tracked.session_id, payload.conversation_id)
        return tracked.session

    # ---- Audio accounting ----

    def record_audio_chunk(self, entry: ConnectionEntry, session_id: str) -> int:
        """Count an audio chunk in memory. Persisted when the session leaves ACTIVE."""
        tracked = self._sessions.get(session_id)
        if (
            tracked is None
            or tracked.device_id != entry.device_id
            or tracked.status != SessionStatus.ACTIVE
        ):
            raise ProtocolViolation(
                f"Audio chunk for a session that is not streaming: {session_id}",
                code="NO_ACTIVE_SESSION",
            )
        count = tracked.session.audio_chunk_count + 1
        tracked.session = tracked.session.model_copy(update={"audio_chunk_count": count})
        return count

    # ---- Presence ----

    async def heartbeat(self, entry: ConnectionEntry, payload: HeartbeatPayload) -> datetime:
        """Record a device heartbeat under the device lock. Returns the server timestamp."""
        async with self._lock(entry.device_id):
            return await record_heartbeat(self._store, entry, payload, clock=self._clock)

    # ---- Failure paths ----

    async def fail_session(
        self,
        session_id: str,
        reason: str,
        code: str = "SESSION_FAILED",
        end_provider: bool = True,
    ) -> bool:
        """Force any non-terminal session to FAILED. Returns False if already finished."""
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return False
        async with self._lock(tracked.device_id):
            tracked = self._sessions.get(session_id)
            if tracked is None:
                return False
            await self._fail_locked(tracked, reason, code=code, end_provider=end_provider)
        return True

    async def _fail_locked(
        self,
        tracked: TrackedSession,
        reason: str,
        code: str,
        end_provider: bool = True,
        event: FanoutEvent = FanoutEvent.PROCESSING_ERROR,
    ) -> None:
        was_active = tracked.status == SessionStatus.ACTIVE
        await self._transition(
            tracked,
            SessionStatus.FAILED,
            is_active=False,
            end_time=self._clock(),
            error=reason,
            audio_chunk_count=tracked.session.audio_chunk_count,
        )
        if was_active and end_provider:
            await self.end_provider_conversation(tracked.session_id)
        await self._clear_device_streaming(tracked)

        entry = self._registry.get(tracked.connection_id)
        if entry is not None:
            await entry.send(WSMessageType.STREAM_ERROR.value, StreamErrorPayload(
                error=reason, code=code, session_id=tracked.session_id, timestamp=self._clock(),
            ))
        await self._fanout.broadcast(
            tracked.user_id,
            event,
            self._fanout_payload(tracked, error=reason, code=code),
            exclude_connection_id=tracked.connection_id,
        )
        logger.warning(
            "Session failed: session=%s device=%s code=%s reason=%s",
            tracked.session_id, tracked.device_id, code, reason,
        )

    async def device_error(self, entry: ConnectionEntry, message: str) -> Optional[str]:
        """Device-reported fault: fail its open session and notify the user's other clients."""
        async with self._lock(entry.device_id):
            tracked = self._current(entry.device_id)
            if tracked is not None:
                await self._fail_locked(
                    tracked, message, code="DEVICE_ERROR", event=FanoutEvent.DEVICE_ERROR,
                )
                return tracked.session_id

        await self._fanout.broadcast(
            entry.user_id,
            FanoutEvent.DEVICE_ERROR,
            FanoutPayload(
                device_id=entry.device_id,
                device_name=entry.device_name,
                timestamp=self._clock(),
                error=message,
                code="DEVICE_ERROR",
            ),
            exclude_connection_id=entry.connection_id,
        )
        logger.warning("Device error without open session: device=%s message=%s", entry.device_id, message)
        return None

    # ---- Post-call results ----

    def _find_by_conversation(self, conversation_id: str) -> Optional[str]:
        for tracked in self._sessions.values():
            if tracked.session.external_conversation_id == conversation_id:
                return tracked.session_id
        return None

    async def apply_conversation_summary(self, summary: ConversationSummary) -> Optional[str]:
        """Attach post-call results to a session without changing its status.

        Returns the session id updated, or None when no session matches.
        """
        session_id = summary.session_id or self._find_by_conversation(summary.conversation_id)
        if not session_id:
            logger.info("Post-call summary unmatched: conversation=%s", summary.conversation_id)
            return None

        fields: Dict[str, Any] = {}
        if summary.transcription is not None:
            fields["transcription"] = summary.transcription
        if summary.ai_response is not None:
            fields["ai_response"] = summary.ai_response
        if summary.tools_used:
            fields["tools_used"] = summary.tools_used
        if summary.processing_time is not None:
            fields["processing_time"] = summary.processing_time

        tracked = self._sessions.get(session_id)
        if tracked is not None:
            tracked.session = tracked.session.model_copy(update=fields)
            await self._store.update_streaming_session(session_id, fields)
        elif not await self._store.update_streaming_session(session_id, fields):
            logger.info("Post-call summary for unknown session: session=%s", session_id)
            return None
        logger.info("Post-call summary applied: session=%s fields=%s", session_id, sorted(fields))
        return session_id

    def get_status(self) -> dict:
        by_status: Dict[str, int] = {}
        for tracked in self._sessions.values():
            by_status[tracked.status.value] = by_status.get(tracked.status.value, 0) + 1
        return {
            "tracked_sessions": len(self._sessions),
            "by_status": by_status,
            "breaker": self._breaker.get_status(),
        }
