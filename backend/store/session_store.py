"""Session Store — Redis-backed, TTL-bounded device and session records.

Keys:
  device:{device_id}          hash   DeviceSession      TTL 24h, refreshed on heartbeat
  user:{user_id}:devices      set    device ids         TTL 24h, refreshed with its devices
  session:{session_id}        hash   StreamingSession   TTL 1h, absolute, never refreshed

Degraded mode:
  When STORE_DEGRADED_MODE is on and Redis is unreachable (at startup or at call
  time), every operation becomes a no-op returning None/[]/False and session
  state lives only in process memory. When it is off, the same failures raise
  StoreUnavailableError so operators can choose to fail hard.

Every write is field-level last-write-wins; no cross-instance locking.
"""
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from config.settings import Settings, get_settings
from core.exceptions import StoreUnavailableError
from schemas.session import (
    DEVICE_SESSION_FIELDS,
    STREAMING_SESSION_FIELDS,
    DeviceSession,
    StreamingSession,
    decode_fields,
    encode_fields,
)

logger = logging.getLogger(__name__)


def _device_key(device_id: str) -> str:
    return f"device:{device_id}"


def _user_devices_key(user_id: str) -> str:
    return f"user:{user_id}:devices"


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _decode_str(raw: str) -> str:
    """Hash values are JSON-encoded; decode a single string field."""
    return decode_fields({"v": raw})["v"]


class SessionStore:
    """Durable store for DeviceSession / StreamingSession records."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Any] = None,
    ):
        self.settings = settings or get_settings()
        self.degraded_mode = self.settings.STORE_DEGRADED_MODE
        self.device_ttl_s = self.settings.DEVICE_SESSION_TTL_S
        self.session_ttl_s = self.settings.STREAMING_SESSION_TTL_S
        self._client = client
        self._available = False

    # ---- Connection lifecycle ----

    @property
    def available(self) -> bool:
        return self._available

    async def connect(self) -> bool:
        """Connect and ping. Returns availability; raises only when degraded mode is off."""
        if self._client is None:
            self._client = redis.from_url(
                self.settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=self.settings.REDIS_CONNECT_TIMEOUT_S,
                socket_timeout=self.settings.REDIS_CONNECT_TIMEOUT_S,
            )
        try:
            await self._client.ping()
            self._available = True
            logger.info("[Store] Connected to Redis")
        except Exception as e:
            self._available = False
            if not self.degraded_mode:
                logger.error("[Store] Redis connection failed, degraded mode disabled: %s", str(e))
                raise StoreUnavailableError(f"Session store unreachable: {e}")
            logger.warning(
                "[Store] Redis connection failed — DEGRADED MODE, session state is process-local only: %s",
                str(e),
            )
        return self._available

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug("[Store] Close error ignored: %s", str(e))
            self._client = None
        self._available = False
        logger.info("[Store] Disconnected from Redis")

    async def health_check(self) -> bool:
        """Ping the store. A successful ping also restores availability after an outage."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except Exception as e:
            if self._available:
                logger.warning("[Store] Health check failed: %s", str(e))
            self._available = False
            return False
        if not self._available:
            logger.info("[Store] Redis reachable again — leaving degraded mode")
        self._available = True
        return True

    def _usable(self, operation: str) -> bool:
        if self._available and self._client is not None:
            return True
        if not self.degraded_mode:
            raise StoreUnavailableError(f"Session store unavailable for {operation}")
        logger.debug("[Store] Degraded no-op: %s", operation)
        return False

    def _on_error(self, operation: str, error: Exception) -> None:
        """Call-time failure: mark unavailable, then degrade or raise."""
        self._available = False
        if not self.degraded_mode:
            logger.error("[Store] %s failed: %s", operation, str(error))
            raise StoreUnavailableError(f"Session store error during {operation}: {error}")
        logger.warning("[Store] %s failed — degrading to no-op: %s", operation, str(error))

    # ---- Device sessions ----

    async def set_device_session(self, session: DeviceSession) -> bool:
        if not self._usable("set_device_session"):
            return False
        key = _device_key(session.device_id)
        index_key = _user_devices_key(session.user_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=session.to_hash())
                pipe.expire(key, self.device_ttl_s)
                pipe.sadd(index_key, session.device_id)
                pipe.expire(index_key, self.device_ttl_s)
                await pipe.execute()
        except Exception as e:
            self._on_error("set_device_session", e)
            return False
        logger.debug("[Store] Device session stored: device=%s", session.device_id)
        return True

    async def get_device_session(self, device_id: str) -> Optional[DeviceSession]:
        if not self._usable("get_device_session"):
            return None
        try:
            raw = await self._client.hgetall(_device_key(device_id))
        except Exception as e:
            self._on_error("get_device_session", e)
            return None
        return self._parse_device(device_id, raw)

    @staticmethod
    def _parse_device(device_id: str, raw: Dict[str, str]) -> Optional[DeviceSession]:
        if not raw:
            return None
        try:
            return DeviceSession.from_hash(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("[Store] Corrupt device record: device=%s error=%s", device_id, str(e))
            return None

    async def update_device_session(self, device_id: str, **fields: Any) -> bool:
        """Field-level update of an existing device record; refreshes its TTL.

        Returns False when the record does not exist (expired or never written).
        """
        unknown = set(fields) - DEVICE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown DeviceSession fields: {sorted(unknown)}")
        if not self._usable("update_device_session"):
            return False
        key = _device_key(device_id)
        try:
            if not await self._client.exists(key):
                return False
            user_id = await self._client.hget(key, "user_id")
            async with self._client.pipeline(transaction=True) as pipe:
                if fields:
                    pipe.hset(key, mapping=encode_fields(fields))
                pipe.expire(key, self.device_ttl_s)
                if user_id:
                    pipe.expire(_user_devices_key(_decode_str(user_id)), self.device_ttl_s)
                await pipe.execute()
        except Exception as e:
            self._on_error("update_device_session", e)
            return False
        return True

    async def remove_device_session(self, device_id: str) -> bool:
        if not self._usable("remove_device_session"):
            return False
        key = _device_key(device_id)
        try:
            user_id = await self._client.hget(key, "user_id")
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if user_id:
                    pipe.srem(_user_devices_key(_decode_str(user_id)), device_id)
                await pipe.execute()
        except Exception as e:
            self._on_error("remove_device_session", e)
            return False
        logger.debug("[Store] Device session removed: device=%s", device_id)
        return True

    async def get_user_devices(self, user_id: str) -> List[DeviceSession]:
        """Enumerate a user's devices, pruning index members whose record expired."""
        if not self._usable("get_user_devices"):
            return []
        index_key = _user_devices_key(user_id)
        try:
            device_ids = await self._client.smembers(index_key)
            devices: List[DeviceSession] = []
            stale: List[str] = []
            for device_id in sorted(device_ids):
                # Read errors propagate; only a missing key counts as stale
                raw = await self._client.hgetall(_device_key(device_id))
                if not raw:
                    stale.append(device_id)
                    continue
                session = self._parse_device(device_id, raw)
                if session is not None:
                    devices.append(session)
            if stale:
                await self._client.srem(index_key, *stale)
                logger.debug("[Store] Pruned %d stale devices for user=%s", len(stale), user_id)
        except Exception as e:
            self._on_error("get_user_devices", e)
            return []
        return devices

    # ---- Streaming sessions ----

    async def set_streaming_session(self, session: StreamingSession) -> bool:
        """Write a full session record. The TTL is set only when the key is new."""
        if not self._usable("set_streaming_session"):
            return False
        key = _session_key(session.session_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=session.to_hash())
                pipe.expire(key, self.session_ttl_s, nx=True)
                await pipe.execute()
        except Exception as e:
            self._on_error("set_streaming_session", e)
            return False
        logger.debug("[Store] Streaming session stored: session=%s", session.session_id)
        return True

    async def get_streaming_session(self, session_id: str) -> Optional[StreamingSession]:
        if not self._usable("get_streaming_session"):
            return None
        try:
            raw = await self._client.hgetall(_session_key(session_id))
        except Exception as e:
            self._on_error("get_streaming_session", e)
            return None
        if not raw:
            return None
        try:
            return StreamingSession.from_hash(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("[Store] Corrupt session record: session=%s error=%s", session_id, str(e))
            return None

    async def update_streaming_session(self, session_id: str, fields: Dict[str, Any]) -> bool:
        """Field-level update; unrelated fields are untouched and the TTL is not refreshed.

        Returns False when the session does not exist (expired or never written).
        """
        unknown = set(fields) - STREAMING_SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown StreamingSession fields: {sorted(unknown)}")
        if not fields:
            return True
        if not self._usable("update_streaming_session"):
            return False
        key = _session_key(session_id)
        try:
            if not await self._client.exists(key):
                logger.debug("[Store] Update skipped, session absent: session=%s", session_id)
                return False
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=encode_fields(fields))
                # Bounds a record re-created by a racing expiry without refreshing a live one
                pipe.expire(key, self.session_ttl_s, nx=True)
                await pipe.execute()
        except Exception as e:
            self._on_error("update_streaming_session", e)
            return False
        logger.debug("[Store] Streaming session updated: session=%s fields=%s", session_id, sorted(fields))
        return True

    def get_status(self) -> dict:
        return {
            "available": self._available,
            "degraded_mode": self.degraded_mode,
            "device_ttl_s": self.device_ttl_s,
            "session_ttl_s": self.session_ttl_s,
        }
