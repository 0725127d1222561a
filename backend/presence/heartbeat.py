"""Heartbeat tracking — device presence.

Each heartbeat refreshes lastSeen, optional battery/firmware, and the
DeviceSession TTL. A record that expired while the device stayed connected
is written back from the connection's own view.
"""
import logging
from datetime import datetime, timezone
from typing import Callable

from gateway.registry import ConnectionEntry
from schemas.session import DeviceSession
from schemas.ws_messages import HeartbeatPayload
from store.session_store import SessionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def record_heartbeat(
    store: SessionStore,
    entry: ConnectionEntry,
    payload: HeartbeatPayload,
    clock: Callable[[], datetime] = _utcnow,
) -> datetime:
    """Record a heartbeat for a device connection. Returns server timestamp."""
    now = clock()
    fields = {"last_seen": now}
    if payload.battery_level is not None:
        fields["battery_level"] = payload.battery_level
    if payload.firmware_version is not None:
        fields["firmware_version"] = payload.firmware_version

    if await store.update_device_session(entry.device_id, **fields):
        logger.debug("Heartbeat recorded: device=%s battery=%s", entry.device_id, payload.battery_level)
        return now

    if store.available:
        logger.info("Heartbeat for expired device record, rewriting: device=%s", entry.device_id)
        await store.set_device_session(DeviceSession(
            device_id=entry.device_id,
            user_id=entry.user_id,
            device_name=entry.device_name,
            connected_at=entry.connected_at,
            last_seen=now,
            is_streaming=entry.is_streaming,
            current_session_id=entry.session_id,
            battery_level=payload.battery_level,
            firmware_version=payload.firmware_version or entry.identity.firmware_version,
        ))
    return now

