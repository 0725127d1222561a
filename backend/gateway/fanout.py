"""Notification fan-out — lifecycle events to a user's other connections.

Best-effort, at-most-once: an offline client misses events, no replay.
"""
import asyncio
import logging
from typing import Optional

from gateway.registry import ConnectionRegistry
from schemas.ws_messages import FanoutEvent, FanoutPayload

logger = logging.getLogger(__name__)


class NotificationFanout:
    """Broadcasts to per-user groups derived from the connection registry."""

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    async def broadcast(
        self,
        user_id: str,
        event: FanoutEvent,
        payload: FanoutPayload,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Send an event to every connection of user_id except the origin. Returns delivered count."""
        targets = [
            c for c in self._registry.list_by_user(user_id)
            if c.connection_id != exclude_connection_id
        ]
        if not targets:
            logger.debug("[Fanout] No listeners: event=%s user=%s", event.value, user_id)
            return 0

        results = await asyncio.gather(
            *(c.send(event.value, payload) for c in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for r in results if r is True)
        logger.debug(
            "[Fanout] event=%s user=%s device=%s delivered=%d/%d",
            event.value, user_id, payload.device_id, delivered, len(targets),
        )
        return delivered
