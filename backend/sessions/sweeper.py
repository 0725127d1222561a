"""Cleanup Sweeper — background reaper for sessions whose end event never came.

Scans only the state machine's process-local tracking, never the store.
Every SWEEP_INTERVAL_S it fails sessions older than SESSION_MAX_AGE_S with
error "timeout", after a best-effort provider end_conversation. Also pings
the store so a recovered Redis brings the instance out of degraded mode.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from config.settings import Settings, get_settings
from core.exceptions import SessionTimeoutError
from sessions.state_machine import SessionStateMachine
from store.session_store import SessionStore

logger = logging.getLogger(__name__)

_MAX_CONSECUTIVE_FAILURES = 5
_TIMEOUT_CODE = SessionTimeoutError().code


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CleanupSweeper:
    """Periodic safety net for dropped termination events."""

    def __init__(
        self,
        machine: SessionStateMachine,
        store: SessionStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self._machine = machine
        self._store = store
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_run_at: Optional[datetime] = None
        self.last_expired: int = 0
        self.total_expired: int = 0

    async def run_once(self, now: Optional[datetime] = None) -> List[str]:
        """One sweep. Returns the session ids it forced to FAILED."""
        now = now or self._clock()
        max_age_s = self.settings.SESSION_MAX_AGE_S
        expired: List[str] = []

        for tracked in self._machine.tracked_sessions():
            age_s = (now - tracked.session.start_time).total_seconds()
            if age_s <= max_age_s:
                continue
            logger.warning(
                "[Sweeper] Session exceeded %ds: session=%s device=%s status=%s age=%.0fs",
                max_age_s, tracked.session_id, tracked.device_id, tracked.status.value, age_s,
            )
            await self._machine.end_provider_conversation(tracked.session_id)
            if await self._machine.fail_session(
                tracked.session_id, "timeout", code=_TIMEOUT_CODE, end_provider=False,
            ):
                expired.append(tracked.session_id)

        if not self._store.available:
            await self._store.health_check()

        self.last_run_at = now
        self.last_expired = len(expired)
        self.total_expired += len(expired)
        if expired:
            logger.info("[Sweeper] Expired %d sessions", len(expired))
        return expired

    async def _loop(self) -> None:
        logger.info("[Sweeper] Started: interval=%ds max_age=%ds",
                    self.settings.SWEEP_INTERVAL_S, self.settings.SESSION_MAX_AGE_S)
        consecutive_failures = 0
        while True:
            await asyncio.sleep(self.settings.SWEEP_INTERVAL_S)
            try:
                await self.run_once()
                consecutive_failures = 0
            except Exception as e:
                consecutive_failures += 1
                logger.error("[Sweeper] Sweep error (%d consecutive): %s", consecutive_failures, str(e)[:120])
                if consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                    logger.critical("[Sweeper] %d consecutive failures — backing off one extra interval",
                                    consecutive_failures)
                    await asyncio.sleep(self.settings.SWEEP_INTERVAL_S)
                    consecutive_failures = 0

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Sweeper] Stopped")

    def get_status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "interval_s": self.settings.SWEEP_INTERVAL_S,
            "max_age_s": self.settings.SESSION_MAX_AGE_S,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_expired": self.last_expired,
            "total_expired": self.total_expired,
        }
