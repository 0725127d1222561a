"""Circuit breaker for the conversation provider.

Consecutive start_conversation failures open the breaker so presses fail
fast instead of each waiting out PROVIDER_TIMEOUT_S.

States: CLOSED (normal) → OPEN (blocking) → HALF_OPEN (testing)
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "CLOSED"       # Normal operation
    OPEN = "OPEN"           # Blocking all requests
    HALF_OPEN = "HALF_OPEN" # Testing recovery


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """In-memory circuit breaker, one per protected collaborator."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: int = 30,
        half_open_max: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.half_open_max = half_open_max
        self._clock = clock

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[datetime] = None
        self.half_open_attempts = 0

    def record_success(self) -> None:
        if self.state == BreakerState.HALF_OPEN:
            self.state = BreakerState.CLOSED
            self.failure_count = 0
            self.half_open_attempts = 0
            logger.info("[CircuitBreaker] %s: CLOSED (recovered)", self.name)
        elif self.state == BreakerState.CLOSED:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_at = self._clock()

        if self.state == BreakerState.HALF_OPEN:
            self.state = BreakerState.OPEN
            logger.warning("[CircuitBreaker] %s: OPEN (half-open failed)", self.name)
        elif self.state == BreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self.state = BreakerState.OPEN
            logger.warning(
                "[CircuitBreaker] %s: OPEN (threshold=%d reached)",
                self.name, self.failure_threshold,
            )

    def is_allowed(self) -> tuple[bool, str]:
        """Check if an operation may proceed. Returns (allowed, reason)."""
        if self.state == BreakerState.CLOSED:
            return True, "ok"

        if self.state == BreakerState.OPEN:
            if self.last_failure_at:
                elapsed = (self._clock() - self.last_failure_at).total_seconds()
                if elapsed >= self.recovery_timeout_s:
                    self.state = BreakerState.HALF_OPEN
                    self.half_open_attempts = 1
                    logger.info("[CircuitBreaker] %s: HALF_OPEN (testing)", self.name)
                    return True, "half_open"
            return False, f"Circuit open: {self.name} (failures={self.failure_count})"

        if self.half_open_attempts < self.half_open_max:
            self.half_open_attempts += 1
            return True, "half_open"
        return False, f"Circuit half-open limit: {self.name}"

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_s": self.recovery_timeout_s,
        }
