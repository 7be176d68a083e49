import asyncio
import time
from typing import Optional

class CircuitOpenError(RuntimeError):
    pass


class CircuitBreaker:
    """
    Simple async circuit breaker (in-memory).
    - failure_threshold: consecutive failures before opening.
    - recovery_timeout: seconds to wait before letting a trial call through (half-open).
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)
        self._fail_count = 0
        self._state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _maybe_transition(self):
        if self._state == "OPEN" and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = "HALF_OPEN"

    async def before_call(self):
        async with self._lock:
            self._maybe_transition()
            if self._state == "OPEN":
                raise CircuitOpenError(f"circuit {self.name} is open")

    async def after_call(self, success: bool):
        async with self._lock:
            if success:
                self._fail_count = 0
                self._state = "CLOSED"
                self._opened_at = None
                return

            self._fail_count += 1
            # a failing probe in HALF_OPEN re-opens immediately
            if self._fail_count >= self.failure_threshold or self._state == "HALF_OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._fail_count = 0
