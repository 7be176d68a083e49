import asyncio
import functools
import random
from typing import Callable, Optional

import httpx

from orderflow.common.circuit_breaker import CircuitBreaker
from orderflow.common.logging_setup import get_logger

logger = get_logger("orderflow.retries")

TRANSIENT_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout,
                        httpx.PoolTimeout, httpx.RemoteProtocolError, httpx.NetworkError)


def is_transient_http_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (TRANSIENT_EXCEPTIONS, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code if exc.response is not None else None
        return status_code is not None and (status_code >= 500 or status_code == 429)
    return False


def compute_backoff(attempt: int, base: float, factor: float = 2.0, cap: float = 8.0) -> float:
    return min(cap, base * (factor ** (attempt - 1)))


async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_with_circuit(
    *,
    circuit: CircuitBreaker,
    attempts: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
):
    """Retry an async callable on transient errors, failing fast while `circuit` is open.

    Non-retryable errors and the last transient error propagate unchanged;
    CircuitOpenError propagates without touching the wrapped callable.
    """
    if if_retryable is None:
        if_retryable = is_transient_http_error

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                await circuit.before_call()
                try:
                    result = await fn(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    retryable = if_retryable(exc)
                    await circuit.after_call(success=not retryable)
                    if not retryable or attempt == attempts:
                        raise
                    delay = compute_backoff(attempt, base_delay, factor, max_delay)
                    logger.warning(
                        "retry.attempt_failed",
                        extra={"call": fn.__name__, "attempt": attempt, "retry_in": delay, "error": str(exc)},
                    )
                    await _sleep_with_jitter(delay, jitter)
                    continue
                await circuit.after_call(success=True)
                return result
        return wrapper
    return deco
