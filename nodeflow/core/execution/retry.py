"""
Retry policy for nodes backed by external services
Exponential backoff with jitter, bounded by attempts and by the execution deadline
"""
import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from ..config import Config
from ..services import ServiceError
from ..types import AttemptRecord
from ...utils.logger import get_logger

logger = get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ServiceError) and exc.transient


class wait_jittered_exponential(wait_base):
    """base * factor^(attempt-1), scaled by a uniform factor in [1-jitter, 1+jitter]"""

    def __init__(self, base: float, factor: float, jitter: float, rng: random.Random):
        self.base = base
        self.factor = factor
        self.jitter = jitter
        self.rng = rng

    def __call__(self, retry_state) -> float:
        delay = self.base * self.factor ** (retry_state.attempt_number - 1)
        if self.jitter:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, delay)


class stop_before_deadline(stop_base):
    """Stop when the upcoming sleep would end past the deadline (time.monotonic based)"""

    def __init__(self, deadline: Optional[float]):
        self.deadline = deadline

    def __call__(self, retry_state) -> bool:
        if self.deadline is None:
            return False
        return time.monotonic() + retry_state.upcoming_sleep >= self.deadline


class RetryPolicy:
    """
    Retry settings shared by ai-* and automation-* executors

    Only ServiceError(transient=True) is retried. The last error is re-raised
    unchanged once attempts or time run out; callers classify it.
    """

    def __init__(
        self,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        factor: Optional[float] = None,
        jitter: Optional[float] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            attempts: Total attempts including the first (default Config.RETRY_ATTEMPTS)
            base_delay: Delay before the second attempt in seconds (default Config.RETRY_BASE_MS / 1000)
            factor: Multiplier applied per further attempt (default Config.RETRY_FACTOR)
            jitter: Relative jitter, 0.2 means ±20% (default Config.RETRY_JITTER)
            rng: Random source for the jitter (tests pass a seeded one)
        """
        self.attempts = attempts if attempts is not None else Config.RETRY_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else Config.RETRY_BASE_MS / 1000.0
        self.factor = factor if factor is not None else Config.RETRY_FACTOR
        self.jitter = jitter if jitter is not None else Config.RETRY_JITTER
        self.rng = rng or random.Random()

    def delay_for(self, attempt_number: int) -> float:
        """Nominal (jitter-free) delay after the given failed attempt"""
        return self.base_delay * self.factor ** (attempt_number - 1)

    async def call(
        self,
        func: Callable[[], Awaitable[Any]],
        deadline: Optional[float] = None,
        on_attempt: Optional[Callable[[AttemptRecord], None]] = None,
        label: str = "call"
    ) -> Any:
        """
        Run `func` until it succeeds, fails permanently, or the budget is spent

        Args:
            func: Zero-argument coroutine factory performing one attempt
            deadline: time.monotonic() value after which no new sleep may end
            on_attempt: Receives one AttemptRecord per attempt
            label: Name used in log messages

        Returns:
            The result of the first successful attempt

        Raises:
            ServiceError: The last error when retries are exhausted or not allowed
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts) | stop_before_deadline(deadline),
            wait=wait_jittered_exponential(self.base_delay, self.factor, self.jitter, self.rng),
            retry=retry_if_exception(_is_transient),
            sleep=asyncio.sleep,
            reraise=True,
        )

        result = None
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                started = time.time()
                t0 = time.perf_counter()
                try:
                    result = await func()
                except ServiceError as e:
                    record: AttemptRecord = {
                        "attempt": number,
                        "startedAt": round(started * 1000, 3),
                        "elapsedMs": round((time.perf_counter() - t0) * 1000, 3),
                        "error": e.message,
                        "transient": e.transient,
                    }
                    if on_attempt:
                        on_attempt(record)
                    if e.transient:
                        logger.warning(f"{label}: transient failure on attempt {number}/{self.attempts}: {e.message}")
                    raise
                if on_attempt:
                    on_attempt({
                        "attempt": number,
                        "startedAt": round(started * 1000, 3),
                        "elapsedMs": round((time.perf_counter() - t0) * 1000, 3),
                    })
        return result
