import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    OSError,
    RedisConnectionError,
    RedisTimeoutError,
)


class RetryExhaustedError(Exception):
    def __init__(self, message: str, attempts: int, timeouts: List[float]):
        super().__init__(message)
        self.attempts = attempts
        self.timeouts = timeouts


class RequestTimeoutError(RetryExhaustedError):
    """Every attempt ran out of time."""


class RequestFailedError(RetryExhaustedError):
    """Attempts were exhausted and the last one failed with a transient error."""


def exponential_backoff(attempt: int) -> float:
    return min(2.0 * (2 ** (attempt - 1)), 10.0)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with per-attempt timeout escalation.

    Attempt ``k`` (1-indexed) is given ``min(base_timeout * k, timeout_cap)``
    seconds; between attempts the policy waits ``backoff(k)``.
    """

    max_attempts: int = 3
    base_timeout: float = 10.0
    timeout_cap: float = 30.0
    backoff: Callable[[int], float] = exponential_backoff
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def timeout_for(self, attempt: int) -> float:
        return min(self.base_timeout * attempt, self.timeout_cap)

    async def call(self, operation: Callable[[], Awaitable[T]], label: str = "request") -> T:
        timeouts: List[float] = []
        timed_out = False
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            timeout = self.timeout_for(attempt)
            timeouts.append(timeout)
            logger.debug(f"{label}: attempt {attempt}/{self.max_attempts} with timeout {timeout}s")
            try:
                return await asyncio.wait_for(operation(), timeout)
            except asyncio.TimeoutError as e:
                timed_out, last_error = True, e
                logger.warning(f"{label}: timed out after {timeout}s (attempt {attempt}/{self.max_attempts})")
            except TRANSIENT_ERRORS as e:
                timed_out, last_error = False, e
                logger.warning(f"{label}: failed (attempt {attempt}/{self.max_attempts}): {e}")

            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                logger.info(f"{label}: retrying in {delay}s")
                await self.sleep(delay)

        if timed_out:
            raise RequestTimeoutError(
                f"{label} timed out after {self.max_attempts} attempts",
                attempts=self.max_attempts,
                timeouts=timeouts,
            )
        raise RequestFailedError(
            f"{label} failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            timeouts=timeouts,
        ) from last_error
