from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from outreach.domain.errors import RunnerTransientError

T = TypeVar("T")
logger = logging.getLogger("runtime")


@dataclass(frozen=True)
class LaunchBackoffPolicy:
    """Bounded retry for job launches.

    max_attempts counts every try, the first one included. Only transient
    runner failures are retried; rejections, auth and not-found errors surface
    on the first attempt.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ms: int = 500

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> LaunchBackoffPolicy:
        return cls(max_attempts=1, base_delay_ms=0, max_delay_ms=0, jitter_ms=0)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.base_delay_ms / 1000,
                max=self.max_delay_ms / 1000,
                jitter=self.jitter_ms / 1000,
            ),
            retry=retry_if_exception_type(RunnerTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await operation()
        return result
