#!/usr/bin/env python3
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import aiohttp

from constants import RETRY_DELAY_SCHEDULE, TRANSIENT_NETWORK_KEYWORDS
from services.errors import ConfigError, OnChainRevertError, OperationFailed, TransientNetworkError

T = TypeVar("T")

_NEVER_RETRIED = (ConfigError, OnChainRevertError)


def is_transient_network_error(error: BaseException) -> bool:
    if isinstance(error, (TransientNetworkError, aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in TRANSIENT_NETWORK_KEYWORDS)


class RetryExecutor:
    """Runs an operation up to ``max_attempts`` times with a fixed delay schedule.

    ``schedule[i]`` is the wait after failed attempt ``i + 1``; attempts past
    the end of the schedule are retried without waiting, and no wait follows
    the final attempt. Transient network failures are also passed to
    ``health_reporter`` so the node pool can rotate.
    """

    def __init__(
        self,
        *,
        health_reporter: Optional[Callable[[BaseException], None]] = None,
        schedule: Sequence[float] = RETRY_DELAY_SCHEDULE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.health_reporter = health_reporter
        self.schedule = tuple(schedule)
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str,
        max_attempts: int,
        schedule: Optional[Sequence[float]] = None,
    ) -> T:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        delays = self.schedule if schedule is None else tuple(schedule)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except _NEVER_RETRIED:
                raise
            except Exception as exc:
                last_error = exc
                transient = is_transient_network_error(exc)
                self.logger.warning(
                    "%s attempt %d/%d failed (%s): %s",
                    label,
                    attempt,
                    max_attempts,
                    "network" if transient else "error",
                    exc,
                )
                if transient and self.health_reporter is not None:
                    self.health_reporter(exc)
                if attempt == max_attempts:
                    break
                delay = delays[attempt - 1] if attempt - 1 < len(delays) else 0.0
                if delay > 0:
                    self.logger.info("Retrying %s in %.0fs", label, delay)
                    await self._sleep(delay)

        self.logger.error("%s failed after %d attempts: %s", label, max_attempts, last_error)
        raise OperationFailed(label, last_error) from last_error
