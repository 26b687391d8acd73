"""Adaptive eth_getLogs retrieval.

Splits block ranges the provider refuses as too wide, backs off when it is
throttled and remembers the largest range it accepts for later calls.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

import structlog

from rollup_indexer.chain_client import RawLog
from rollup_indexer.resilience import (
    RetryConfig, extract_log_range_limit, is_log_range_error, is_rate_limit_error
)

logger = structlog.get_logger(__name__)


@dataclass
class RangeTask:
    """A pending inclusive block range."""
    from_block: int
    to_block: int
    attempts: int = 0

    @property
    def width(self) -> int:
        return self.to_block - self.from_block + 1


def split_range(from_block: int, to_block: int, width: int) -> List[RangeTask]:
    """Cut an inclusive range into consecutive tasks of at most ``width`` blocks."""
    width = max(width, 1)
    tasks = []
    start = from_block
    while start <= to_block:
        end = min(start + width - 1, to_block)
        tasks.append(RangeTask(start, end))
        start = end + 1
    return tasks


class AdaptiveLogFetcher:
    """Fetch logs of one contract over arbitrary block ranges."""

    def __init__(
        self,
        client,
        address: str,
        range_limit: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.address = address
        self.range_limit = range_limit
        self.retry_config = retry_config or RetryConfig.from_settings()
        self._sleep = sleep

    async def fetch(self, topic0: str, from_block: int, to_block: int) -> List[RawLog]:
        """Get every log for ``topic0`` in ``[from_block, to_block]``, in block order.

        Raises:
            The provider's exception when a range cannot be narrowed further,
            the rate-limit retry budget is exhausted, or the error is not
            recoverable
        """
        if to_block < from_block:
            return []

        queue: Deque[RangeTask] = deque([RangeTask(from_block, to_block)])
        logs: List[RawLog] = []

        while queue:
            task = queue.popleft()

            if self.range_limit and task.width > self.range_limit:
                queue.extendleft(reversed(split_range(task.from_block, task.to_block, self.range_limit)))
                continue

            try:
                batch = await self.client.get_logs(self.address, topic0, task.from_block, task.to_block)
            except Exception as e:
                retry = await self._handle_failure(task, e)
                queue.extendleft(reversed(retry))
                continue

            logs.extend(batch)

        return logs

    async def _handle_failure(self, task: RangeTask, error: Exception) -> List[RangeTask]:
        """Decide how to continue after a failed request.

        Returns:
            Tasks replacing ``task`` at the head of the queue
        """
        if is_log_range_error(error):
            if task.width <= 1:
                raise error

            hint = extract_log_range_limit(error)
            if hint and hint < task.width:
                self.range_limit = hint
                logger.info(
                    "Provider log range limit discovered",
                    range_limit=hint,
                    from_block=task.from_block,
                    to_block=task.to_block
                )
                return split_range(task.from_block, task.to_block, hint)

            middle = task.from_block + task.width // 2 - 1
            logger.debug(
                "Log range rejected, bisecting",
                from_block=task.from_block,
                to_block=task.to_block
            )
            return [RangeTask(task.from_block, middle), RangeTask(middle + 1, task.to_block)]

        if is_rate_limit_error(error):
            if task.attempts + 1 >= self.retry_config.max_attempts:
                logger.error(
                    "Rate limit retries exhausted",
                    from_block=task.from_block,
                    to_block=task.to_block,
                    attempts=task.attempts + 1
                )
                raise error

            delay = self.retry_config.calculate_delay(task.attempts)
            logger.warning(
                "Rate limited, backing off",
                from_block=task.from_block,
                to_block=task.to_block,
                attempt=task.attempts + 1,
                delay=delay
            )
            await self._sleep(delay)
            return [RangeTask(task.from_block, task.to_block, task.attempts + 1)]

        raise error
