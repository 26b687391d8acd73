import unittest
from unittest.mock import AsyncMock

from rollup_indexer.events import EVENT_TOPICS, EventKind
from rollup_indexer.log_fetcher import AdaptiveLogFetcher, RangeTask, split_range
from rollup_indexer.resilience import RetryConfig
from tests.utils import INBOX, FakeChainClient, verified_log

TOPIC = EVENT_TOPICS[EventKind.VERIFIED]


class TestSplitRange(unittest.TestCase):
    def test_even_split(self):
        tasks = split_range(0, 9, 5)
        self.assertEqual([(t.from_block, t.to_block) for t in tasks], [(0, 4), (5, 9)])

    def test_remainder(self):
        tasks = split_range(10, 20, 4)
        self.assertEqual([(t.from_block, t.to_block) for t in tasks], [(10, 13), (14, 17), (18, 20)])

    def test_width_is_at_least_one(self):
        self.assertEqual(len(split_range(1, 3, 0)), 3)

    def test_task_width(self):
        self.assertEqual(RangeTask(5, 5).width, 1)


class TestAdaptiveLogFetcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = FakeChainClient()
        for block in (3, 50, 99):
            self.client.add(verified_log(block, block, block))
        self.sleep = AsyncMock()

    def make_fetcher(self, **kwargs):
        kwargs.setdefault("retry_config", RetryConfig())
        return AdaptiveLogFetcher(self.client, INBOX, sleep=self.sleep, **kwargs)

    def ranges(self):
        return [(start, end) for _topic, start, end in self.client.get_logs_calls]

    async def test_single_request(self):
        logs = await self.make_fetcher().fetch(TOPIC, 0, 100)
        self.assertEqual([log.block_number for log in logs], [3, 50, 99])
        self.assertEqual(self.ranges(), [(0, 100)])

    async def test_empty_range(self):
        self.assertEqual(await self.make_fetcher().fetch(TOPIC, 10, 9), [])
        self.assertEqual(self.client.get_logs_calls, [])

    async def test_configured_limit_splits_up_front(self):
        logs = await self.make_fetcher(range_limit=40).fetch(TOPIC, 0, 100)
        self.assertEqual([log.block_number for log in logs], [3, 50, 99])
        self.assertEqual(self.ranges(), [(0, 39), (40, 79), (80, 100)])

    async def test_hint_is_learned_and_reused(self):
        self.client.max_log_range = 30
        fetcher = self.make_fetcher()

        logs = await fetcher.fetch(TOPIC, 0, 100)

        self.assertEqual([log.block_number for log in logs], [3, 50, 99])
        self.assertEqual(fetcher.range_limit, 30)
        self.assertEqual(self.ranges(), [(0, 100), (0, 29), (30, 59), (60, 89), (90, 100)])

        self.client.get_logs_calls.clear()
        await fetcher.fetch(TOPIC, 100, 130)
        self.assertEqual(self.ranges(), [(100, 129), (130, 130)])

    async def test_bisects_without_hint(self):
        self.client.log_errors = [ValueError("block range is too wide"), ValueError("block range is too wide")]

        logs = await self.make_fetcher().fetch(TOPIC, 0, 99)

        self.assertEqual([log.block_number for log in logs], [3, 50, 99])
        self.assertEqual(self.ranges(), [(0, 99), (0, 49), (0, 24), (25, 49), (50, 99)])

    async def test_single_block_range_error_is_raised(self):
        self.client.log_errors = [ValueError("block range is too wide")]
        with self.assertRaises(ValueError):
            await self.make_fetcher().fetch(TOPIC, 5, 5)

    async def test_rate_limit_backs_off_and_retries(self):
        self.client.log_errors = [ValueError("429 Too Many Requests")] * 3

        logs = await self.make_fetcher().fetch(TOPIC, 0, 100)

        self.assertEqual(len(logs), 3)
        self.assertEqual([call.args[0] for call in self.sleep.await_args_list], [1.0, 2.0, 4.0])
        self.assertEqual(self.ranges(), [(0, 100)] * 4)

    async def test_rate_limit_gives_up_after_max_attempts(self):
        self.client.log_errors = [ValueError("rate limit exceeded")] * 10

        with self.assertRaises(ValueError):
            await self.make_fetcher(retry_config=RetryConfig(max_attempts=6)).fetch(TOPIC, 0, 100)

        self.assertEqual(len(self.client.get_logs_calls), 6)
        self.assertEqual(self.sleep.await_count, 5)

    async def test_other_errors_propagate(self):
        self.client.log_errors = [ConnectionError("connection refused")]
        with self.assertRaises(ConnectionError):
            await self.make_fetcher().fetch(TOPIC, 0, 100)
        self.sleep.assert_not_awaited()
