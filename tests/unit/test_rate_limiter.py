"""
滚动窗口限速器单元测试 (unittest)
"""

import asyncio
import unittest
from unittest import IsolatedAsyncioTestCase

from mentor_sync.utils.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestSlidingWindowRateLimiter(unittest.TestCase):
    """限速器测试"""

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = SlidingWindowRateLimiter(max_events=3, window_seconds=2.0, clock=self.clock)

    def test_allows_up_to_limit(self):
        """测试窗口内最多放行 max_events 次"""
        self.assertTrue(all(self.limiter.try_acquire() for _ in range(3)))
        self.assertFalse(self.limiter.try_acquire())
        self.assertEqual(self.limiter.in_window, 3)

    def test_window_slides(self):
        """测试最早的记录滑出窗口后恢复配额"""
        self.limiter.try_acquire()
        self.clock.advance(1.0)
        self.limiter.try_acquire()
        self.limiter.try_acquire()
        self.assertFalse(self.limiter.try_acquire())

        self.assertAlmostEqual(self.limiter.time_until_available(), 1.0)
        self.clock.advance(1.0)
        self.assertTrue(self.limiter.try_acquire())
        self.assertFalse(self.limiter.try_acquire())

    def test_any_rolling_window_respects_limit(self):
        """测试任意滚动窗口内都不超过上限"""
        granted = []
        for _ in range(40):
            if self.limiter.try_acquire():
                granted.append(self.clock.now)
            self.clock.advance(0.25)

        for i, start in enumerate(granted):
            in_window = [t for t in granted[i:] if t - start < 2.0]
            self.assertLessEqual(len(in_window), 3)

    def test_penalize_blocks_until_retry_after(self):
        """测试服务端限速后在 retry_after 之前不放行"""
        self.limiter.penalize(5.0)
        self.assertFalse(self.limiter.try_acquire())
        self.assertAlmostEqual(self.limiter.time_until_available(), 5.0)
        self.clock.advance(5.0)
        self.assertTrue(self.limiter.try_acquire())

    def test_invalid_arguments(self):
        """测试参数校验"""
        with self.assertRaises(ValueError):
            SlidingWindowRateLimiter(max_events=0, window_seconds=1)
        with self.assertRaises(ValueError):
            SlidingWindowRateLimiter(max_events=1, window_seconds=0)


class TestAcquire(IsolatedAsyncioTestCase):
    """acquire 排队测试"""

    async def test_acquire_waits_for_slot(self):
        """测试达到上限时 acquire 等待而不是丢弃"""
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=0.2)
        loop = asyncio.get_running_loop()
        start = loop.time()
        for _ in range(3):
            await limiter.acquire()
        self.assertGreaterEqual(loop.time() - start, 0.15)

    async def test_concurrent_senders_share_quota(self):
        """测试并发发送方共享配额"""
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=10.0)
        await limiter.acquire()
        await limiter.acquire()

        waiter = asyncio.ensure_future(limiter.acquire())
        await asyncio.sleep(0.05)
        self.assertFalse(waiter.done())
        waiter.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await waiter


if __name__ == "__main__":
    unittest.main()
