"""
滚动窗口限速器 - 多个并发发送方共享
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Optional


class SlidingWindowRateLimiter:
    """
    滚动窗口限速器

    任意 window_seconds 长度的时间窗口内最多放行 max_events 次。
    acquire() 在达到上限时排队等待，try_acquire() 立即返回。
    内部用锁串行化，多个源并发发送时共享同一配额。
    """

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        初始化限速器

        参数:
            max_events: 窗口内最多放行次数
            window_seconds: 窗口长度(秒)
            clock: 单调时钟（测试中可替换）
        """
        if max_events < 1:
            raise ValueError("max_events 必须 >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds 必须 > 0")

        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        """移除窗口外的记录"""
        while self._events and now - self._events[0] >= self.window_seconds:
            self._events.popleft()

    def try_acquire(self) -> bool:
        """尝试占用一个配额，不等待"""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_events:
            self._events.append(now)
            return True
        return False

    def time_until_available(self) -> float:
        """距离下一个配额释放的秒数（0 表示立即可用）"""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self._events[0] + self.window_seconds - now)

    async def acquire(self) -> None:
        """占用一个配额，达到上限时等待最早的记录滑出窗口"""
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.time_until_available())

    def penalize(self, seconds: float) -> None:
        """
        服务端返回限速时，占满当前窗口直到 seconds 之后

        之后的 acquire() 至少等待 seconds 秒。
        """
        if seconds <= 0:
            return
        now = self._clock()
        release_at = now + seconds - self.window_seconds
        self._events.clear()
        self._events.extend([release_at] * self.max_events)

    @property
    def in_window(self) -> int:
        """当前窗口内已放行次数"""
        self._prune(self._clock())
        return len(self._events)
