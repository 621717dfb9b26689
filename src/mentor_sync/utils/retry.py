"""
重试工具 - 指数退避与瞬时错误判定
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import aiohttp

from mentor_sync.models.sync_config import RetryPolicy
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# 异常消息中出现这些关键字时视为可重试
_RETRYABLE_KEYWORDS = [
    "connection", "timeout", "timed out", "closed", "reset", "refused",
    "network", "temporary", "unavailable", "locked", "busy",
]


def is_transient(error: BaseException) -> bool:
    """
    判断错误是否为瞬时错误（可重试）

    优先使用异常自带的 transient 标记，其次按异常类型，
    最后退化为按消息关键字判断。
    """
    flag = getattr(error, "transient", None)
    if isinstance(flag, bool):
        return flag

    if isinstance(error, (asyncio.TimeoutError, ConnectionError, aiohttp.ClientError)):
        return True

    error_msg = str(error).lower()
    return any(keyword in error_msg for keyword in _RETRYABLE_KEYWORDS)


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """
    计算退避延迟

    参数:
        policy: 重试策略
        attempt: 已失败次数（从 0 开始）

    返回:
        延迟秒数
    """
    delay = policy.backoff_factor * (2 ** attempt)
    if policy.jitter:
        delay += random.uniform(0, 1)
    return min(delay, policy.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """
    按重试策略执行异步操作

    参数:
        operation: 无参异步函数
        policy: 重试策略
        name: 日志中的操作名
        retryable: 错误是否可重试的判定函数
        sleep: 等待函数（测试中可替换）

    返回:
        operation 的返回值

    异常:
        最后一次失败的异常（不可重试或重试次数耗尽）
    """
    sleep = sleep or asyncio.sleep
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_retries or not retryable(e):
                logger.error(
                    "retry_exhausted",
                    operation=name,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise

            delay = backoff_delay(policy, attempt)
            logger.warning(
                "retrying_after_error",
                operation=name,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
