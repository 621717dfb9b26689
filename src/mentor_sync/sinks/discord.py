"""
Discord Webhook 事件目标
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from mentor_sync.core.projection import EventMessage
from mentor_sync.models.sync_config import DiscordSinkConfig
from mentor_sync.sinks.base import BaseEventSink, SendResult
from mentor_sync.utils.logging import get_logger
from mentor_sync.utils.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)


def build_payload(message: EventMessage, username: Optional[str] = None) -> Dict[str, Any]:
    """EventMessage 转换为 Discord embed 负载"""
    embed: Dict[str, Any] = {
        "title": message.title,
        "color": message.color,
        "timestamp": message.timestamp.isoformat(),
        "fields": [
            {"name": f.name, "value": f.value, "inline": f.inline}
            for f in message.fields
        ],
    }
    if message.description:
        embed["description"] = message.description
    if message.record_id:
        embed["footer"] = {"text": message.record_id}

    payload: Dict[str, Any] = {"embeds": [embed]}
    if username:
        payload["username"] = username
    return payload


class DiscordWebhookSink(BaseEventSink):
    """
    Discord Webhook 发送器

    本地按配置的滚动窗口限速；服务端返回 429 时报告 rate_limited，
    并按 retry_after 暂停本目标的后续发送。
    """

    def __init__(
        self,
        config: DiscordSinkConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        初始化发送器

        参数:
            config: Discord 目标配置
            session: 共享的 HTTP 会话（测试中注入）
        """
        limiter = SlidingWindowRateLimiter(
            max_events=config.rate_limit.max_sends,
            window_seconds=config.rate_limit.window_seconds,
        )
        super().__init__(config.name, limiter)
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        """创建 HTTP 会话"""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
        logger.info("discord_connected", sink=self.name)

    async def disconnect(self) -> None:
        """关闭自建的 HTTP 会话"""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _deliver(self, message: EventMessage) -> SendResult:
        """POST embed 到 webhook"""
        if self._session is None:
            return SendResult.failed("Discord 未连接", retryable=False)

        payload = build_payload(message, self.config.username)
        try:
            async with self._session.post(
                self.config.webhook_url,
                json=payload,
                params={"wait": "true"},
            ) as response:
                if response.status < 300:
                    return SendResult.sent()

                if response.status == 429:
                    return SendResult.rate_limited(await self._retry_after(response))

                body = await response.text()
                retryable = response.status >= 500
                return SendResult.failed(
                    f"HTTP {response.status}: {body[:200]}", retryable=retryable
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return SendResult.failed(f"网络错误: {e}", retryable=True)

    @staticmethod
    async def _retry_after(response: aiohttp.ClientResponse) -> float:
        """读取 429 响应中的等待时间（秒）"""
        try:
            data = await response.json(content_type=None)
            if isinstance(data, dict) and "retry_after" in data:
                return float(data["retry_after"])
        except (ValueError, aiohttp.ContentTypeError):
            pass

        header = response.headers.get("Retry-After") or response.headers.get("X-RateLimit-Reset-After")
        try:
            return float(header) if header else 1.0
        except ValueError:
            return 1.0
