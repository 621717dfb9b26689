"""
同步目标抽象基类
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from mentor_sync.core.projection import EventMessage, ProjectedRow
from mentor_sync.utils.logging import get_logger
from mentor_sync.utils.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)


class SinkError(Exception):
    """目标写入失败"""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class TransientSinkError(SinkError):
    """瞬时失败，可重试"""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


# ============================================================================
# 表格目标
# ============================================================================


class ChunkResult(BaseModel):
    """
    单个分块的写入结果

    属性:
        start: 分块在批次中的起始下标
        end: 分块结束下标（不含）
        committed: 目标是否已接受
        error: 失败原因
        retryable: 失败是否可重试
    """
    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    committed: bool
    error: Optional[str] = None
    retryable: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start


class AppendResult(BaseModel):
    """一次 append_rows 的逐块结果"""
    model_config = ConfigDict(frozen=True)

    total: int = 0
    chunks: List[ChunkResult] = Field(default_factory=list)

    @property
    def committed_count(self) -> int:
        """已提交的连续前缀行数"""
        count = 0
        for chunk in self.chunks:
            if not chunk.committed:
                break
            count = chunk.end
        return count

    @property
    def complete(self) -> bool:
        return self.committed_count == self.total

    @property
    def first_failure(self) -> Optional[ChunkResult]:
        for chunk in self.chunks:
            if not chunk.committed:
                return chunk
        return None


class BaseTabularSink(ABC):
    """
    表格目标（只追加）

    按 chunk_size 拆分批次，顺序写入；某个分块失败后不再写入后续分块，
    剩余行全部报告为未提交，调用方据此得知哪些行需要下次重发。
    """

    def __init__(self, name: str, chunk_size: int = 100):
        if chunk_size < 1:
            raise ValueError("chunk_size 必须 >= 1")
        self.name = name
        self.chunk_size = chunk_size

    async def connect(self) -> None:
        """建立连接"""

    async def disconnect(self) -> None:
        """断开连接"""

    @abstractmethod
    async def _write_chunk(
        self,
        table_ref: str,
        rows: Sequence[ProjectedRow],
        columns: Sequence[str],
    ) -> None:
        """
        写入一个分块

        异常:
            SinkError: 写入失败（transient 标记是否可重试）
        """
        raise NotImplementedError

    async def append_rows(
        self,
        table_ref: str,
        rows: Sequence[ProjectedRow],
        columns: Sequence[str],
        on_committed: Optional[Callable[[int], None]] = None,
    ) -> AppendResult:
        """
        追加行

        参数:
            table_ref: 目标表（工作表名）
            rows: 有序行
            columns: 表头
            on_committed: 每个分块提交后以已提交行数回调

        返回:
            AppendResult: 逐块结果
        """
        chunks: List[ChunkResult] = []
        total = len(rows)

        for start in range(0, total, self.chunk_size):
            end = min(start + self.chunk_size, total)

            if chunks and not chunks[-1].committed:
                chunks.append(ChunkResult(
                    start=start, end=end, committed=False,
                    error="前序分块失败，未写入", retryable=True,
                ))
                continue

            try:
                await self._write_chunk(table_ref, rows[start:end], columns)
                chunks.append(ChunkResult(start=start, end=end, committed=True))
                if on_committed is not None:
                    on_committed(end)
            except SinkError as e:
                logger.warning(
                    "tabular_chunk_failed",
                    sink=self.name,
                    table=table_ref,
                    start=start,
                    end=end,
                    error=str(e),
                )
                chunks.append(ChunkResult(
                    start=start, end=end, committed=False,
                    error=str(e), retryable=e.transient,
                ))

        result = AppendResult(total=total, chunks=chunks)
        logger.debug(
            "tabular_rows_appended",
            sink=self.name,
            table=table_ref,
            committed=result.committed_count,
            total=total,
        )
        return result


# ============================================================================
# 事件目标
# ============================================================================


class SendStatus(str, Enum):
    """发送结果"""
    SENT = "sent"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class SendResult(BaseModel):
    """
    单条消息发送结果

    属性:
        status: 发送状态
        retry_after: 被限速时建议等待的秒数
        error: 失败原因
        retryable: 失败是否可重试
    """
    model_config = ConfigDict(frozen=True)

    status: SendStatus
    retry_after: float = 0.0
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def sent(cls) -> "SendResult":
        return cls(status=SendStatus.SENT)

    @classmethod
    def rate_limited(cls, retry_after: float) -> "SendResult":
        return cls(status=SendStatus.RATE_LIMITED, retry_after=max(retry_after, 0.0), retryable=True)

    @classmethod
    def failed(cls, error: str, retryable: bool = False) -> "SendResult":
        return cls(status=SendStatus.FAILED, error=error, retryable=retryable)


class BaseEventSink(ABC):
    """
    事件目标（通知频道）

    send() 先占用限速器配额（达到上限时排队等待），再调用 _deliver()。
    限速器由同一目标的所有并发发送方共享。
    """

    def __init__(self, name: str, limiter: Optional[SlidingWindowRateLimiter] = None):
        self.name = name
        self.limiter = limiter

    async def connect(self) -> None:
        """建立连接"""

    async def disconnect(self) -> None:
        """断开连接"""

    @abstractmethod
    async def _deliver(self, message: EventMessage) -> SendResult:
        """实际发送"""
        raise NotImplementedError

    async def send(self, message: EventMessage) -> SendResult:
        """
        发送一条消息

        返回:
            SendResult: 已发送 / 被限速 / 失败，从不静默丢弃
        """
        if self.limiter is not None:
            await self.limiter.acquire()

        result = await self._deliver(message)

        if result.status == SendStatus.RATE_LIMITED and self.limiter is not None:
            self.limiter.penalize(result.retry_after)
        if result.status != SendStatus.SENT:
            logger.debug(
                "event_send_not_delivered",
                sink=self.name,
                record_id=message.record_id,
                status=result.status.value,
                error=result.error,
            )
        return result
