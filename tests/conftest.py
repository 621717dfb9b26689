"""
测试配置和共享工具 (unittest 兼容)
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from mentor_sync.core.projection import EventMessage, ProjectedRow
from mentor_sync.models.record import ChangeRecord
from mentor_sync.models.sync_config import RetryPolicy, SourceConfig
from mentor_sync.sinks.base import BaseEventSink, BaseTabularSink, SendResult, SinkError
from mentor_sync.sources.base import BaseRecordSource, Cursor, SourceQueryError

# 测试中所有时间戳都基于这个时间点
BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    """BASE_TIME 之后若干秒"""
    return BASE_TIME + timedelta(seconds=seconds)


# ============================================================================
# 数据工厂函数
# ============================================================================

def make_goal(record_id: str, seconds: float, source: str = "goals", **attributes: Any) -> ChangeRecord:
    """创建一条目标记录"""
    data: Dict[str, Any] = {
        "student_id": "s-1",
        "student_name": "张三",
        "title": f"目标 {record_id}",
        "status": "pending",
    }
    data.update(attributes)
    return ChangeRecord(source=source, id=record_id, changed_at=ts(seconds), attributes=data)


def make_login(record_id: str, seconds: float, source: str = "logins", **attributes: Any) -> ChangeRecord:
    """创建一条登录记录"""
    data: Dict[str, Any] = {"user_id": f"u-{record_id}", "email": "Student@Example.com"}
    data.update(attributes)
    return ChangeRecord(source=source, id=record_id, changed_at=ts(seconds), attributes=data)


def goal_source(name: str = "goals", sinks: Sequence[str] = ("sheet",)) -> SourceConfig:
    return SourceConfig(name=name, kind="goal", sinks=list(sinks), worksheet="Goals")


def login_source(name: str = "logins", sinks: Sequence[str] = ("channel",)) -> SourceConfig:
    return SourceConfig(name=name, kind="login", sinks=list(sinks), worksheet="Logins")


def fast_retry_policy(max_retries: int = 3) -> RetryPolicy:
    """不带抖动的重试策略，延迟可预期"""
    return RetryPolicy(max_retries=max_retries, backoff_factor=1.0, max_delay=60, jitter=False)


def create_temp_dir() -> Path:
    """创建临时目录"""
    return Path(tempfile.mkdtemp())


# ============================================================================
# 假记录源与假目标
# ============================================================================

class InMemoryRecordSource(BaseRecordSource):
    """
    内存记录源

    collections: 集合名 -> 记录列表
    failures: 依次抛出的异常（None 表示该次正常返回）
    """

    name = "memory"

    def __init__(self, collections: Optional[Dict[str, List[ChangeRecord]]] = None):
        self.collections: Dict[str, List[ChangeRecord]] = collections or {}
        self.failures: List[Optional[Exception]] = []
        self.calls = 0
        self.connected = False

    def add(self, collection: str, *records: ChangeRecord) -> None:
        existing = {r.id: r for r in self.collections.get(collection, [])}
        for record in records:
            existing[record.id] = record
        self.collections[collection] = list(existing.values())

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def fetch_page(
        self,
        collection: str,
        source_key: str,
        watermark: datetime,
        after: Optional[Cursor],
        limit: int,
    ) -> List[ChangeRecord]:
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

        records = sorted(self.collections.get(collection, []), key=lambda r: r.sort_key)
        records = [r for r in records if r.changed_at > watermark]
        if after is not None:
            records = [r for r in records if r.sort_key > after]
        return [r.model_copy(update={"source": source_key}) for r in records[:limit]]


class FakeTabularSink(BaseTabularSink):
    """
    内存表格目标

    failures: 依次对每次 _write_chunk 生效的异常（None 表示成功）
    """

    def __init__(self, name: str = "sheet", chunk_size: int = 100):
        super().__init__(name, chunk_size=chunk_size)
        self.tables: Dict[str, List[ProjectedRow]] = {}
        self.headers: Dict[str, List[str]] = {}
        self.failures: List[Optional[SinkError]] = []
        self.write_calls = 0

    def fail_next(self, *errors: Optional[SinkError]) -> None:
        self.failures.extend(errors)

    async def _write_chunk(
        self,
        table_ref: str,
        rows: Sequence[ProjectedRow],
        columns: Sequence[str],
    ) -> None:
        self.write_calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.headers.setdefault(table_ref, list(columns))
        self.tables.setdefault(table_ref, []).extend(rows)

    def ids(self, table_ref: str) -> List[str]:
        """表中各行的记录 id（第一列）"""
        return [str(row[0]) for row in self.tables.get(table_ref, [])]


class FakeEventSink(BaseEventSink):
    """
    内存事件目标

    responses: 依次返回的 SendResult，用完后一律成功
    """

    def __init__(self, name: str = "channel"):
        super().__init__(name, limiter=None)
        self.responses: List[SendResult] = []
        self.delivered: List[EventMessage] = []
        self.attempts = 0

    async def _deliver(self, message: EventMessage) -> SendResult:
        self.attempts += 1
        result = self.responses.pop(0) if self.responses else SendResult.sent()
        if result.status.value == "sent":
            self.delivered.append(message)
        return result

    def ids(self) -> List[str]:
        return [m.record_id for m in self.delivered]


class RecordingSleep:
    """记录等待时长，不真正等待"""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def transient_query_error(message: str = "connection reset") -> SourceQueryError:
    return SourceQueryError(message, transient=True)
