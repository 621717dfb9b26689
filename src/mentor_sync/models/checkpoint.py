"""
断点与同步运行模型 - 水位线持久化结构和单次同步周期的结果
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from mentor_sync.models.record import EPOCH_ZERO


class SourceStatus(str, Enum):
    """单个源最近一次同步的状态"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunOutcome(str, Enum):
    """同步周期的整体结果"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"  # 互斥租约被其他周期持有


class CycleState(str, Enum):
    """同步周期状态机"""
    IDLE = "idle"
    LOADING_WATERMARK = "loading_watermark"
    QUERYING = "querying"
    PROJECTING = "projecting"
    DISPATCHING = "dispatching"
    COMMITTING = "committing"
    FAILED = "failed"


class SourceCheckpoint(BaseModel):
    """
    源断点（持久化布局）

    属性:
        source_key: 源标识
        watermark: 水位线，changed_at <= watermark 的记录均已写入所有目标
        last_sync_time: 最近一次同步完成时间
        last_sync_status: 最近一次同步状态
        records_synced: 累计同步记录数
        last_error: 最近一次错误
    """
    source_key: str = Field(..., description="源标识")
    watermark: datetime = Field(default=EPOCH_ZERO, description="水位线")
    last_sync_time: Optional[datetime] = Field(default=None, description="最近同步时间")
    last_sync_status: Optional[SourceStatus] = Field(default=None, description="最近同步状态")
    records_synced: int = Field(default=0, ge=0, description="累计同步记录数")
    last_error: Optional[str] = Field(default=None, description="最近错误信息")


class SourceRunSummary(BaseModel):
    """单个源在一次同步周期中的结果"""
    model_config = ConfigDict(frozen=True)

    source_key: str
    status: SourceStatus
    records_queried: int = 0
    records_synced: int = 0
    records_skipped: int = 0
    previous_watermark: datetime = EPOCH_ZERO
    new_watermark: datetime = EPOCH_ZERO
    committed: bool = False
    error: Optional[str] = None

    @property
    def advanced(self) -> bool:
        """水位线是否前进"""
        return self.committed and self.new_watermark > self.previous_watermark


class SyncRun(BaseModel):
    """
    同步运行记录

    周期开始时创建、结束时定型，定型后不可修改。

    属性:
        run_id: 运行标识
        started_at: 开始时间
        finished_at: 结束时间
        outcome: 整体结果
        sources: 各源结果
        error: 周期级错误（例如读取断点失败）
    """
    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    outcome: RunOutcome
    sources: Dict[str, SourceRunSummary] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_sources(
        cls,
        run_id: str,
        started_at: datetime,
        sources: Dict[str, SourceRunSummary],
        error: Optional[str] = None,
    ) -> "SyncRun":
        """根据各源结果定型运行记录"""
        statuses = {s.status for s in sources.values()}
        if error is not None:
            outcome = RunOutcome.FAILED
        elif not statuses or statuses == {SourceStatus.SUCCESS}:
            outcome = RunOutcome.SUCCESS
        elif statuses == {SourceStatus.FAILED}:
            outcome = RunOutcome.FAILED
        else:
            outcome = RunOutcome.PARTIAL

        return cls(
            run_id=run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            outcome=outcome,
            sources=dict(sources),
            error=error,
        )

    @classmethod
    def skipped(cls, run_id: str, started_at: datetime, reason: str) -> "SyncRun":
        """未取得互斥租约的周期"""
        return cls(
            run_id=run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            outcome=RunOutcome.SKIPPED,
            error=reason,
        )

    @property
    def total_synced(self) -> int:
        """本次同步记录总数"""
        return sum(s.records_synced for s in self.sources.values())

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，用于序列化"""
        return self.model_dump(mode="json")
