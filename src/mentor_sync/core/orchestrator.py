"""
同步协调器 - 驱动一个完整的增量同步周期
"""

import asyncio
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from mentor_sync.core.projection import (
    EventMessage,
    ProjectedRow,
    ProjectionError,
    SinkSchema,
    build_message,
    get_schema,
    project,
)
from mentor_sync.core.query import ChangeQueryEngine
from mentor_sync.models.checkpoint import (
    CycleState,
    RunOutcome,
    SourceRunSummary,
    SourceStatus,
    SyncRun,
)
from mentor_sync.models.record import ChangeRecord
from mentor_sync.models.sync_config import (
    RetryPolicy,
    SourceConfig,
    SyncConfig,
    WatermarkPolicy,
)
from mentor_sync.sinks.base import BaseEventSink, BaseTabularSink, SendStatus, SinkError
from mentor_sync.sources.base import BaseRecordSource
from mentor_sync.storage.checkpoint import CheckpointError, CheckpointStore, WatermarkConflictError
from mentor_sync.utils.logging import bind_context, clear_context, get_logger
from mentor_sync.utils.retry import backoff_delay, retry_async

logger = get_logger(__name__)

Sink = Union[BaseTabularSink, BaseEventSink]

# 截止时间之后提交阶段仍需持有租约的余量(秒)
LEASE_COMMIT_MARGIN = 60.0

# 各源流水线阶段的先后顺序
_PIPELINE_STAGES = (
    CycleState.LOADING_WATERMARK,
    CycleState.QUERYING,
    CycleState.PROJECTING,
    CycleState.DISPATCHING,
)


def compute_watermark(
    records: Sequence[ChangeRecord],
    delivered: int,
    previous: datetime,
) -> datetime:
    """
    计算新水位线

    records 按 (changed_at, id) 升序，前 delivered 条已写入所有目标。
    返回最大的 t，使 changed_at <= t 的记录全部已写入；
    与第一条未写入记录同时间戳的记录不计入，且结果不低于 previous。

    参数:
        records: 本周期查询到的有序记录
        delivered: 已写入所有目标的前缀长度
        previous: 周期开始时的水位线
    """
    if delivered <= 0 or not records:
        return previous

    delivered = min(delivered, len(records))
    candidate = records[delivered - 1].changed_at

    if delivered < len(records):
        boundary = records[delivered].changed_at
        if candidate >= boundary:
            earlier = [r.changed_at for r in records[:delivered] if r.changed_at < boundary]
            if not earlier:
                return previous
            candidate = max(earlier)

    return max(previous, candidate)


@dataclass
class _SourceProgress:
    """单个源在本周期内的进度（截止时间到达时据此提交已确认的前缀）"""
    config: SourceConfig
    previous: datetime
    stage: CycleState = CycleState.LOADING_WATERMARK
    query_started_at: Optional[datetime] = None
    queried: bool = False
    done: bool = False
    records: List[ChangeRecord] = field(default_factory=list)
    skipped: Set[int] = field(default_factory=set)
    # 目标名 -> 该目标收到的 (记录下标, 负载) 列表
    entries: Dict[str, List[Tuple[int, Any]]] = field(default_factory=dict)
    # 目标名 -> 已确认的条目数（连续前缀）
    acked: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.config.name

    def delivered_prefix(self) -> int:
        """所有目标都已确认的记录前缀长度"""
        if not self.entries:
            # 尚未完成投影
            return 0
        prefix = len(self.records)
        for sink_name, entries in self.entries.items():
            acked = self.acked.get(sink_name, 0)
            if acked < len(entries):
                prefix = min(prefix, entries[acked][0])
        return prefix


class SyncOrchestrator:
    """
    同步协调器

    一个周期：读取水位线 → 按源查询 → 投影 → 写入目标 → 提交水位线。
    - 同一进程内并发触发会合并到正在运行的周期
    - 跨进程由断点存储的租约互斥，拿不到租约的周期直接跳过
    - 各源互相独立：一个源失败不影响其他源推进
    - 任何失败都体现在 SyncRun 中，不向调用方抛出
    """

    def __init__(
        self,
        sources: Sequence[SourceConfig],
        query_engine: ChangeQueryEngine,
        sinks: Dict[str, Sink],
        checkpoint_store: CheckpointStore,
        retry_policy: Optional[RetryPolicy] = None,
        watermark_policy: WatermarkPolicy = WatermarkPolicy.MAX_OBSERVED,
        cycle_deadline: float = 300.0,
        lease_ttl: float = 900.0,
        holder: Optional[str] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """
        初始化同步协调器

        参数:
            sources: 同步源配置
            query_engine: 变更查询引擎
            sinks: 目标名 -> 写入器
            checkpoint_store: 断点存储
            retry_policy: 重试策略
            watermark_policy: 无变更时的水位线策略
            cycle_deadline: 周期截止时间(秒)
            lease_ttl: 互斥租约有效期(秒)，不能短于 cycle_deadline
            holder: 租约持有者标识
            sleep: 退避等待函数（测试中可替换）

        异常:
            ValueError: 源引用了未注册的目标，或租约短于周期截止时间
        """
        if lease_ttl < cycle_deadline:
            raise ValueError(f"lease_ttl ({lease_ttl}s) 不能小于 cycle_deadline ({cycle_deadline}s)")
        for source in sources:
            missing = [name for name in source.sinks if name not in sinks]
            if missing:
                raise ValueError(f"源 {source.name} 引用了未注册的目标: {missing}")

        self.sources = list(sources)
        self.query_engine = query_engine
        self.sinks = dict(sinks)
        self.checkpoint_store = checkpoint_store
        self.retry_policy = retry_policy or RetryPolicy()
        self.watermark_policy = watermark_policy
        self.cycle_deadline = cycle_deadline
        self.lease_ttl = lease_ttl
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.lease_key = "sync-cycle:" + ",".join(sorted(s.name for s in self.sources))
        self._phase = CycleState.IDLE
        self._progress: Dict[str, _SourceProgress] = {}
        self._sleep = sleep or asyncio.sleep
        self._inflight: Optional["asyncio.Future[SyncRun]"] = None

    @property
    def state(self) -> CycleState:
        """
        周期状态

        各源并发执行期间取仍在运行的源中最靠前的阶段，
        例如一个源在写入、另一个源还在查询时为 QUERYING。
        """
        if self._phase != CycleState.QUERYING:
            return self._phase
        running = [p.stage for p in self._progress.values() if not p.done]
        if not running:
            return CycleState.COMMITTING
        return min(running, key=_PIPELINE_STAGES.index)

    @property
    def source_stages(self) -> Dict[str, CycleState]:
        """当前周期各源所处的阶段"""
        return {name: p.stage for name, p in self._progress.items()}

    # ========================================================================
    # 生命周期
    # ========================================================================

    async def start(self) -> None:
        """连接记录源和所有目标"""
        await self.query_engine.source.connect()
        for sink in self.sinks.values():
            try:
                await sink.connect()
            except SinkError as e:
                # 连接失败的目标在写入时报告失败，不影响其他目标
                logger.warning("sink_connect_failed", sink=sink.name, error=str(e))

    async def stop(self) -> None:
        """断开所有连接"""
        for sink in self.sinks.values():
            try:
                await sink.disconnect()
            except Exception as e:
                logger.warning("sink_disconnect_failed", sink=sink.name, error=str(e))
        await self.query_engine.source.close()

    async def __aenter__(self) -> "SyncOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def is_running(self) -> bool:
        """是否有周期正在运行"""
        return self._inflight is not None and not self._inflight.done()

    # ========================================================================
    # 触发入口
    # ========================================================================

    async def run_sync_cycle(
        self,
        sources: Optional[Sequence[str]] = None,
        deadline: Optional[float] = None,
    ) -> SyncRun:
        """
        执行一个同步周期

        参数:
            sources: 只同步这些源（默认全部）
            deadline: 覆盖周期截止时间(秒)

        返回:
            SyncRun: 定型后的运行记录

        异常:
            ValueError: sources 中有未配置的源
        """
        selected = self._select_sources(sources)

        if self.is_running():
            logger.info(
                "sync_cycle_coalesced",
                requested=[s.name for s in selected],
            )
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.ensure_future(
            self._run_cycle(selected, deadline or self.cycle_deadline)
        )
        return await asyncio.shield(self._inflight)

    def _select_sources(self, names: Optional[Sequence[str]]) -> List[SourceConfig]:
        if not names:
            return list(self.sources)
        known = {s.name: s for s in self.sources}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise ValueError(f"未配置的源: {unknown}")
        return [known[n] for n in dict.fromkeys(names)]

    # ========================================================================
    # 周期
    # ========================================================================

    async def _run_cycle(self, selected: List[SourceConfig], deadline: float) -> SyncRun:
        run_id = uuid.uuid4().hex
        started_at = datetime.now(timezone.utc)
        bind_context(run_id=run_id)
        logger.info(
            "sync_cycle_start",
            sources=[s.name for s in selected],
            deadline_seconds=deadline,
        )

        # 租约覆盖整个周期：截止时间加上提交阶段
        lease_ttl = max(self.lease_ttl, deadline + LEASE_COMMIT_MARGIN)
        try:
            acquired = self.checkpoint_store.acquire_lease(self.lease_key, self.holder, lease_ttl)
        except CheckpointError as e:
            logger.error("lease_acquire_failed", error=str(e))
            self._phase = CycleState.FAILED
            return self._finalize(SyncRun.from_sources(run_id, started_at, {}, error=f"获取租约失败: {e}"))

        if not acquired:
            logger.warning("sync_cycle_skipped", lease=self.lease_key)
            return self._finalize(SyncRun.skipped(run_id, started_at, "另一个同步周期正在运行"))

        try:
            run = await self._run_locked(run_id, started_at, selected, deadline)
        except Exception as e:
            logger.error("sync_cycle_crashed", error=str(e), exc_info=True)
            self._phase = CycleState.FAILED
            run = SyncRun.from_sources(run_id, started_at, {}, error=f"同步周期异常: {e}")
        finally:
            try:
                self.checkpoint_store.release_lease(self.lease_key, self.holder)
            except CheckpointError as e:
                logger.warning("lease_release_failed", error=str(e))

        return self._finalize(run)

    def _finalize(self, run: SyncRun) -> SyncRun:
        """保存运行记录并回到空闲状态"""
        try:
            self.checkpoint_store.save_run(run)
        except CheckpointError as e:
            logger.warning("run_save_failed", error=str(e))

        log = logger.info if run.outcome in (RunOutcome.SUCCESS, RunOutcome.SKIPPED) else logger.error
        log(
            "sync_cycle_finished",
            outcome=run.outcome.value,
            synced=run.total_synced,
            error=run.error,
            sources={
                name: {"status": s.status.value, "synced": s.records_synced, "error": s.error}
                for name, s in run.sources.items()
            },
        )
        self._phase = CycleState.FAILED if run.outcome == RunOutcome.FAILED else CycleState.IDLE
        clear_context()
        return run

    async def _run_locked(
        self,
        run_id: str,
        started_at: datetime,
        selected: List[SourceConfig],
        deadline: float,
    ) -> SyncRun:
        started = time.monotonic()

        # 读取水位线，失败则整个周期失败且没有副作用
        self._phase = CycleState.LOADING_WATERMARK
        progress: Dict[str, _SourceProgress] = {}
        self._progress = progress
        try:
            for source in selected:
                previous = self.checkpoint_store.read_watermark(source.name)
                progress[source.name] = _SourceProgress(config=source, previous=previous)
        except CheckpointError as e:
            logger.error("watermark_load_failed", error=str(e))
            self._phase = CycleState.FAILED
            return SyncRun.from_sources(run_id, started_at, {}, error=f"读取水位线失败: {e}")

        # 各源并发，截止时间到达后取消未完成的源
        self._phase = CycleState.QUERYING
        tasks = {
            asyncio.create_task(self._run_source(p), name=f"sync:{name}"): p
            for name, p in progress.items()
        }
        remaining = max(0.0, deadline - (time.monotonic() - started))
        done, pending = await asyncio.wait(tasks.keys(), timeout=remaining)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task, p in tasks.items():
            if task in pending:
                p.errors.append(f"周期截止时间已到 (阶段: {p.stage.value})")
                logger.warning("source_deadline_exceeded", source=p.key, stage=p.stage.value)
            elif task.exception() is not None:
                p.errors.append(f"同步异常: {task.exception()}")
                logger.error("source_pipeline_crashed", source=p.key, error=str(task.exception()))

        # 提交
        self._phase = CycleState.COMMITTING
        summaries = {name: self._commit_source(p) for name, p in progress.items()}
        return SyncRun.from_sources(run_id, started_at, summaries)

    # ========================================================================
    # 单个源
    # ========================================================================

    async def _run_source(self, progress: _SourceProgress) -> None:
        """查询 → 投影 → 写入；进度实时记录在 progress 中"""
        try:
            await self._run_pipeline(progress)
        finally:
            progress.done = True

    async def _run_pipeline(self, progress: _SourceProgress) -> None:
        source = progress.config

        progress.stage = CycleState.QUERYING
        progress.query_started_at = datetime.now(timezone.utc)
        try:
            progress.records = await retry_async(
                lambda: self.query_engine.query_changed_since(
                    source.name, source.collection or source.name, progress.previous
                ),
                self.retry_policy,
                name=f"query:{source.name}",
                sleep=self._sleep,
            )
        except Exception as e:
            progress.errors.append(f"查询失败: {e}")
            logger.error("source_query_failed", source=source.name, error=str(e))
            return
        progress.queried = True

        if not progress.records:
            logger.info("source_no_changes", source=source.name, watermark=progress.previous)
            return

        progress.stage = CycleState.PROJECTING
        try:
            self._project(progress)
        except KeyError as e:
            # 结构未定义是配置缺陷，整个源失败
            progress.errors.append(f"投影结构错误: {e}")
            logger.error("source_schema_missing", source=source.name, error=str(e))
            return

        progress.stage = CycleState.DISPATCHING
        results = await asyncio.gather(
            *(self._dispatch(progress, name) for name in source.sinks),
            return_exceptions=True,
        )
        for name, result in zip(source.sinks, results):
            if isinstance(result, Exception):
                progress.errors.append(f"{name}: {result}")
                logger.error("sink_dispatch_crashed", source=source.name, sink=name, error=str(result))

    def _project(self, progress: _SourceProgress) -> None:
        """
        为每个目标生成负载

        单条记录投影失败只跳过该记录（写入错误日志），不影响其他记录。
        """
        source = progress.config
        schema = get_schema(source.kind, source.schema_version)
        entries: Dict[str, List[Tuple[int, Any]]] = {name: [] for name in source.sinks}

        for index, record in enumerate(progress.records):
            try:
                payloads = {
                    name: self._payload_for(self.sinks[name], record, schema)
                    for name in source.sinks
                }
            except ProjectionError as e:
                progress.skipped.add(index)
                logger.warning(
                    "record_projection_failed",
                    source=source.name,
                    record_id=record.id,
                    error=str(e),
                )
                try:
                    self.checkpoint_store.log_error(source.name, record.id, "projection", str(e))
                except CheckpointError as log_err:
                    logger.warning("error_log_failed", source=source.name, error=str(log_err))
                continue

            for name, payload in payloads.items():
                entries[name].append((index, payload))

        progress.entries = entries
        progress.acked = {name: 0 for name in entries}

    @staticmethod
    def _payload_for(
        sink: Sink,
        record: ChangeRecord,
        schema: SinkSchema,
    ) -> Union[ProjectedRow, EventMessage]:
        if isinstance(sink, BaseTabularSink):
            return project(record, schema)
        return build_message(record, schema.kind)

    async def _dispatch(self, progress: _SourceProgress, sink_name: str) -> None:
        sink = self.sinks[sink_name]
        if isinstance(sink, BaseTabularSink):
            await self._dispatch_rows(progress, sink)
        else:
            await self._dispatch_events(progress, sink)

    async def _dispatch_rows(self, progress: _SourceProgress, sink: BaseTabularSink) -> None:
        """追加行；部分分块失败时从第一条未提交的行开始重试"""
        source = progress.config
        schema = get_schema(source.kind, source.schema_version)
        rows = [payload for _, payload in progress.entries[sink.name]]
        table_ref = source.worksheet or source.name
        offset = 0
        attempt = 0

        while offset < len(rows):
            def acknowledge(count: int, base: int = offset) -> None:
                progress.acked[sink.name] = base + count

            result = await sink.append_rows(
                table_ref, rows[offset:], schema.header(), on_committed=acknowledge
            )
            offset += result.committed_count
            progress.acked[sink.name] = offset

            if offset >= len(rows):
                break

            failure = result.first_failure
            error = failure.error if failure else "未知错误"
            retryable = failure.retryable if failure else False
            if not retryable or attempt >= self.retry_policy.max_retries:
                progress.errors.append(f"{sink.name}: {error}")
                logger.error(
                    "tabular_dispatch_failed",
                    source=source.name,
                    sink=sink.name,
                    committed=offset,
                    total=len(rows),
                    error=error,
                )
                return

            delay = backoff_delay(self.retry_policy, attempt)
            logger.warning(
                "tabular_dispatch_retry",
                source=source.name,
                sink=sink.name,
                committed=offset,
                total=len(rows),
                attempt=attempt + 1,
                delay_seconds=round(delay, 3),
            )
            await self._sleep(delay)
            attempt += 1

        logger.info("tabular_dispatch_done", source=source.name, sink=sink.name, rows=offset)

    async def _dispatch_events(self, progress: _SourceProgress, sink: BaseEventSink) -> None:
        """
        逐条发送；被限速时等待后重发（只受周期截止时间约束），
        可重试的失败按重试策略退避，不可恢复的失败停止本目标后续发送
        """
        source = progress.config
        entries = progress.entries[sink.name]

        for position, (_, message) in enumerate(entries):
            attempt = 0
            while True:
                result = await sink.send(message)

                if result.status == SendStatus.SENT:
                    progress.acked[sink.name] = position + 1
                    break

                if result.status == SendStatus.RATE_LIMITED:
                    logger.info(
                        "event_rate_limited",
                        source=source.name,
                        sink=sink.name,
                        record_id=message.record_id,
                        retry_after=result.retry_after,
                    )
                    await self._sleep(result.retry_after)
                    continue

                if result.retryable and attempt < self.retry_policy.max_retries:
                    delay = backoff_delay(self.retry_policy, attempt)
                    logger.warning(
                        "event_send_retry",
                        source=source.name,
                        sink=sink.name,
                        record_id=message.record_id,
                        attempt=attempt + 1,
                        delay_seconds=round(delay, 3),
                        error=result.error,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue

                progress.errors.append(f"{sink.name}: {result.error}")
                logger.error(
                    "event_dispatch_failed",
                    source=source.name,
                    sink=sink.name,
                    sent=position,
                    total=len(entries),
                    error=result.error,
                )
                return

        logger.info("event_dispatch_done", source=source.name, sink=sink.name, messages=len(entries))

    # ========================================================================
    # 提交
    # ========================================================================

    def _commit_source(self, progress: _SourceProgress) -> SourceRunSummary:
        """计算并提交单个源的水位线"""
        key = progress.key
        previous = progress.previous
        error = "; ".join(progress.errors) or None

        if not progress.queried:
            summary = SourceRunSummary(
                source_key=key,
                status=SourceStatus.FAILED,
                previous_watermark=previous,
                new_watermark=previous,
                error=error,
            )
            self._record_failure(summary)
            return summary

        records = progress.records
        total = len(records)

        if total == 0:
            new_watermark = previous
            if self.watermark_policy == WatermarkPolicy.NOW and progress.query_started_at:
                new_watermark = max(previous, progress.query_started_at)
            delivered = 0
        else:
            delivered = progress.delivered_prefix()
            new_watermark = compute_watermark(records, delivered, previous)

        synced = sum(
            1 for i, r in enumerate(records[:delivered])
            if i not in progress.skipped and r.changed_at <= new_watermark
        )
        complete = total == 0 or (delivered == total and not progress.errors)

        if complete:
            status = SourceStatus.SUCCESS
        elif new_watermark > previous:
            status = SourceStatus.PARTIAL
        else:
            status = SourceStatus.FAILED

        summary = SourceRunSummary(
            source_key=key,
            status=status,
            records_queried=total,
            records_synced=synced,
            records_skipped=len(progress.skipped),
            previous_watermark=previous,
            new_watermark=new_watermark,
            committed=True,
            error=error,
        )

        if total > 0 and new_watermark <= previous:
            # 没有任何记录完整写入所有目标
            summary = summary.model_copy(update={"committed": False, "new_watermark": previous})
            self._record_failure(summary)
            return summary

        try:
            self.checkpoint_store.commit_watermark(key, new_watermark, summary, expected=previous)
        except WatermarkConflictError as e:
            logger.error("watermark_conflict", source=key, error=str(e))
            summary = summary.model_copy(update={
                "status": SourceStatus.FAILED,
                "committed": False,
                "new_watermark": previous,
                "records_synced": 0,
                "error": str(e),
            })
            return summary
        except CheckpointError as e:
            logger.error("watermark_commit_failed", source=key, error=str(e))
            summary = summary.model_copy(update={
                "status": SourceStatus.FAILED,
                "committed": False,
                "new_watermark": previous,
                "records_synced": 0,
                "error": f"提交水位线失败: {e}",
            })
            return summary

        logger.info(
            "source_committed",
            source=key,
            status=status.value,
            previous_watermark=previous,
            watermark=new_watermark,
            synced=synced,
            skipped=len(progress.skipped),
        )
        return summary

    def _record_failure(self, summary: SourceRunSummary) -> None:
        logger.error(
            "source_not_advanced",
            source=summary.source_key,
            status=summary.status.value,
            watermark=summary.previous_watermark,
            error=summary.error,
        )
        try:
            self.checkpoint_store.record_failure(summary.source_key, summary.status, summary.error)
        except CheckpointError as e:
            logger.warning("failure_record_failed", source=summary.source_key, error=str(e))


def build_orchestrator(
    config: SyncConfig,
    record_source: Optional[BaseRecordSource] = None,
    sinks: Optional[Dict[str, Sink]] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
) -> SyncOrchestrator:
    """
    根据配置创建协调器

    参数:
        config: 同步配置
        record_source: 记录源（默认按 record_store 配置创建）
        sinks: 目标写入器（默认按 sinks 配置创建）
        checkpoint_store: 断点存储（默认使用 checkpoint_path）
    """
    if record_source is None:
        from mentor_sync.sources.sqlite_source import SQLiteRecordSource
        record_source = SQLiteRecordSource(config.record_store)

    if sinks is None:
        sinks = {}
        for sink_config in config.sinks:
            if sink_config.type == "sheets":
                from mentor_sync.sinks.sheets import GoogleSheetsSink
                sinks[sink_config.name] = GoogleSheetsSink(sink_config)
            elif sink_config.type == "discord":
                from mentor_sync.sinks.discord import DiscordWebhookSink
                sinks[sink_config.name] = DiscordWebhookSink(sink_config)
            else:
                raise ValueError(f"不支持的目标类型: {sink_config.type}")

    return SyncOrchestrator(
        sources=config.sources,
        query_engine=ChangeQueryEngine(record_source, page_size=config.record_store.page_size),
        sinks=sinks,
        checkpoint_store=checkpoint_store or CheckpointStore(config.checkpoint_path),
        retry_policy=config.retry_policy,
        watermark_policy=config.watermark_policy,
        cycle_deadline=config.cycle_deadline_seconds,
        lease_ttl=config.lease_ttl_seconds,
    )
