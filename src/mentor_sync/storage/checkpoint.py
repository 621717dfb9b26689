"""
断点持久化存储 - 使用 SQLite 本地存储水位线、运行记录和租约
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from mentor_sync.models.checkpoint import (
    SourceCheckpoint,
    SourceRunSummary,
    SourceStatus,
    SyncRun,
)
from mentor_sync.models.record import EPOCH_ZERO, ensure_utc, format_timestamp, parse_timestamp
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)


class CheckpointError(Exception):
    """断点存储不可用"""
    transient = True


class WatermarkConflictError(CheckpointError):
    """比较并设置失败：存储中的水位线已被其他周期修改，或新水位线会倒退"""
    transient = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStore:
    """
    断点存储管理器

    每个源一条断点记录。水位线只通过 read_watermark / commit_watermark
    读写，commit 是带期望值的原子比较并设置。
    """

    def __init__(self, db_path: Union[str, Path] = "checkpoints.db"):
        """
        初始化断点存储

        参数:
            db_path: 存储数据库路径，默认 checkpoints.db
        """
        self.db_path = Path(db_path)
        self._ensure_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """获取数据库连接（自动提交模式，事务显式开启）"""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE 事务，立即取得写锁"""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise CheckpointError(f"打开断点存储失败: {e}") from e

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise CheckpointError(f"打开断点存储失败: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise CheckpointError(f"读取断点存储失败: {e}") from e
        finally:
            conn.close()

    def _ensure_tables(self) -> None:
        """确保表结构存在"""
        try:
            with self._transaction() as conn:
                # 源断点（水位线）
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_checkpoints (
                        source_key TEXT PRIMARY KEY,
                        watermark TEXT NOT NULL,
                        last_sync_time TEXT,
                        last_sync_status TEXT,
                        records_synced INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT,
                        updated_at TEXT
                    )
                """)

                # 同步运行记录
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_runs (
                        run_id TEXT PRIMARY KEY,
                        started_at TEXT NOT NULL,
                        finished_at TEXT,
                        outcome TEXT NOT NULL,
                        summary TEXT NOT NULL
                    )
                """)

                # 记录级错误（被跳过的异常记录）
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_errors (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        source_key TEXT NOT NULL,
                        record_id TEXT,
                        error_type TEXT NOT NULL,
                        error_message TEXT NOT NULL,
                        retry_count INTEGER DEFAULT 0,
                        resolved BOOLEAN DEFAULT FALSE,
                        created_at TEXT NOT NULL,
                        resolved_at TEXT
                    )
                """)

                # 同步周期互斥租约
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_leases (
                        lease_key TEXT PRIMARY KEY,
                        holder TEXT NOT NULL,
                        acquired_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL
                    )
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_runs_started
                        ON sync_runs(started_at)
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_errors_unresolved
                        ON sync_errors(resolved, created_at) WHERE resolved = FALSE
                """)
        except sqlite3.Error as e:
            raise CheckpointError(f"初始化断点存储失败: {e}") from e

    # ========================================================================
    # 水位线
    # ========================================================================

    def read_watermark(self, source_key: str) -> datetime:
        """
        读取源的水位线

        参数:
            source_key: 源标识

        返回:
            datetime: 水位线，不存在时返回 EPOCH_ZERO

        异常:
            CheckpointError: 存储不可用（缺失记录不算错误）
        """
        with self._reading() as conn:
            row = conn.execute(
                "SELECT watermark FROM sync_checkpoints WHERE source_key = ?",
                (source_key,),
            ).fetchone()

        if row is None:
            return EPOCH_ZERO
        return parse_timestamp(row["watermark"])

    def commit_watermark(
        self,
        source_key: str,
        new_watermark: datetime,
        summary: SourceRunSummary,
        expected: Optional[datetime] = None,
    ) -> None:
        """
        原子提交新水位线和本次运行摘要

        只能在本周期所有目标写入都已确认后调用。

        参数:
            source_key: 源标识
            new_watermark: 新水位线
            summary: 本次运行摘要
            expected: 周期开始时读到的水位线；给出时做比较并设置

        异常:
            WatermarkConflictError: 存储中的水位线与 expected 不一致，或新水位线倒退
            CheckpointError: 存储不可用，原水位线保持不变
        """
        new_watermark = ensure_utc(new_watermark)
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT watermark FROM sync_checkpoints WHERE source_key = ?",
                    (source_key,),
                ).fetchone()
                current = parse_timestamp(row["watermark"]) if row else EPOCH_ZERO

                if expected is not None and current != ensure_utc(expected):
                    raise WatermarkConflictError(
                        f"源 {source_key} 的水位线已变化: 期望 {ensure_utc(expected).isoformat()}, "
                        f"实际 {current.isoformat()}"
                    )
                if new_watermark < current:
                    raise WatermarkConflictError(
                        f"源 {source_key} 的水位线不能倒退: {current.isoformat()} -> "
                        f"{new_watermark.isoformat()}"
                    )

                now = format_timestamp(_now())
                conn.execute("""
                    INSERT INTO sync_checkpoints
                        (source_key, watermark, last_sync_time, last_sync_status,
                         records_synced, last_error, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_key) DO UPDATE SET
                        watermark = excluded.watermark,
                        last_sync_time = excluded.last_sync_time,
                        last_sync_status = excluded.last_sync_status,
                        records_synced = sync_checkpoints.records_synced + excluded.records_synced,
                        last_error = excluded.last_error,
                        updated_at = excluded.updated_at
                """, (
                    source_key,
                    format_timestamp(new_watermark),
                    now,
                    summary.status.value,
                    summary.records_synced,
                    summary.error,
                    now,
                ))
        except sqlite3.Error as e:
            raise CheckpointError(f"提交水位线失败: {e}") from e

        logger.debug(
            "watermark_committed",
            source=source_key,
            watermark=new_watermark,
            status=summary.status.value,
        )

    def record_failure(
        self,
        source_key: str,
        status: SourceStatus,
        error: Optional[str],
    ) -> None:
        """记录失败状态，不修改水位线"""
        now = format_timestamp(_now())
        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO sync_checkpoints
                        (source_key, watermark, last_sync_status, last_error, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(source_key) DO UPDATE SET
                        last_sync_status = excluded.last_sync_status,
                        last_error = excluded.last_error,
                        updated_at = excluded.updated_at
                """, (source_key, format_timestamp(EPOCH_ZERO), status.value, error, now))
        except sqlite3.Error as e:
            raise CheckpointError(f"记录失败状态失败: {e}") from e

    def load_checkpoint(self, source_key: str) -> SourceCheckpoint:
        """加载源断点，不存在时返回默认断点"""
        with self._reading() as conn:
            row = conn.execute("""
                SELECT source_key, watermark, last_sync_time, last_sync_status,
                       records_synced, last_error
                FROM sync_checkpoints
                WHERE source_key = ?
            """, (source_key,)).fetchone()

        if row is None:
            return SourceCheckpoint(source_key=source_key)
        return self._row_to_checkpoint(row)

    def list_checkpoints(self) -> Dict[str, SourceCheckpoint]:
        """列出所有源断点"""
        with self._reading() as conn:
            rows = conn.execute("""
                SELECT source_key, watermark, last_sync_time, last_sync_status,
                       records_synced, last_error
                FROM sync_checkpoints
                ORDER BY source_key
            """).fetchall()

        return {row["source_key"]: self._row_to_checkpoint(row) for row in rows}

    def reset_watermark(self, source_key: str) -> None:
        """删除源断点（下次从 EPOCH_ZERO 全量重新同步）"""
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM sync_checkpoints WHERE source_key = ?", (source_key,))
        except sqlite3.Error as e:
            raise CheckpointError(f"重置水位线失败: {e}") from e
        logger.info("watermark_reset", source=source_key)

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> SourceCheckpoint:
        return SourceCheckpoint(
            source_key=row["source_key"],
            watermark=parse_timestamp(row["watermark"]),
            last_sync_time=parse_timestamp(row["last_sync_time"]) if row["last_sync_time"] else None,
            last_sync_status=SourceStatus(row["last_sync_status"]) if row["last_sync_status"] else None,
            records_synced=row["records_synced"] or 0,
            last_error=row["last_error"],
        )

    # ========================================================================
    # 运行记录
    # ========================================================================

    def save_run(self, run: SyncRun) -> None:
        """保存定型后的运行记录"""
        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO sync_runs
                        (run_id, started_at, finished_at, outcome, summary)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    run.run_id,
                    format_timestamp(run.started_at),
                    format_timestamp(run.finished_at) if run.finished_at else None,
                    run.outcome.value,
                    run.model_dump_json(),
                ))
        except sqlite3.Error as e:
            raise CheckpointError(f"保存运行记录失败: {e}") from e

    def list_runs(self, limit: int = 20) -> List[SyncRun]:
        """最近的运行记录（新的在前）"""
        with self._reading() as conn:
            rows = conn.execute("""
                SELECT summary FROM sync_runs
                ORDER BY started_at DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [SyncRun.model_validate_json(row["summary"]) for row in rows]

    # ========================================================================
    # 错误日志管理
    # ========================================================================

    def log_error(
        self,
        source_key: str,
        record_id: Optional[str],
        error_type: str,
        error_message: str,
    ) -> int:
        """
        记录同步错误

        返回:
            错误记录 ID
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    INSERT INTO sync_errors
                        (source_key, record_id, error_type, error_message, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (source_key, record_id, error_type, error_message, format_timestamp(_now())))
                return cursor.lastrowid or 0
        except sqlite3.Error as e:
            raise CheckpointError(f"记录错误失败: {e}") from e

    def list_unresolved_errors(self, source_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """列出未解决的错误"""
        with self._reading() as conn:
            if source_key:
                rows = conn.execute("""
                    SELECT id, source_key, record_id, error_type, error_message,
                           retry_count, created_at
                    FROM sync_errors
                    WHERE source_key = ? AND resolved = FALSE
                    ORDER BY created_at
                """, (source_key,)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT id, source_key, record_id, error_type, error_message,
                           retry_count, created_at
                    FROM sync_errors
                    WHERE resolved = FALSE
                    ORDER BY created_at
                """).fetchall()

        return [dict(row) for row in rows]

    def resolve_error(self, error_id: int) -> None:
        """标记错误为已解决"""
        try:
            with self._transaction() as conn:
                conn.execute("""
                    UPDATE sync_errors
                    SET resolved = TRUE, resolved_at = ?
                    WHERE id = ?
                """, (format_timestamp(_now()), error_id))
        except sqlite3.Error as e:
            raise CheckpointError(f"更新错误状态失败: {e}") from e

    # ========================================================================
    # 互斥租约
    # ========================================================================

    def acquire_lease(self, lease_key: str, holder: str, ttl_seconds: float) -> bool:
        """
        获取互斥租约

        参数:
            lease_key: 租约键（同一组源共用）
            holder: 持有者标识
            ttl_seconds: 有效期，过期租约可被接管

        返回:
            是否取得租约
        """
        now = _now()
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT holder, expires_at FROM sync_leases WHERE lease_key = ?",
                    (lease_key,),
                ).fetchone()

                if row is not None and row["holder"] != holder:
                    if parse_timestamp(row["expires_at"]) > now:
                        return False
                    logger.warning("lease_expired_takeover", lease=lease_key, previous_holder=row["holder"])

                conn.execute("""
                    INSERT INTO sync_leases (lease_key, holder, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(lease_key) DO UPDATE SET
                        holder = excluded.holder,
                        acquired_at = excluded.acquired_at,
                        expires_at = excluded.expires_at
                """, (
                    lease_key,
                    holder,
                    format_timestamp(now),
                    format_timestamp(now + timedelta(seconds=ttl_seconds)),
                ))
        except sqlite3.Error as e:
            raise CheckpointError(f"获取租约失败: {e}") from e
        return True

    def release_lease(self, lease_key: str, holder: str) -> None:
        """释放自己持有的租约"""
        try:
            with self._transaction() as conn:
                conn.execute(
                    "DELETE FROM sync_leases WHERE lease_key = ? AND holder = ?",
                    (lease_key, holder),
                )
        except sqlite3.Error as e:
            raise CheckpointError(f"释放租约失败: {e}") from e
