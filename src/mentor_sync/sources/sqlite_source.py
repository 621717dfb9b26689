"""
SQLite 记录源 - 看板集合的本地镜像
"""

import asyncio
import json
import re
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from mentor_sync.models.record import ChangeRecord, format_timestamp, parse_timestamp
from mentor_sync.models.sync_config import SQLiteStoreConfig
from mentor_sync.sources.base import BaseRecordSource, Cursor, SourceQueryError
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# (updated_at 原始文本, id)
RawCursor = Tuple[str, str]


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ValueError(f"非法标识符: {identifier}")
    return f'"{identifier}"'


class SQLiteRecordSource(BaseRecordSource):
    """
    SQLite 记录源

    每个集合一张表：
        id          TEXT PRIMARY KEY
        updated_at  TEXT  (format_timestamp 格式)
        data        TEXT  (JSON 属性)

    每次查询在工作线程中打开独立连接，不阻塞事件循环。
    """

    name = "sqlite"

    def __init__(self, config: Union[SQLiteStoreConfig, str, Path]):
        """
        初始化记录源

        参数:
            config: SQLite 记录源配置，或数据库路径
        """
        if not isinstance(config, SQLiteStoreConfig):
            config = SQLiteStoreConfig(db_path=str(config))
        self.config = config
        self.db_path = Path(config.db_path)
        self._id_col = _quote(config.id_column)
        self._ts_col = _quote(config.timestamp_column)
        self._data_col = _quote(config.data_column)
        self._connected = False

    async def connect(self) -> None:
        """检查数据库文件"""
        if not self.db_path.exists():
            raise SourceQueryError(f"记录源不存在: {self.db_path}", transient=False)
        self._connected = True
        logger.info("record_source_connected", db_path=str(self.db_path))

    async def close(self) -> None:
        """每次操作独立连接，无需释放"""
        self._connected = False

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    # ========================================================================
    # 查询
    # ========================================================================

    async def fetch_page(
        self,
        collection: str,
        source_key: str,
        watermark: datetime,
        after: Optional[Cursor],
        limit: int,
    ) -> List[ChangeRecord]:
        """
        读取一页变更记录

        时间戳无法解析或标识为空的行记录日志后跳过，不中断整个源。
        跳过的行不计入 limit：只有底层行读完时才返回不足一页，
        查询引擎据此判断是否还有下一页。
        """
        records: List[ChangeRecord] = []
        raw_after: Optional[RawCursor] = (
            (format_timestamp(after[0]), after[1]) if after is not None else None
        )

        while len(records) < limit:
            wanted = limit - len(records)
            rows = await self._query(collection, watermark, raw_after, wanted)

            for row in rows:
                # 游标按原始列值推进，跳过的行不会被重复读取
                raw_after = (row["changed_at"], row["id"])
                try:
                    records.append(self._row_to_record(source_key, row))
                except (ValueError, ValidationError) as e:
                    logger.warning(
                        "record_malformed",
                        source=source_key,
                        record_id=row["id"],
                        changed_at=row["changed_at"],
                        error=str(e),
                    )

            if len(rows) < wanted:
                break

        return records

    async def _query(
        self,
        collection: str,
        watermark: datetime,
        after: Optional[RawCursor],
        limit: int,
    ) -> List[sqlite3.Row]:
        try:
            return await asyncio.to_thread(
                self._fetch_rows, collection, watermark, after, limit
            )
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                logger.warning("collection_not_found", collection=collection)
                return []
            raise SourceQueryError(f"查询 {collection} 失败: {e}") from e
        except sqlite3.DatabaseError as e:
            raise SourceQueryError(f"查询 {collection} 失败: {e}", transient=False) from e

    def _fetch_rows(
        self,
        collection: str,
        watermark: datetime,
        after: Optional[RawCursor],
        limit: int,
    ) -> List[sqlite3.Row]:
        table = _quote(collection)
        sql = f"""
            SELECT {self._id_col} AS id, {self._ts_col} AS changed_at, {self._data_col} AS data
            FROM {table}
            WHERE {self._ts_col} > ?
        """
        params: List[Any] = [format_timestamp(watermark)]

        if after is not None:
            after_ts, after_id = after
            sql += f" AND ({self._ts_col} > ? OR ({self._ts_col} = ? AND {self._id_col} > ?))"
            params.extend([after_ts, after_ts, after_id])

        sql += f" ORDER BY {self._ts_col}, {self._id_col} LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _row_to_record(self, source_key: str, row: sqlite3.Row) -> ChangeRecord:
        """将数据库行转换为 ChangeRecord"""
        attributes: Dict[str, Any] = {}
        if row["data"]:
            try:
                decoded = json.loads(row["data"])
                if isinstance(decoded, dict):
                    attributes = decoded
                else:
                    logger.warning("record_data_not_object", source=source_key, record_id=row["id"])
            except json.JSONDecodeError:
                logger.warning("record_data_invalid_json", source=source_key, record_id=row["id"])

        return ChangeRecord(
            source=source_key,
            id=str(row["id"]),
            changed_at=parse_timestamp(row["changed_at"]),
            attributes=attributes,
        )

    # ========================================================================
    # 写入（镜像脚本 / 测试使用）
    # ========================================================================

    def ensure_collection(self, collection: str) -> None:
        """确保集合表存在"""
        table = _quote(collection)
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        {self._id_col} TEXT PRIMARY KEY,
                        {self._ts_col} TEXT NOT NULL,
                        {self._data_col} TEXT
                    )
                """)
                conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS "idx_{collection}_changed"
                        ON {table}({self._ts_col}, {self._id_col})
                """)
        finally:
            conn.close()

    def upsert_record(
        self,
        collection: str,
        record_id: str,
        changed_at: datetime,
        attributes: Dict[str, Any],
    ) -> None:
        """写入或更新一条记录"""
        table = _quote(collection)
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(f"""
                    INSERT INTO {table} ({self._id_col}, {self._ts_col}, {self._data_col})
                    VALUES (?, ?, ?)
                    ON CONFLICT({self._id_col}) DO UPDATE SET
                        {self._ts_col} = excluded.{self._ts_col},
                        {self._data_col} = excluded.{self._data_col}
                """, (record_id, format_timestamp(changed_at), json.dumps(attributes, default=str)))
        finally:
            conn.close()
