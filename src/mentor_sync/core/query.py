"""
变更查询引擎 - 读取水位线之后的全部变更
"""

from datetime import datetime
from typing import AsyncIterator, List, Optional

from mentor_sync.models.record import ChangeRecord, ensure_utc
from mentor_sync.sources.base import BaseRecordSource, Cursor, SourceQueryError
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)


class ChangeQueryEngine:
    """
    变更查询引擎

    把记录源的分页结果组装成一个有序序列：
    changed_at 严格大于水位线，按 (changed_at, id) 升序。
    同一水位线重复查询得到相同结果（新写入除外）。
    同一记录在分页期间被更新时，两个版本都会按时间顺序产出。
    """

    def __init__(self, source: BaseRecordSource, page_size: int = 200):
        """
        初始化查询引擎

        参数:
            source: 记录源
            page_size: 每页条数
        """
        if page_size < 1:
            raise ValueError("page_size 必须 >= 1")
        self.source = source
        self.page_size = page_size

    async def iter_changed_since(
        self,
        source_key: str,
        collection: str,
        watermark: datetime,
    ) -> AsyncIterator[ChangeRecord]:
        """
        逐条产出水位线之后的变更

        使用 (changed_at, id) 键集分页，不用 OFFSET。
        """
        watermark = ensure_utc(watermark)
        cursor: Optional[Cursor] = None
        pages = 0
        yielded = 0

        while True:
            try:
                page = await self.source.fetch_page(
                    collection, source_key, watermark, cursor, self.page_size
                )
            except SourceQueryError:
                raise
            except Exception as e:
                raise SourceQueryError(f"查询 {collection} 失败: {e}") from e

            pages += 1
            page = sorted(page, key=lambda r: r.sort_key)

            for record in page:
                # 记录源越界返回的数据不能进入同步
                if record.changed_at <= watermark:
                    continue
                if cursor is not None and record.sort_key <= cursor:
                    continue
                yielded += 1
                yield record

            if len(page) < self.page_size:
                break

            last = page[-1].sort_key
            if cursor is not None and last <= cursor:
                # 记录源未推进游标，避免死循环
                logger.warning("query_cursor_stalled", source=source_key, collection=collection)
                break
            cursor = last

        logger.debug("query_pages_read", source=source_key, pages=pages, records=yielded)

    async def query_changed_since(
        self,
        source_key: str,
        collection: str,
        watermark: datetime,
    ) -> List[ChangeRecord]:
        """
        查询水位线之后的全部变更

        参数:
            source_key: 源标识
            collection: 集合名
            watermark: 水位线

        返回:
            有序的变更记录列表；无变更时为空列表

        异常:
            SourceQueryError: 记录源查询失败
        """
        records = [r async for r in self.iter_changed_since(source_key, collection, watermark)]
        logger.info(
            "changes_queried",
            source=source_key,
            collection=collection,
            watermark=watermark,
            count=len(records),
        )
        return records
