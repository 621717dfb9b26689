"""
记录源抽象基类
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from mentor_sync.models.record import ChangeRecord

# 键集分页游标 (changed_at, id)
Cursor = Tuple[datetime, str]


class SourceQueryError(Exception):
    """记录源查询失败"""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class BaseRecordSource(ABC):
    """
    记录源抽象基类

    记录源只需支持一种查询：changed_at 严格大于水位线的记录，
    按 (changed_at, id) 升序，键集分页。
    """

    name = "base"

    @abstractmethod
    async def connect(self) -> None:
        """建立连接"""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """关闭连接"""
        raise NotImplementedError

    @abstractmethod
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

        参数:
            collection: 集合名
            source_key: 源标识（写入 ChangeRecord.source）
            watermark: 水位线，只返回 changed_at > watermark 的记录
            after: 上一页最后一条的 (changed_at, id)，首页为 None
            limit: 每页最多条数

        返回:
            按 (changed_at, id) 升序的记录列表
        """
        raise NotImplementedError

    async def __aenter__(self) -> "BaseRecordSource":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
