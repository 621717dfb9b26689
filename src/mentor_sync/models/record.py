"""
变更记录模型 - 记录源中被创建或更新的一条领域数据
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

# 空水位线：从未同步过的源从这里开始
EPOCH_ZERO = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """naive 时间按 UTC 处理，带时区的统一转换为 UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    时间戳存储格式

    固定宽度（微秒 + UTC 偏移），保证字符串比较与时间比较一致。
    """
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: str) -> datetime:
    """解析存储的时间戳"""
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class RecordKind(str, Enum):
    """记录类型（对应看板中的集合）"""
    GOAL = "goal"
    REFLECTION = "reflection"
    LOGIN = "login"


class ChangeRecord(BaseModel):
    """
    变更记录

    记录源查询接口返回的最小结构。changed_at 由记录源在每次
    创建 / 更新时设置，是同步唯一的排序键。

    属性:
        source: 源标识（配置中的 source 名称）
        id: 记录标识，在源内唯一
        changed_at: 变更时间戳（UTC）
        attributes: 领域属性，按记录类型校验

    示例:
        ```python
        record = ChangeRecord(
            source="goals",
            id="g-42",
            changed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            attributes={"student_id": "s-1", "title": "读完《算法导论》"}
        )
        ```
    """
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., min_length=1, description="源标识")
    id: str = Field(..., min_length=1, description="记录标识")
    changed_at: datetime = Field(..., description="变更时间戳")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="领域属性")

    @field_validator("changed_at")
    @classmethod
    def normalize_changed_at(cls, v: datetime) -> datetime:
        """统一为 UTC"""
        return ensure_utc(v)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        """同步排序键 (changed_at, id)"""
        return (self.changed_at, self.id)


# ============================================================================
# 按记录类型区分的属性结构
# ============================================================================


class _Attributes(BaseModel):
    """属性基类：允许额外字段，但声明字段类型必须正确"""
    model_config = ConfigDict(extra="allow")


class GoalAttributes(_Attributes):
    """学生目标"""
    student_id: str
    title: str
    student_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    mentor_id: Optional[str] = None
    mentor_feedback: Optional[str] = None
    target_date: Optional[date] = None
    created_at: Optional[datetime] = None


class ReflectionAttributes(_Attributes):
    """每周反思"""
    student_id: str
    content: str
    student_name: Optional[str] = None
    goal_id: Optional[str] = None
    week: Optional[int] = None
    mood: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    mentor_feedback: Optional[str] = None
    created_at: Optional[datetime] = None


class LoginAttributes(_Attributes):
    """登录记录"""
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: Optional[str] = None
    provider: Optional[str] = None
    user_agent: Optional[str] = None
    logged_in_at: Optional[datetime] = None


ATTRIBUTE_MODELS: Dict[RecordKind, Type[_Attributes]] = {
    RecordKind.GOAL: GoalAttributes,
    RecordKind.REFLECTION: ReflectionAttributes,
    RecordKind.LOGIN: LoginAttributes,
}


def parse_attributes(kind: RecordKind, attributes: Dict[str, Any]) -> _Attributes:
    """
    按记录类型校验属性

    参数:
        kind: 记录类型
        attributes: 原始属性字典

    返回:
        对应类型的属性模型

    异常:
        pydantic.ValidationError: 属性结构与类型不符
    """
    model = ATTRIBUTE_MODELS[RecordKind(kind)]
    return model.model_validate(attributes)
