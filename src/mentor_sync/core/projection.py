"""
行投影 - 把变更记录映射为目标所需的扁平行 / 消息
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mentor_sync.models.record import ChangeRecord, RecordKind, parse_attributes
from mentor_sync.utils.converters import ConverterType, convert

# 表格单元格只接受标量
Scalar = Union[str, int, float, bool]
ProjectedRow = Tuple[Scalar, ...]

# 所有结构都可以引用的元字段
META_FIELDS = ("id", "changed_at", "source")


class ProjectionError(Exception):
    """单条记录与声明的结构不符"""

    def __init__(self, record_id: str, message: str):
        super().__init__(f"记录 {record_id} 投影失败: {message}")
        self.record_id = record_id
        self.transient = False


class Column(BaseModel):
    """
    投影列

    属性:
        header: 表头
        field: 取值字段（属性字段或元字段）
        converter: 转换器（可选）
        converter_params: 转换器参数
    """
    model_config = ConfigDict(frozen=True)

    header: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    converter: Optional[ConverterType] = None
    converter_params: Dict[str, Any] = Field(default_factory=dict)


class SinkSchema(BaseModel):
    """
    目标行结构（带版本）

    同一结构下所有行的列数和列顺序固定，下游可以按位置读取。
    """
    model_config = ConfigDict(frozen=True)

    name: str
    version: int
    kind: RecordKind
    columns: Tuple[Column, ...]

    @property
    def key(self) -> str:
        """结构标识，如 goals.v1"""
        return f"{self.name}.v{self.version}"

    def header(self) -> List[str]:
        """表头行"""
        return [c.header for c in self.columns]


def _col(
    field: str,
    converter: Optional[ConverterType] = None,
    header: Optional[str] = None,
    **params: Any,
) -> Column:
    return Column(
        header=header or field,
        field=field,
        converter=converter,
        converter_params=params,
    )


SCHEMAS: Dict[Tuple[RecordKind, int], SinkSchema] = {
    (RecordKind.GOAL, 1): SinkSchema(
        name="goals",
        version=1,
        kind=RecordKind.GOAL,
        columns=(
            _col("id"),
            _col("student_id"),
            _col("student_name"),
            _col("title", ConverterType.TRIM),
            _col("description"),
            _col("category", ConverterType.LOWERCASE),
            _col("status", ConverterType.DEFAULT, value="pending"),
            _col("mentor_feedback"),
            _col("target_date", ConverterType.ISOFORMAT),
            _col("changed_at", ConverterType.ISOFORMAT, header="updated_at"),
        ),
    ),
    (RecordKind.REFLECTION, 1): SinkSchema(
        name="reflections",
        version=1,
        kind=RecordKind.REFLECTION,
        columns=(
            _col("id"),
            _col("student_id"),
            _col("student_name"),
            _col("goal_id"),
            _col("week", ConverterType.TYPECAST, target_type="int"),
            _col("mood", ConverterType.LOWERCASE),
            _col("content", ConverterType.TRIM),
            _col("tags", ConverterType.JOIN),
            _col("status", ConverterType.DEFAULT, value="submitted"),
            _col("mentor_feedback"),
            _col("changed_at", ConverterType.ISOFORMAT, header="updated_at"),
        ),
    ),
    (RecordKind.LOGIN, 1): SinkSchema(
        name="logins",
        version=1,
        kind=RecordKind.LOGIN,
        columns=(
            _col("id"),
            _col("user_id"),
            _col("email", ConverterType.LOWERCASE),
            _col("display_name"),
            _col("role", ConverterType.DEFAULT, value="student"),
            _col("provider"),
            _col("user_agent"),
            _col("changed_at", ConverterType.ISOFORMAT, header="logged_in_at"),
        ),
    ),
}


def get_schema(kind: Union[RecordKind, str], version: int = 1) -> SinkSchema:
    """按记录类型和版本获取结构"""
    key = (RecordKind(kind), version)
    if key not in SCHEMAS:
        raise KeyError(f"未定义的投影结构: {key[0].value}.v{version}")
    return SCHEMAS[key]


def _to_scalar(value: Any) -> Scalar:
    """单元格取值：缺失为空串，不省略列"""
    if value is None:
        return ""
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return convert(value, ConverterType.ISOFORMAT)
    if isinstance(value, (list, tuple, set)):
        return convert(value, ConverterType.JOIN)
    return str(value)


def _record_values(record: ChangeRecord, kind: RecordKind) -> Dict[str, Any]:
    """校验属性并合并元字段"""
    try:
        attributes = parse_attributes(kind, record.attributes)
    except ValidationError as e:
        raise ProjectionError(record.id, str(e)) from e

    values = attributes.model_dump()
    values.update(id=record.id, changed_at=record.changed_at, source=record.source)
    return values


def project(record: ChangeRecord, schema: SinkSchema) -> ProjectedRow:
    """
    把一条记录投影为目标行

    纯函数，不做 I/O。列数和列顺序由 schema 决定，
    缺失的可选属性投影为空串。

    参数:
        record: 变更记录
        schema: 目标行结构

    返回:
        ProjectedRow: 标量元组

    异常:
        ProjectionError: 记录属性与 schema 对应的类型不符
    """
    values = _record_values(record, schema.kind)

    row: List[Scalar] = []
    for column in schema.columns:
        value = values.get(column.field)
        if column.converter is not None:
            value = convert(value, column.converter, column.converter_params)
        row.append(_to_scalar(value))
    return tuple(row)


# ============================================================================
# 事件消息
# ============================================================================

COLOR_SUCCESS = 0x57F287
COLOR_ERROR = 0xED4245
COLOR_WARNING = 0xFEE75C
COLOR_INFO = 0x5865F2
COLOR_MUTED = 0x99AAB5


class MessageField(BaseModel):
    """消息字段"""
    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    inline: bool = True


class EventMessage(BaseModel):
    """
    结构化通知消息

    属性:
        title: 标题
        description: 正文
        fields: 字段列表
        severity: 严重级别 (info/success/warning/error)
        color: 颜色（24 位 RGB）
        timestamp: 事件时间
        record_id: 来源记录
    """
    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    fields: Tuple[MessageField, ...] = ()
    severity: str = "info"
    color: int = COLOR_INFO
    timestamp: datetime
    record_id: str = ""


_STATUS_STYLE = {
    "approved": ("success", COLOR_SUCCESS),
    "completed": ("success", COLOR_SUCCESS),
    "rejected": ("error", COLOR_ERROR),
    "needs_revision": ("warning", COLOR_WARNING),
}


def _style_for(status: Optional[str]) -> Tuple[str, int]:
    return _STATUS_STYLE.get((status or "").lower(), ("info", COLOR_INFO))


def _field(name: str, value: Any, inline: bool = True) -> Optional[MessageField]:
    scalar = _to_scalar(value)
    if scalar == "":
        return None
    text = convert(scalar, ConverterType.TRUNCATE, {"length": 1024})
    return MessageField(name=name, value=text, inline=inline)


def build_message(record: ChangeRecord, kind: Union[RecordKind, str]) -> EventMessage:
    """
    把一条记录映射为通知消息

    异常:
        ProjectionError: 记录属性与类型不符
    """
    kind = RecordKind(kind)
    values = _record_values(record, kind)
    who = values.get("student_name") or values.get("student_id") or ""

    if kind == RecordKind.GOAL:
        status = values.get("status") or "pending"
        severity, color = _style_for(status)
        title = f"Goal {status.replace('_', ' ')}: {values['title']}"
        description = values.get("description") or ""
        candidates = [
            _field("Student", who),
            _field("Category", values.get("category")),
            _field("Target date", values.get("target_date")),
            _field("Mentor feedback", values.get("mentor_feedback"), inline=False),
        ]
    elif kind == RecordKind.REFLECTION:
        status = values.get("status") or "submitted"
        severity, color = _style_for(status)
        week = values.get("week")
        title = f"Reflection {status.replace('_', ' ')}" + (f" (week {week})" if week else "")
        description = values.get("content") or ""
        candidates = [
            _field("Student", who),
            _field("Mood", values.get("mood")),
            _field("Tags", values.get("tags")),
            _field("Mentor feedback", values.get("mentor_feedback"), inline=False),
        ]
    else:
        severity, color = "info", COLOR_MUTED
        name = values.get("display_name") or values.get("email") or values["user_id"]
        title = f"Login: {name}"
        description = ""
        candidates = [
            _field("Role", values.get("role")),
            _field("Provider", values.get("provider")),
            _field("User agent", values.get("user_agent"), inline=False),
        ]

    return EventMessage(
        title=convert(title, ConverterType.TRUNCATE, {"length": 256}),
        description=convert(description, ConverterType.TRUNCATE, {"length": 4096}),
        fields=tuple(f for f in candidates if f is not None),
        severity=severity,
        color=color,
        timestamp=record.changed_at,
        record_id=record.id,
    )
