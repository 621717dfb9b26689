"""
同步配置模型 - 使用 Pydantic 进行配置验证
"""

import os
import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mentor_sync.models.record import RecordKind


class SinkType(str, Enum):
    """目标类型"""
    SHEETS = "sheets"
    DISCORD = "discord"


class WatermarkPolicy(str, Enum):
    """
    无变更时的水位线策略

    MAX_OBSERVED: 只推进到实际观察到的最大 changed_at，无变更时不动
    NOW: 无变更时推进到周期开始时间（存在时钟偏差风险，需显式开启）
    """
    MAX_OBSERVED = "max_observed"
    NOW = "now"


class RetryPolicy(BaseModel):
    """
    重试策略配置

    属性:
        max_retries: 最大重试次数，默认 3
        backoff_factor: 退避系数，第 n 次重试等待 backoff_factor * 2^n 秒
        max_delay: 最大退避延迟(秒)，默认 60
        jitter: 是否叠加 0~1 秒随机抖动
    """
    max_retries: int = Field(default=3, ge=0, description="最大重试次数")
    backoff_factor: float = Field(default=1.0, ge=0, description="退避系数")
    max_delay: float = Field(default=60, gt=0, description="最大退避延迟(秒)")
    jitter: bool = Field(default=True, description="随机抖动")


class RateLimit(BaseModel):
    """
    滚动窗口限速

    属性:
        max_sends: 窗口内最多发送次数
        window_seconds: 窗口长度(秒)
    """
    max_sends: int = Field(default=5, ge=1, description="窗口内最大发送数")
    window_seconds: float = Field(default=2.0, gt=0, description="窗口长度(秒)")


class SQLiteStoreConfig(BaseModel):
    """
    SQLite 记录源配置

    每个集合一张表，包含 id / updated_at / data(JSON) 三列。
    """
    model_config = ConfigDict(title="SQLite Record Store")

    type: Literal["sqlite"] = Field(default="sqlite", description="记录源类型")
    db_path: str = Field(..., min_length=1, description="数据库文件路径")
    page_size: int = Field(default=200, ge=1, le=5000, description="分页大小")
    id_column: str = Field(default="id", description="记录标识列")
    timestamp_column: str = Field(default="updated_at", description="变更时间戳列")
    data_column: str = Field(default="data", description="属性 JSON 列")


class SheetsSinkConfig(BaseModel):
    """Google Sheets 目标配置"""
    model_config = ConfigDict(title="Google Sheets Sink")

    type: Literal["sheets"] = Field(default="sheets", description="目标类型")
    name: str = Field(..., min_length=1, description="目标名称")
    spreadsheet_id: str = Field(..., min_length=1, description="表格 ID")
    credentials_file: str = Field(..., min_length=1, description="服务账号凭据文件")
    chunk_size: int = Field(default=100, ge=1, le=10000, description="单次追加行数上限")
    write_header: bool = Field(default=True, description="工作表为空时写入表头")


class DiscordSinkConfig(BaseModel):
    """Discord Webhook 目标配置"""
    model_config = ConfigDict(title="Discord Webhook Sink")

    type: Literal["discord"] = Field(default="discord", description="目标类型")
    name: str = Field(..., min_length=1, description="目标名称")
    webhook_url: str = Field(..., min_length=1, description="Webhook 地址")
    username: Optional[str] = Field(default=None, description="消息显示的机器人名")
    rate_limit: RateLimit = Field(default_factory=RateLimit, description="限速")
    timeout_seconds: float = Field(default=10.0, gt=0, description="请求超时(秒)")

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """验证 URL 格式"""
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url 必须以 http:// 或 https:// 开头")
        return v


SinkConfig = Annotated[
    Union[SheetsSinkConfig, DiscordSinkConfig],
    Field(discriminator="type"),
]


class SourceConfig(BaseModel):
    """
    同步源配置

    属性:
        name: 源标识（断点按此键存储）
        collection: 记录源中的集合名（默认同 name）
        kind: 记录类型，决定投影结构
        schema_version: 投影结构版本
        sinks: 写入的目标名称列表
        worksheet: Sheets 目标使用的工作表名
    """
    name: str = Field(..., min_length=1, description="源标识")
    collection: Optional[str] = Field(default=None, description="集合名")
    kind: RecordKind = Field(..., description="记录类型")
    schema_version: int = Field(default=1, ge=1, description="投影结构版本")
    sinks: List[str] = Field(..., min_length=1, description="目标名称列表")
    worksheet: Optional[str] = Field(default=None, description="工作表名")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """验证名称格式"""
        if not re.fullmatch(r"[A-Za-z0-9_\-]+", v):
            raise ValueError("源名称只能包含字母、数字、下划线和连字符")
        return v

    @model_validator(mode="after")
    def set_default_collection(self) -> "SourceConfig":
        """设置默认集合名"""
        if self.collection is None:
            self.collection = self.name
        return self


class SyncConfig(BaseModel):
    """
    同步配置根对象

    属性:
        record_store: 记录源配置
        sinks: 目标配置列表
        sources: 同步源列表
        retry_policy: 重试策略
        checkpoint_path: 断点存储路径
        cycle_deadline_seconds: 单个同步周期的截止时间(秒)
        watermark_policy: 无变更时的水位线策略
        lease_ttl_seconds: 互斥租约有效期(秒)
        log_level: 日志级别
    """
    record_store: SQLiteStoreConfig = Field(..., description="记录源配置")
    sinks: List[SinkConfig] = Field(..., min_length=1, description="目标配置列表")
    sources: List[SourceConfig] = Field(..., min_length=1, description="同步源列表")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy, description="重试策略")
    checkpoint_path: str = Field(default="checkpoints.db", description="断点存储路径")
    cycle_deadline_seconds: float = Field(default=300.0, gt=0, description="周期截止时间")
    watermark_policy: WatermarkPolicy = Field(
        default=WatermarkPolicy.MAX_OBSERVED, description="水位线策略"
    )
    lease_ttl_seconds: float = Field(default=900.0, gt=0, description="租约有效期")
    log_level: str = Field(default="INFO", description="日志级别")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"日志级别必须是以下之一: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_names_unique(self) -> "SyncConfig":
        """验证目标和源名称唯一"""
        sink_names = [s.name for s in self.sinks]
        if len(sink_names) != len(set(sink_names)):
            raise ValueError("目标名称必须唯一")
        source_names = [s.name for s in self.sources]
        if len(source_names) != len(set(source_names)):
            raise ValueError("源名称必须唯一")
        return self

    @model_validator(mode="after")
    def validate_lease_covers_deadline(self) -> "SyncConfig":
        """租约有效期不能短于周期截止时间"""
        if self.lease_ttl_seconds < self.cycle_deadline_seconds:
            raise ValueError("lease_ttl_seconds 不能小于 cycle_deadline_seconds")
        return self

    @model_validator(mode="after")
    def validate_source_sinks(self) -> "SyncConfig":
        """验证源引用的目标存在，且 Sheets 目标有工作表"""
        sinks = {s.name: s for s in self.sinks}
        for source in self.sources:
            undefined = [name for name in source.sinks if name not in sinks]
            if undefined:
                raise ValueError(f"源 {source.name} 引用了未定义的目标: {undefined}")
            if len(source.sinks) != len(set(source.sinks)):
                raise ValueError(f"源 {source.name} 的目标列表有重复")
            for name in source.sinks:
                if sinks[name].type == SinkType.SHEETS.value and not source.worksheet:
                    raise ValueError(f"源 {source.name} 写入 Sheets 目标时必须指定 worksheet")
        return self

    def get_source(self, name: str) -> Optional[SourceConfig]:
        """获取指定源的配置"""
        for source in self.sources:
            if source.name == name:
                return source
        return None

    def get_sink(self, name: str) -> Optional[Union[SheetsSinkConfig, DiscordSinkConfig]]:
        """获取指定目标的配置"""
        for sink in self.sinks:
            if sink.name == name:
                return sink
        return None


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        result: Any = re.sub(pattern, replacer, value)
        return result
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
