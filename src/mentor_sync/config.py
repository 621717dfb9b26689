"""
配置加载模块 - 支持 YAML 和环境变量
"""

from pathlib import Path

import yaml
from pydantic import ValidationError

from mentor_sync.models.sync_config import SyncConfig, expand_env_vars


class ConfigError(Exception):
    """配置错误"""
    pass


def _build_config(raw_config: object) -> SyncConfig:
    """展开环境变量并校验"""
    if not isinstance(raw_config, dict):
        raise ConfigError("配置文件必须是一个对象")

    try:
        expanded_config = expand_env_vars(raw_config)
        return SyncConfig(**expanded_config)
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"配置验证失败: {e}") from e


def load_config(path: str | Path) -> SyncConfig:
    """
    加载 YAML 配置文件

    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件路径

    返回:
        SyncConfig: 验证后的配置对象

    异常:
        ConfigError: 配置文件不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("mentor-sync.yaml")
        print([s.name for s in config.sources])
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}") from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败: {e}") from e

    return _build_config(raw_config)


def load_config_from_string(content: str) -> SyncConfig:
    """从字符串加载配置（用于测试）"""
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败: {e}") from e
    return _build_config(raw_config)


def generate_config_template() -> str:
    """生成配置模板"""
    return '''# mentor-sync 增量同步配置

# 记录源（看板数据的本地镜像）
record_store:
  type: "sqlite"
  db_path: "./dashboard.db"
  page_size: 200

# 同步目标
sinks:
  - name: "sheets"
    type: "sheets"
    spreadsheet_id: "${GOOGLE_SHEET_ID}"
    credentials_file: "${GOOGLE_CREDENTIALS_PATH:-./service-account.json}"
    chunk_size: 100            # 单次追加行数上限

  - name: "discord"
    type: "discord"
    webhook_url: "${DISCORD_WEBHOOK_URL}"
    username: "Mentor Dashboard"
    rate_limit:
      max_sends: 5             # 每个滚动窗口内最多发送 5 条
      window_seconds: 2

# 同步源
sources:
  - name: "goals"
    kind: "goal"
    sinks: ["sheets", "discord"]
    worksheet: "Goals"

  - name: "reflections"
    kind: "reflection"
    sinks: ["sheets"]
    worksheet: "Reflections"

  - name: "logins"
    kind: "login"
    sinks: ["discord"]

# 重试策略
retry_policy:
  max_retries: 3
  backoff_factor: 1.0
  max_delay: 60

checkpoint_path: "./checkpoints.db"
cycle_deadline_seconds: 300   # 单个周期截止时间
watermark_policy: "max_observed"  # 无变更时不推进水位线；"now" 推进到周期开始时间
log_level: "INFO"
'''


def save_config_template(path: str | Path) -> None:
    """保存配置模板到文件"""
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
