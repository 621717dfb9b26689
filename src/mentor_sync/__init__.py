"""
mentor-sync 增量同步引擎

把导师看板的记录集合（目标、反思、登录）按水位线增量同步到
Google Sheets 表格和 Discord 通知频道，至少一次投递、水位线只进不退。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "SyncOrchestrator",
    "build_orchestrator",
    "CheckpointStore",
    "SyncConfig",
    "SyncRun",
    "ChangeRecord",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "SyncOrchestrator":
        from mentor_sync.core.orchestrator import SyncOrchestrator
        return SyncOrchestrator
    elif name == "build_orchestrator":
        from mentor_sync.core.orchestrator import build_orchestrator
        return build_orchestrator
    elif name == "CheckpointStore":
        from mentor_sync.storage.checkpoint import CheckpointStore
        return CheckpointStore
    elif name == "SyncConfig":
        from mentor_sync.models.sync_config import SyncConfig
        return SyncConfig
    elif name == "SyncRun":
        from mentor_sync.models.checkpoint import SyncRun
        return SyncRun
    elif name == "ChangeRecord":
        from mentor_sync.models.record import ChangeRecord
        return ChangeRecord
    elif name == "load_config":
        from mentor_sync.config import load_config
        return load_config
    raise AttributeError(f"module 'mentor_sync' has no attribute '{name}'")
