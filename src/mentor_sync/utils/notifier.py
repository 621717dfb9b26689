"""
告警通知模块 - 同步周期结束后向运维人员报告
"""

from abc import ABC, abstractmethod
from typing import List

from mentor_sync.models.checkpoint import RunOutcome, SourceStatus, SyncRun
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    """通知器抽象基类"""

    @abstractmethod
    async def notify(self, level: str, title: str, message: str) -> None:
        """
        发送通知

        参数:
            level: 级别 (info/warning/error)
            title: 标题
            message: 消息内容
        """
        raise NotImplementedError


class ConsoleNotifier(Notifier):
    """控制台通知器 - 打印到控制台"""

    def __init__(self, use_colors: bool = True):
        self.use_colors = use_colors

    async def notify(self, level: str, title: str, message: str) -> None:
        """打印到控制台"""
        if self.use_colors:
            colors = {
                "info": "\033[36m",      # 青色
                "warning": "\033[33m",   # 黄色
                "error": "\033[31m",     # 红色
                "reset": "\033[0m"
            }
            color = colors.get(level, colors["reset"])
            reset = colors["reset"]
            print(f"{color}[{level.upper()}] {title}{reset}")
        else:
            print(f"[{level.upper()}] {title}")
        for line in message.splitlines():
            print(f"  {line}")


class NotifierManager:
    """通知管理器 - 管理多个通知渠道"""

    def __init__(self) -> None:
        self._notifiers: List[Notifier] = []

    def add_notifier(self, notifier: Notifier) -> None:
        """添加通知器"""
        self._notifiers.append(notifier)

    def remove_notifier(self, notifier: Notifier) -> None:
        """移除通知器"""
        if notifier in self._notifiers:
            self._notifiers.remove(notifier)

    async def notify(self, level: str, title: str, message: str) -> None:
        """发送通知到所有渠道；单个渠道失败不影响其他渠道"""
        for notifier in self._notifiers:
            try:
                await notifier.notify(level, title, message)
            except Exception as e:
                logger.error(
                    "notification_failed",
                    notifier_type=type(notifier).__name__,
                    error=str(e)
                )

    async def report_run(self, run: SyncRun) -> None:
        """
        报告一次同步周期的结果

        失败 / 部分成功的源会列出错误和最后一次成功的水位线，
        运维人员据此判断原因并重新触发。
        """
        level, title = _summarize(run)
        await self.notify(level, title, format_run(run))


def _summarize(run: SyncRun) -> "tuple[str, str]":
    if run.outcome == RunOutcome.SUCCESS:
        return "info", f"同步完成: {run.total_synced} 条记录"
    if run.outcome == RunOutcome.SKIPPED:
        return "warning", "同步已跳过: 另一个周期正在运行"
    if run.outcome == RunOutcome.PARTIAL:
        failed = [n for n, s in run.sources.items() if s.status != SourceStatus.SUCCESS]
        return "warning", f"同步部分成功: {', '.join(failed)} 未完成"
    return "error", "同步失败"


def format_run(run: SyncRun) -> str:
    """把 SyncRun 格式化为多行文本"""
    lines = [f"run_id: {run.run_id}"]
    if run.error:
        lines.append(f"错误: {run.error}")
    for name, summary in run.sources.items():
        line = (
            f"{name}: {summary.status.value} "
            f"查询 {summary.records_queried} / 同步 {summary.records_synced}"
        )
        if summary.records_skipped:
            line += f" / 跳过 {summary.records_skipped}"
        line += f" 水位线 {summary.new_watermark.isoformat()}"
        lines.append(line)
        if summary.error:
            lines.append(f"  错误: {summary.error}")
    return "\n".join(lines)
