"""
通知模块单元测试 (unittest)
"""

import io
import unittest
from contextlib import redirect_stdout
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock

from mentor_sync.models.checkpoint import RunOutcome, SourceRunSummary, SourceStatus, SyncRun
from mentor_sync.utils.notifier import ConsoleNotifier, Notifier, NotifierManager, format_run
from tests.conftest import BASE_TIME, ts


def _run(outcome: RunOutcome, **sources: SourceRunSummary) -> SyncRun:
    return SyncRun(
        run_id="run-1",
        started_at=BASE_TIME,
        finished_at=ts(10),
        outcome=outcome,
        sources=sources,
    )


class TestFormatRun(unittest.TestCase):
    """format_run 测试"""

    def test_lists_sources_with_watermark_and_error(self):
        """测试列出每个源的状态、水位线和错误"""
        run = _run(
            RunOutcome.PARTIAL,
            goals=SourceRunSummary(
                source_key="goals",
                status=SourceStatus.SUCCESS,
                records_queried=3,
                records_synced=3,
                new_watermark=ts(3),
                committed=True,
            ),
            reflections=SourceRunSummary(
                source_key="reflections",
                status=SourceStatus.FAILED,
                records_queried=2,
                records_skipped=1,
                new_watermark=ts(1),
                error="sheet: HTTP 403",
            ),
        )

        text = format_run(run)

        self.assertIn("run_id: run-1", text)
        self.assertIn("goals: success 查询 3 / 同步 3", text)
        self.assertIn(ts(3).isoformat(), text)
        self.assertIn("跳过 1", text)
        self.assertIn("错误: sheet: HTTP 403", text)


class TestNotifierManager(IsolatedAsyncioTestCase):
    """通知管理器测试"""

    async def test_report_levels(self):
        """测试按周期结果选择通知级别"""
        notifier = AsyncMock(spec=Notifier)
        manager = NotifierManager()
        manager.add_notifier(notifier)

        await manager.report_run(_run(RunOutcome.SUCCESS))
        await manager.report_run(_run(
            RunOutcome.PARTIAL,
            logins=SourceRunSummary(source_key="logins", status=SourceStatus.PARTIAL),
        ))
        await manager.report_run(_run(RunOutcome.FAILED))
        await manager.report_run(_run(RunOutcome.SKIPPED))

        levels = [call.args[0] for call in notifier.notify.await_args_list]
        self.assertEqual(levels, ["info", "warning", "error", "warning"])
        self.assertIn("logins", notifier.notify.await_args_list[1].args[1])

    async def test_failing_notifier_does_not_block_others(self):
        """测试单个通知渠道失败不影响其他渠道"""
        broken = AsyncMock(spec=Notifier)
        broken.notify.side_effect = RuntimeError("down")
        working = AsyncMock(spec=Notifier)

        manager = NotifierManager()
        manager.add_notifier(broken)
        manager.add_notifier(working)
        await manager.notify("error", "同步失败", "detail")

        working.notify.assert_awaited_once_with("error", "同步失败", "detail")

    async def test_remove_notifier(self):
        """测试移除通知器"""
        notifier = AsyncMock(spec=Notifier)
        manager = NotifierManager()
        manager.add_notifier(notifier)
        manager.remove_notifier(notifier)

        await manager.notify("info", "t", "m")

        notifier.notify.assert_not_awaited()

    async def test_console_output(self):
        """测试控制台输出缩进的多行消息"""
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            await ConsoleNotifier(use_colors=False).notify("info", "同步完成", "a\nb")

        self.assertEqual(buffer.getvalue(), "[INFO] 同步完成\n  a\n  b\n")


if __name__ == "__main__":
    unittest.main()
