"""
模型单元测试 (unittest)
"""

import unittest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from mentor_sync.models.checkpoint import (
    RunOutcome,
    SourceRunSummary,
    SourceStatus,
    SyncRun,
)
from mentor_sync.models.record import (
    EPOCH_ZERO,
    ChangeRecord,
    GoalAttributes,
    RecordKind,
    format_timestamp,
    parse_attributes,
    parse_timestamp,
)
from mentor_sync.models.sync_config import (
    DiscordSinkConfig,
    SheetsSinkConfig,
    SourceConfig,
    SQLiteStoreConfig,
    SyncConfig,
    WatermarkPolicy,
)


def _config(**overrides):
    data = dict(
        record_store=SQLiteStoreConfig(db_path="dashboard.db"),
        sinks=[
            SheetsSinkConfig(name="sheet", spreadsheet_id="abc", credentials_file="sa.json"),
            DiscordSinkConfig(name="channel", webhook_url="https://discord.com/api/webhooks/1/x"),
        ],
        sources=[
            SourceConfig(name="goals", kind="goal", sinks=["sheet", "channel"], worksheet="Goals"),
            SourceConfig(name="logins", kind="login", sinks=["channel"]),
        ],
    )
    data.update(overrides)
    return SyncConfig(**data)


class TestChangeRecord(unittest.TestCase):
    """变更记录测试"""

    def test_naive_timestamp_taken_as_utc(self):
        """测试 naive 时间戳按 UTC 处理"""
        record = ChangeRecord(source="goals", id="g-1", changed_at=datetime(2026, 3, 1, 9, 0))
        self.assertEqual(record.changed_at.tzinfo, timezone.utc)

    def test_offset_timestamp_normalized(self):
        """测试带时区的时间戳转换为 UTC"""
        record = ChangeRecord(
            source="goals",
            id="g-1",
            changed_at=datetime(2026, 3, 1, 17, 0, tzinfo=timezone(timedelta(hours=8))),
        )
        self.assertEqual(record.changed_at, datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))

    def test_sort_key_orders_by_time_then_id(self):
        """测试排序键 (changed_at, id)"""
        t = datetime(2026, 3, 1, tzinfo=timezone.utc)
        records = [
            ChangeRecord(source="goals", id="b", changed_at=t),
            ChangeRecord(source="goals", id="a", changed_at=t),
            ChangeRecord(source="goals", id="c", changed_at=t - timedelta(seconds=1)),
        ]
        self.assertEqual([r.id for r in sorted(records, key=lambda r: r.sort_key)], ["c", "a", "b"])

    def test_record_is_frozen(self):
        """测试记录不可修改"""
        record = ChangeRecord(source="goals", id="g-1", changed_at=EPOCH_ZERO)
        with self.assertRaises(ValidationError):
            record.id = "g-2"

    def test_timestamp_format_is_fixed_width(self):
        """测试存储格式固定宽度，可往返"""
        value = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        text = format_timestamp(value)
        self.assertEqual(text, "2026-03-01T09:00:00.000000+00:00")
        self.assertEqual(parse_timestamp(text), value)
        self.assertEqual(parse_timestamp("2026-03-01T09:00:00Z"), value)


class TestAttributes(unittest.TestCase):
    """记录属性校验测试"""

    def test_goal_attributes(self):
        """测试目标属性"""
        attrs = parse_attributes(RecordKind.GOAL, {"student_id": "s-1", "title": "学习 Python"})
        self.assertIsInstance(attrs, GoalAttributes)
        self.assertIsNone(attrs.status)

    def test_missing_required_field(self):
        """测试缺少必填字段"""
        with self.assertRaises(ValidationError):
            parse_attributes(RecordKind.GOAL, {"student_id": "s-1"})

    def test_wrong_type_rejected(self):
        """测试字段类型错误"""
        with self.assertRaises(ValidationError):
            parse_attributes(RecordKind.REFLECTION, {"student_id": "s-1", "content": "ok", "week": "第三周"})

    def test_extra_fields_allowed(self):
        """测试允许额外字段"""
        attrs = parse_attributes(RecordKind.LOGIN, {"user_id": "u-1", "ip": "10.0.0.1"})
        self.assertEqual(attrs.model_dump()["ip"], "10.0.0.1")


class TestSyncConfig(unittest.TestCase):
    """同步配置模型测试"""

    def test_basic_config(self):
        """测试基本配置创建"""
        config = _config()
        self.assertEqual(config.watermark_policy, WatermarkPolicy.MAX_OBSERVED)
        self.assertEqual(config.get_source("goals").collection, "goals")
        self.assertEqual(config.get_sink("channel").rate_limit.max_sends, 5)
        self.assertIsNone(config.get_source("missing"))

    def test_sink_names_unique(self):
        """测试目标名称唯一"""
        with self.assertRaises(ValidationError):
            _config(sinks=[
                DiscordSinkConfig(name="channel", webhook_url="https://a"),
                DiscordSinkConfig(name="channel", webhook_url="https://b"),
            ], sources=[SourceConfig(name="logins", kind="login", sinks=["channel"])])

    def test_source_references_undefined_sink(self):
        """测试源引用未定义的目标"""
        with self.assertRaises(ValidationError):
            _config(sources=[SourceConfig(name="logins", kind="login", sinks=["nowhere"])])

    def test_sheets_sink_requires_worksheet(self):
        """测试写入 Sheets 的源必须指定工作表"""
        with self.assertRaises(ValidationError):
            _config(sources=[SourceConfig(name="goals", kind="goal", sinks=["sheet"])])

    def test_lease_must_cover_deadline(self):
        """测试租约有效期不能短于周期截止时间"""
        with self.assertRaises(ValidationError):
            _config(cycle_deadline_seconds=600, lease_ttl_seconds=60)

    def test_invalid_source_name(self):
        """测试源名称格式"""
        with self.assertRaises(ValidationError):
            SourceConfig(name="goals v2", kind="goal", sinks=["sheet"])

    def test_invalid_webhook_url(self):
        """测试 webhook 地址格式"""
        with self.assertRaises(ValidationError):
            DiscordSinkConfig(name="channel", webhook_url="discord.com/api/webhooks")

    def test_log_level_normalized(self):
        """测试日志级别"""
        self.assertEqual(_config(log_level="debug").log_level, "DEBUG")
        with self.assertRaises(ValidationError):
            _config(log_level="TRACE")


class TestSyncRun(unittest.TestCase):
    """同步运行记录测试"""

    def _summary(self, name, status):
        return SourceRunSummary(source_key=name, status=status, records_synced=2)

    def test_all_success(self):
        """测试全部成功"""
        run = SyncRun.from_sources("r1", EPOCH_ZERO, {
            "a": self._summary("a", SourceStatus.SUCCESS),
            "b": self._summary("b", SourceStatus.SUCCESS),
        })
        self.assertEqual(run.outcome, RunOutcome.SUCCESS)
        self.assertEqual(run.total_synced, 4)
        self.assertIsNotNone(run.finished_at)

    def test_mixed_is_partial(self):
        """测试部分失败"""
        run = SyncRun.from_sources("r1", EPOCH_ZERO, {
            "a": self._summary("a", SourceStatus.SUCCESS),
            "b": self._summary("b", SourceStatus.FAILED),
        })
        self.assertEqual(run.outcome, RunOutcome.PARTIAL)

    def test_all_failed(self):
        """测试全部失败"""
        run = SyncRun.from_sources("r1", EPOCH_ZERO, {"a": self._summary("a", SourceStatus.FAILED)})
        self.assertEqual(run.outcome, RunOutcome.FAILED)

    def test_cycle_error_is_failed(self):
        """测试周期级错误"""
        run = SyncRun.from_sources("r1", EPOCH_ZERO, {}, error="读取水位线失败")
        self.assertEqual(run.outcome, RunOutcome.FAILED)

    def test_skipped(self):
        """测试跳过的周期"""
        run = SyncRun.skipped("r1", EPOCH_ZERO, "另一个同步周期正在运行")
        self.assertEqual(run.outcome, RunOutcome.SKIPPED)
        self.assertEqual(run.sources, {})

    def test_to_dict_roundtrip(self):
        """测试序列化"""
        run = SyncRun.from_sources("r1", EPOCH_ZERO, {"a": self._summary("a", SourceStatus.SUCCESS)})
        data = run.to_dict()
        self.assertEqual(data["outcome"], "success")
        self.assertEqual(SyncRun.model_validate(data), run)


if __name__ == "__main__":
    unittest.main()
