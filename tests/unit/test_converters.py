"""
字段转换器单元测试 (unittest)
"""

import unittest
from datetime import date, datetime, timedelta, timezone

from mentor_sync.utils.converters import ConverterType, convert, get_converter


class TestConverters(unittest.TestCase):
    """转换器测试"""

    def test_lowercase(self):
        """测试转小写"""
        result = convert("Student@Example.COM", ConverterType.LOWERCASE, {})
        self.assertEqual(result, "student@example.com")

    def test_lowercase_with_none(self):
        """测试转小写 - None 值"""
        self.assertIsNone(convert(None, ConverterType.LOWERCASE, {}))

    def test_uppercase(self):
        """测试转大写"""
        self.assertEqual(convert("mentor", ConverterType.UPPERCASE), "MENTOR")

    def test_trim(self):
        """测试去除空白"""
        self.assertEqual(convert("  读完一本书  ", ConverterType.TRIM, {}), "读完一本书")

    def test_default_with_none(self):
        """测试默认值 - None 值时使用默认"""
        self.assertEqual(convert(None, ConverterType.DEFAULT, {"value": "pending"}), "pending")

    def test_default_with_empty_string(self):
        """测试默认值 - 空字符串时使用默认"""
        self.assertEqual(convert("", ConverterType.DEFAULT, {"value": "pending"}), "pending")

    def test_default_with_value(self):
        """测试默认值 - 有值时保留原值"""
        self.assertEqual(convert("approved", ConverterType.DEFAULT, {"value": "pending"}), "approved")

    def test_typecast_to_int(self):
        """测试类型转换为 int"""
        result = convert("12", ConverterType.TYPECAST, {"target_type": "int"})
        self.assertEqual(result, 12)
        self.assertIsInstance(result, int)

    def test_typecast_invalid_keeps_value(self):
        """测试类型转换失败时保留原值"""
        self.assertEqual(convert("第三周", ConverterType.TYPECAST, {"target_type": "int"}), "第三周")

    def test_typecast_int_from_decimal_string(self):
        """测试表格导出的 "3.0" 转为 int"""
        self.assertEqual(convert("3.0", ConverterType.TYPECAST, {"target_type": "int"}), 3)

    def test_typecast_bool_strings(self):
        """测试布尔字符串"""
        self.assertIs(convert("false", ConverterType.TYPECAST, {"target_type": "bool"}), False)
        self.assertIs(convert("Yes", ConverterType.TYPECAST, {"target_type": "bool"}), True)
        self.assertEqual(convert("maybe", ConverterType.TYPECAST, {"target_type": "bool"}), "maybe")

    def test_default_with_empty_list(self):
        """测试默认值 - 空列表时使用默认"""
        self.assertEqual(convert([], ConverterType.DEFAULT, {"value": "-"}), "-")

    def test_isoformat_datetime_is_utc(self):
        """测试 datetime 转为 UTC ISO 字符串"""
        value = datetime(2026, 3, 1, 17, 0, tzinfo=timezone(timedelta(hours=8)))
        self.assertEqual(convert(value, ConverterType.ISOFORMAT), "2026-03-01T09:00:00+00:00")

    def test_isoformat_naive_datetime_taken_as_utc(self):
        """测试 naive datetime 按 UTC 处理"""
        self.assertEqual(
            convert(datetime(2026, 3, 1, 9, 0), ConverterType.ISOFORMAT),
            "2026-03-01T09:00:00+00:00",
        )

    def test_isoformat_date(self):
        """测试 date 转 YYYY-MM-DD"""
        self.assertEqual(convert(date(2026, 6, 30), ConverterType.ISOFORMAT), "2026-06-30")

    def test_join(self):
        """测试列表拼接"""
        self.assertEqual(convert(["focus", "progress"], ConverterType.JOIN), "focus, progress")
        self.assertEqual(convert(["a", "b"], ConverterType.JOIN, {"separator": "|"}), "a|b")

    def test_truncate(self):
        """测试截断长文本"""
        result = convert("x" * 20, ConverterType.TRUNCATE, {"length": 10})
        self.assertEqual(len(result), 10)
        self.assertTrue(result.endswith("…"))
        self.assertEqual(convert("short", ConverterType.TRUNCATE, {"length": 10}), "short")

    def test_get_converter(self):
        """测试按名称获取转换器"""
        self.assertIsNotNone(get_converter("lowercase"))
        self.assertIsNotNone(get_converter("JOIN"))
        self.assertIsNone(get_converter("unknown"))


if __name__ == "__main__":
    unittest.main()
