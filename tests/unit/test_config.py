"""
配置加载单元测试 (unittest)
"""

import os
import shutil
import unittest
from unittest.mock import patch

from mentor_sync.config import (
    ConfigError,
    generate_config_template,
    load_config,
    load_config_from_string,
    save_config_template,
)
from mentor_sync.models.sync_config import SinkType, WatermarkPolicy, expand_env_vars
from tests.conftest import create_temp_dir


class TestLoadConfig(unittest.TestCase):
    """配置加载测试"""

    def setUp(self):
        self.temp_dir = create_temp_dir()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_template_is_valid(self):
        """测试模板填入环境变量后可以通过校验"""
        env = {
            "GOOGLE_SHEET_ID": "sheet-id",
            "DISCORD_WEBHOOK_URL": "https://discord.com/api/webhooks/1/token",
        }
        with patch.dict(os.environ, env):
            config = load_config_from_string(generate_config_template())

        self.assertEqual([s.name for s in config.sources], ["goals", "reflections", "logins"])
        self.assertEqual(config.get_sink("sheets").type, SinkType.SHEETS.value)
        self.assertEqual(config.get_sink("sheets").credentials_file, "./service-account.json")
        self.assertEqual(config.watermark_policy, WatermarkPolicy.MAX_OBSERVED)

    def test_save_and_load(self):
        """测试保存模板后从文件加载"""
        path = self.temp_dir / "sync.yaml"
        save_config_template(path)
        env = {
            "GOOGLE_SHEET_ID": "sheet-id",
            "DISCORD_WEBHOOK_URL": "https://discord.com/api/webhooks/1/token",
        }
        with patch.dict(os.environ, env):
            config = load_config(path)
        self.assertEqual(config.record_store.page_size, 200)

    def test_missing_env_var(self):
        """测试必需的环境变量未设置"""
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                load_config_from_string(generate_config_template())

    def test_missing_file(self):
        """测试配置文件不存在"""
        with self.assertRaises(ConfigError):
            load_config(self.temp_dir / "missing.yaml")

    def test_invalid_yaml(self):
        """测试 YAML 语法错误"""
        with self.assertRaises(ConfigError):
            load_config_from_string("sources: [unclosed")

    def test_not_a_mapping(self):
        """测试顶层不是对象"""
        with self.assertRaises(ConfigError):
            load_config_from_string("- a\n- b\n")

    def test_discriminated_sinks(self):
        """测试目标按 type 区分"""
        config = load_config_from_string("""
record_store: {db_path: dashboard.db}
sinks:
  - {name: channel, type: discord, webhook_url: "https://example.com/hook"}
  - {name: sheet, type: sheets, spreadsheet_id: abc, credentials_file: sa.json, chunk_size: 50}
sources:
  - {name: goals, kind: goal, sinks: [sheet, channel], worksheet: Goals}
""")
        self.assertEqual(config.get_sink("sheet").chunk_size, 50)
        self.assertEqual(config.get_sink("channel").rate_limit.window_seconds, 2.0)

    def test_unknown_sink_type(self):
        """测试未知目标类型"""
        with self.assertRaises(ConfigError):
            load_config_from_string("""
record_store: {db_path: dashboard.db}
sinks:
  - {name: mail, type: smtp}
sources:
  - {name: goals, kind: goal, sinks: [mail]}
""")


class TestExpandEnvVars(unittest.TestCase):
    """环境变量展开测试"""

    def test_nested(self):
        """测试嵌套结构"""
        with patch.dict(os.environ, {"SHEET": "abc"}):
            value = expand_env_vars({"a": ["${SHEET}", {"b": "${MISSING:-fallback}"}], "c": 3})
        self.assertEqual(value, {"a": ["abc", {"b": "fallback"}], "c": 3})

    def test_missing_without_default(self):
        """测试无默认值的缺失变量"""
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                expand_env_vars("${NOT_SET}")


if __name__ == "__main__":
    unittest.main()
