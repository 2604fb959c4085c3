"""
Configuration Tests
-------------------
YAML loading, dot-notation access and STARCHAT_* overrides.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from infra.config import AppConfig, ConfigManager

CONFIG_YAML = """
server:
  host: 127.0.0.1
  port: 9000
llm:
  model: star-chat-1
  timeout: 12
memory:
  long_term_weight: 0.6
logging:
  level: debug
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    return path


class TestConfigManager:

    def test_dot_notation(self, config_file):
        config = ConfigManager(str(config_file))

        assert config.get("server.port") == 9000
        assert config.get("llm.model") == "star-chat-1"
        assert config.get("llm.missing", "fallback") == "fallback"

    def test_env_override(self, config_file, monkeypatch):
        monkeypatch.setenv("STARCHAT_SERVER_PORT", "9100")
        config = ConfigManager(str(config_file))

        assert config.get_int("server.port", 8000) == 9100

    def test_invalid_number_uses_default(self, config_file, monkeypatch):
        monkeypatch.setenv("STARCHAT_LLM_TIMEOUT", "soon")
        config = ConfigManager(str(config_file))

        assert config.get_float("llm.timeout", 30.0) == 30.0

    def test_missing_file(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"))

        assert config.get("server.port", 8000) == 8000
        assert config.get_section("server") == {}

    def test_set_and_section(self, config_file):
        config = ConfigManager(str(config_file))
        config.set("memory.extra.flag", True)

        assert config.get("memory.extra.flag") is True
        assert config.get_section("memory")["long_term_weight"] == 0.6

    def test_reload(self, config_file):
        config = ConfigManager(str(config_file))
        config_file.write_text("server:\n  port: 7000\n", encoding="utf-8")

        config.reload()

        assert config.get("server.port") == 7000


class TestAppConfig:

    def test_defaults(self, tmp_path):
        config = AppConfig.load(str(tmp_path / "absent.yaml"))

        assert config.server_port == 8000
        assert config.llm_api_key_env == "LLM_API_KEY"
        assert config.long_term_weight == 1.0
        assert not config.is_production

    def test_load_from_file(self, config_file):
        config = AppConfig.load(str(config_file))

        assert config.server_host == "127.0.0.1"
        assert config.server_port == 9000
        assert config.llm_model == "star-chat-1"
        assert config.llm_timeout_seconds == 12.0
        assert config.long_term_weight == 0.6
        assert config.log_level == "DEBUG"

    def test_environment_override(self, config_file, monkeypatch):
        monkeypatch.setenv("STARCHAT_APP_ENVIRONMENT", "production")
        monkeypatch.setenv("STARCHAT_DATABASE_PATH", "/data/star.db")

        config = AppConfig.load(str(config_file))

        assert config.is_production
        assert config.database_path == "/data/star.db"
