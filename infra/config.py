"""
Configuration
-------------
Loads configuration from YAML with environment variable overrides.

Rules:
- Secrets never in config files, only the name of the env var holding them
- STARCHAT_<SECTION>_<KEY> overrides the file value
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import os

import yaml

ENV_PREFIX = "STARCHAT"


class ConfigManager:
    """
    Centralized configuration management.
    Supports dot notation: 'section.key'.
    """

    def __init__(self, config_path: str = "config.yaml"):
        self._config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._logger = logging.getLogger("starchat.infra.config")

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file."""
        if self._config_path.exists():
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._config = {}
            self._logger.debug(f"Config file not found: {self._config_path}, using defaults")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Environment variables override file config.
        """
        env_key = f"{ENV_PREFIX}_{key.upper().replace('.', '_')}"
        env_value = os.getenv(env_key)
        if env_value is not None:
            return env_value

        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            self._logger.warning(f"Invalid integer for {key}: {value!r}, using {default}")
            return default

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            self._logger.warning(f"Invalid number for {key}: {value!r}, using {default}")
            return default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value (runtime only, not persisted)."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if part not in config:
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get an entire configuration section."""
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


@dataclass
class AppConfig:
    """Typed settings for the whole application."""
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    database_path: str = "starchat.db"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-3.5-turbo"
    llm_timeout_seconds: float = 30.0
    llm_api_key_env: str = "LLM_API_KEY"  # Environment variable name (NOT the actual key)
    long_term_weight: float = 1.0
    log_level: str = "INFO"
    environment: str = "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "AppConfig":
        """Build settings from a YAML file plus environment overrides."""
        manager = ConfigManager(config_path or "config.yaml")
        defaults = cls()
        return cls(
            server_host=str(manager.get("server.host", defaults.server_host)),
            server_port=manager.get_int("server.port", defaults.server_port),
            database_path=str(manager.get("database.path", defaults.database_path)),
            llm_base_url=str(manager.get("llm.base_url", defaults.llm_base_url)),
            llm_model=str(manager.get("llm.model", defaults.llm_model)),
            llm_timeout_seconds=manager.get_float("llm.timeout", defaults.llm_timeout_seconds),
            llm_api_key_env=str(manager.get("llm.api_key_env", defaults.llm_api_key_env)),
            long_term_weight=manager.get_float("memory.long_term_weight", defaults.long_term_weight),
            log_level=str(manager.get("logging.level", defaults.log_level)).upper(),
            environment=str(manager.get("app.environment", defaults.environment)),
        )
