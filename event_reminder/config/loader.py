"""Configuration loader that merges base + environment specific YAML files."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_DIR = PROJECT_ROOT / "config"


class CalendarConfig(BaseModel):
    # 表示・比較に使う固定タイムゾーン
    timezone: str = "Asia/Kuala_Lumpur"


class ReminderConfig(BaseModel):
    interval_sec: int = Field(ge=1, default=60)
    friend_concurrency: bool = True


class TelegramConfig(BaseModel):
    api_base: str = "https://api.telegram.org"
    request_timeout_sec: float = Field(ge=1, default=10)


class DatabaseConfig(BaseModel):
    url: str | None = None
    echo: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig | None = None
    mode: str = "dev"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(base_value, value)
        else:
            merged[key] = value
    return merged


def load_config(app_env: str | None = None, *, config_dir: Path | None = None) -> AppConfig:
    """Load configuration for the provided environment (defaults to APP_ENV)."""

    load_dotenv()
    config_path = config_dir or DEFAULT_CONFIG_DIR
    env_name = app_env or os.getenv("APP_ENV", "dev")

    base_config = _load_yaml(config_path / "base.yaml")
    env_file = config_path / f"{env_name}.yaml"
    env_config: Dict[str, Any] = {}
    if env_file.exists():
        env_config = _load_yaml(env_file)

    merged = _deep_merge(base_config, env_config)
    merged.setdefault("mode", env_name)

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        merged = _deep_merge(merged, {"database": {"url": database_url}})

    return AppConfig.model_validate(merged)


__all__ = [
    "CalendarConfig",
    "ReminderConfig",
    "TelegramConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "AppConfig",
    "load_config",
]
