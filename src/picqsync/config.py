"""应用配置管理."""

from datetime import datetime
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Picqer API 配置
    picqer_api_url: str = ""
    picqer_api_key: str = ""
    picqer_user_agent: str = "picqsync (https://github.com/picqsync/picqsync)"
    request_timeout_seconds: float = 30.0
    # 所有实体共享的请求节奏（None 或 0 表示不限速）
    picqer_requests_per_minute: int | None = 30

    # 数据库配置
    database_url: str = "sqlite+aiosqlite:///./picqsync.db"

    # 调度配置
    sync_interval_minutes: int = 30
    scheduler_enabled: bool = True

    # 同步配置
    sync_page_size: int = 100
    sync_page_delay_seconds: float = 0.5
    sync_concurrency: int = 3
    full_sync_start: datetime = datetime(2025, 1, 1)
    incremental_floor_days: int = 30

    # 限流配置（None 表示无限重试）
    rate_limit_sleep_seconds: float = 20.0
    rate_limit_max_sleep_seconds: float = 300.0
    rate_limit_max_retries: int | None = 10


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
