"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Page-view event database
    database_url: str = "sqlite:///./funnel.db"

    # Cache backend (in-memory store when no Redis URL is configured)
    cache_enabled: bool = True
    cache_key_prefix: str = "funnel"
    redis_url: Optional[str] = None
    redis_socket_timeout: float = 5.0

    # Admission control: hard ceiling on concurrent backend queries.
    # 30 of the 35 pooled connections; the rest stay free for other work.
    admission_max_concurrent: int = 30
    admission_threshold_green: int = 15   # 0-15 active: normal operation
    admission_threshold_yellow: int = 22  # 16-22 active: queue heavy requests
    admission_threshold_orange: int = 27  # 23-27 active: queue non-critical charts
    admission_queue_timeout_seconds: Optional[float] = 30.0
    admission_poll_interval_seconds: float = 0.1
    admission_history_window_seconds: int = 300

    # Cache warming
    cache_warming_enabled: bool = False
    cache_warming_batch_size: int = 2

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
