"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

from flowchart_ai.services.retry import RetryConfig
from flowchart_ai.services.sessions import SessionConfig

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    deepseek_api_key: str
    deepseek_base_url: str = "https://api.deepseek.com/v1"
    deepseek_model: str = "deepseek-chat"
    deepseek_timeout_seconds: float = 45.0
    renderer_base_url: str = "https://kroki.io"
    renderer_timeout_seconds: float = 10.0
    admin_token: str
    max_sessions: int = 100
    session_timeout_seconds: float = 300.0
    cleanup_interval_seconds: float = 60.0
    duplicate_window_seconds: float = 30.0
    min_requirement_length: int = 10
    max_requirement_length: int = 5000
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_range: float = 0.1
    render_cache_size: int = 1000
    render_cache_ttl_seconds: float = 1800.0
    max_batch_size: int = 20
    max_validation_batch_size: int = 10
    max_analysis_batch_size: int = 10
    environment: str = _ENVIRONMENT
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    def retry_config(self) -> RetryConfig:
        """Build the retry policy for generation calls."""
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter_range=self.retry_jitter_range,
        )

    def session_config(self) -> SessionConfig:
        """Build the session store limits."""
        return SessionConfig(
            max_sessions=self.max_sessions,
            session_timeout_seconds=self.session_timeout_seconds,
            cleanup_interval_seconds=self.cleanup_interval_seconds,
            duplicate_window_seconds=self.duplicate_window_seconds,
            min_requirement_length=self.min_requirement_length,
            max_requirement_length=self.max_requirement_length,
        )
