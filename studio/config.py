from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # Database
    database_url: str = Field(..., alias='DATABASE_URL')

    # Providers
    fal_key: str = Field('', alias='FAL_KEY')
    fal_webhook_url: str = Field('', alias='FAL_WEBHOOK_URL')
    gemini_api_key: str = Field('', alias='GEMINI_API_KEY')
    provider_http_timeout_seconds: float = Field(120.0, alias='PROVIDER_HTTP_TIMEOUT_SECONDS')

    # Durable asset storage
    asset_storage_path: str = Field('/var/lib/studio/assets', alias='ASSET_STORAGE_PATH')
    public_asset_base_url: str = Field('http://127.0.0.1:9010/assets', alias='PUBLIC_ASSET_BASE_URL')
    asset_retention_days: int = Field(30, alias='ASSET_RETENTION_DAYS')

    # Generation limits
    per_user_max_concurrent_jobs: int = Field(4, alias='PER_USER_MAX_CONCURRENT_JOBS')
    max_prompt_length: int = Field(20000, alias='MAX_PROMPT_LENGTH')
    error_message_max_length: int = Field(500, alias='ERROR_MESSAGE_MAX_LENGTH')
    generation_maintenance: bool = Field(False, alias='GENERATION_MAINTENANCE')

    # Polling / reconciliation
    poll_backoff_sequence: str = Field('3', alias='POLL_BACKOFF_SEQUENCE')
    poll_max_wait_seconds: int = Field(300, alias='POLL_MAX_WAIT_SECONDS')
    poll_watch_interval_seconds: int = Field(30, alias='POLL_WATCH_INTERVAL_SECONDS')
    global_max_poll_concurrency: int = Field(10, alias='GLOBAL_MAX_POLL_CONCURRENCY')
    stale_processing_seconds: int = Field(600, alias='STALE_PROCESSING_SECONDS')
    recent_jobs_window_seconds: int = Field(7200, alias='RECENT_JOBS_WINDOW_SECONDS')
    queue_wait_per_position_seconds: int = Field(30, alias='QUEUE_WAIT_PER_POSITION_SECONDS')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(9010, alias='WEB_PORT')
    web_poll_enabled: bool = Field(True, alias='WEB_POLL_ENABLED')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def poll_backoff_list(self) -> List[int]:
        values = [int(x.strip()) for x in self.poll_backoff_sequence.split(',') if x.strip()]
        return values or [3]


@lru_cache

def get_settings() -> Settings:
    return Settings()
