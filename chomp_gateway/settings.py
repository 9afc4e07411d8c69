from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    routers_config_path: str = "routers.yaml"
    redis_url: str | None = None
    job_ttl_seconds: int = 86400
    job_index_cap: int = 100
    jobs_list_limit: int = 50
    sync_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float | None = None
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 10.0
    upstream_metadata_timeout_seconds: float = 30.0
    poll_max_attempts: int = 10
    poll_base_delay_seconds: float = 1.0
    poll_timeout_seconds: float = 60.0
    model_catalog_url: str = "https://openrouter.ai/api/v1/models"
    model_catalog_cache_seconds: float = 900.0
    model_catalog_timeout_seconds: float = 30.0
    resolve_auto_before_enqueue: bool = False
    validate_legacy_keys: bool = True
    allow_env_keys: bool = False
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/jobs.jsonl"
    background_drain_timeout_seconds: float = 130.0
    cors_allow_origin: str = "*"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
