from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    router_config_path: str = "router.yaml"
    log_level: str = "INFO"
    http_connect_timeout_seconds: float = 5.0
    http_read_timeout_seconds: float = 60.0
    http_write_timeout_seconds: float = 30.0
    http_pool_timeout_seconds: float = 5.0
    http_max_connections: int = 256
    http_max_keepalive_connections: int = 64
    router_audit_log_enabled: bool = False
    router_audit_log_path: str = "logs/router_events.jsonl"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
