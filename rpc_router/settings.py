from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    router_config_path: str = "config.yaml"
    router_host: str = "0.0.0.0"
    router_port: int | None = None
    router_request_log_enabled: bool = False
    router_request_log_path: str = "logs/rpc_requests.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
