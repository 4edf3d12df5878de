from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigError(ValueError):
    """Raised when the router configuration cannot produce a working routing table."""


class BackendConfig(BaseModel):
    url: str
    weight: int = 1
    label: str | None = None

    @field_validator("url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Backend url must not be empty.")
        return normalized

    @field_validator("label")
    @classmethod
    def _strip_label(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError("Backend label must not be empty when provided.")
        return normalized


class ProxyConfig(BaseModel):
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float | None = None
    max_connections: int = 512
    max_keepalive_connections: int = 128


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = 30.0
    timeout_seconds: float = 5.0
    method: str = "getSlot"
    consecutive_failures_threshold: int = 3
    consecutive_successes_threshold: int = 2


class RouterConfig(BaseModel):
    port: int = 28899
    api_keys: list[str] = Field(default_factory=list)
    backends: list[BackendConfig] = Field(default_factory=list)
    method_routes: dict[str, str] = Field(default_factory=dict)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)

    @field_validator("api_keys", mode="before")
    @classmethod
    def _coerce_api_keys(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("Expected 'api_keys' to be a list of strings.")
        keys: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("API keys must be strings.")
            if item:
                keys.append(item)
        return keys

    @field_validator("method_routes", mode="before")
    @classmethod
    def _coerce_method_routes(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        return value

    def validate_semantics(self) -> None:
        if not self.api_keys:
            raise ConfigError("At least one API key must be configured.")
        if not self.backends:
            raise ConfigError("At least one backend must be configured.")

        labels: set[str] = set()
        for backend in self.backends:
            if backend.weight <= 0:
                raise ConfigError(
                    f"Backend '{backend.label or backend.url}' has invalid weight {backend.weight}."
                )
            if backend.label is None:
                continue
            if backend.label in labels:
                raise ConfigError(f"Duplicate backend label '{backend.label}'.")
            labels.add(backend.label)

        if self.proxy.timeout_seconds <= 0:
            raise ConfigError("proxy.timeout_seconds must be > 0.")
        if self.health_check.enabled and self.health_check.interval_seconds <= 0:
            raise ConfigError("health_check.interval_seconds must be > 0.")


def load_router_config(config_path: str | Path) -> RouterConfig:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(
            f"Router config not found at '{config_path}'. "
            "Create it or set ROUTER_CONFIG_PATH."
        )

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in '{config_path}': {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected YAML object in '{config_path}'.")

    try:
        config = RouterConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid router config '{config_path}': {exc}") from exc

    config.validate_semantics()
    return config
