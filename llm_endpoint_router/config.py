from __future__ import annotations

import os
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RequestTransformer = Callable[[dict[str, Any], Any], dict[str, Any]]
ResponseTransformer = Callable[[dict[str, Any]], dict[str, Any]]


class ProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    VERTEX = "vertex"
    CUSTOM = "custom"


_PROVIDER_TYPE_ALIASES = {
    "openrouter": ProviderType.OPENAI,
    "openai-compatible": ProviderType.OPENAI,
    "google": ProviderType.GEMINI,
    "google-gemini": ProviderType.GEMINI,
    "google-vertex": ProviderType.VERTEX,
}


class DirectFallbackPolicy(str, Enum):
    ANY_ERROR = "any_error"
    UPSTREAM_ONLY = "upstream_only"


class EndpointConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    base_url: str
    api_key: str | None = None
    api_key_env: str | None = None
    type: ProviderType = ProviderType.OPENAI
    organization_id: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    path: str | None = None
    request_transformer: RequestTransformer | None = Field(default=None, exclude=True)
    response_transformer: ResponseTransformer | None = Field(
        default=None, exclude=True
    )

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return _PROVIDER_TYPE_ALIASES.get(normalized, normalized)
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("base_url must not be empty.")
        return normalized

    def resolved_api_key(self) -> str | None:
        if self.api_key_env:
            env_value = os.getenv(self.api_key_env, "").strip()
            if env_value:
                return env_value
        return self.api_key

    def public_view(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "type": self.type.value,
            "organization_id": self.organization_id,
            "has_api_key": bool(self.resolved_api_key()),
            "custom_transforms": bool(
                self.request_transformer or self.response_transformer
            ),
        }


class RouterConfig(BaseModel):
    default_endpoint_id: str
    endpoints: dict[str, EndpointConfig] = Field(default_factory=dict)
    enable_direct_providers: bool = True
    direct_fallback_policy: DirectFallbackPolicy = DirectFallbackPolicy.ANY_ERROR
    requests_per_minute: int = 60
    request_timeout_seconds: float = 30.0
    stream_timeout_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0
    max_retries: int = 0
    retry_base_delay_seconds: float = 1.0
    retry_statuses: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])

    @model_validator(mode="after")
    def _check_default_endpoint(self) -> RouterConfig:
        if self.endpoints and self.default_endpoint_id not in self.endpoints:
            raise ValueError(
                f"default_endpoint_id '{self.default_endpoint_id}' is not one of the "
                f"configured endpoints: {', '.join(sorted(self.endpoints))}."
            )
        return self

    @field_validator("requests_per_minute", "max_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, value)


def load_router_config(config_path: str | Path) -> RouterConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Router config not found at '{config_path}'. "
            "Create it or set ROUTER_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return RouterConfig.model_validate(raw)
