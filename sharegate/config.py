from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sharegate.logging import get_logger

logger = get_logger(__name__)


class ConnectionStoreBackend(str, Enum):
    """Where WebSocket connection records live.

    - MEMORY: process-local map, single instance deployments only
    - REDIS: shared store so any instance can serve any connection's frames
    """

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the broker."""

    # Transient session tokens
    client_auth_secret: str | None = env_field(None, "CLIENT_AUTH_SECRET")
    token_issuer: str = env_field("sharegate", "TOKEN_ISSUER")
    transient_token_ttl_seconds: int = env_field(
        600,
        "TRANSIENT_TOKEN_TTL_SECONDS",
        description="Lifetime of the authToken returned by /resource/get",
    )
    allow_ephemeral_secret: bool = env_field(
        False,
        "ALLOW_EPHEMERAL_SECRET",
        description="Generate a random signing secret when CLIENT_AUTH_SECRET is unset. "
        "Tokens then only verify inside this process.",
    )

    # Connection store
    connection_store: ConnectionStoreBackend = env_field(
        ConnectionStoreBackend.MEMORY, "CONNECTION_STORE"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    ws_connections_ttl_hours: int = env_field(24, "WS_CONNECTIONS_TTL_HOURS")
    connection_sweep_interval_seconds: int = env_field(
        60, "CONNECTION_SWEEP_INTERVAL_SECONDS"
    )

    # Transport
    http_base_path: str = env_field("", "HTTP_BASE_PATH")
    ws_path: str = env_field("/ws", "WS_PATH")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Backend (core) API
    backend_base_url: str = env_field("http://localhost:8080", "BACKEND_BASE_URL")
    backend_token: str | None = env_field(None, "BACKEND_TOKEN")
    backend_request_timeout_seconds: float = env_field(
        30.0, "BACKEND_REQUEST_TIMEOUT_SECONDS"
    )
    backend_max_retries: int = env_field(2, "BACKEND_MAX_RETRIES")
    backend_retry_base_delay_ms: int = env_field(250, "BACKEND_RETRY_BASE_DELAY_MS")
    backend_retry_max_delay_ms: int = env_field(4000, "BACKEND_RETRY_MAX_DELAY_MS")
    backend_tls_insecure: bool = env_field(False, "BACKEND_TLS_INSECURE")

    # Error notifications
    slack_webhook_url: str | None = env_field(None, "SLACK_WEBHOOK_URL")

    stage: str = env_field("dev", "STAGE")
    is_offline: bool = env_field(False, "IS_OFFLINE")
    build_sha: str = env_field("dev", "BUILD_SHA")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (ephemeral secret allowed).",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("connection_store")
    @classmethod
    def _validate_store(cls, value: ConnectionStoreBackend) -> ConnectionStoreBackend:
        return ConnectionStoreBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("http_base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        value = (value or "").strip()
        if not value or value == "/":
            return ""
        return "/" + value.strip("/")

    @model_validator(mode="after")
    def _ensure_client_auth_secret(self) -> "Settings":
        if self.client_auth_secret:
            return self
        if not (self.test_mode or self.allow_ephemeral_secret):
            raise ValueError(
                "CLIENT_AUTH_SECRET is required; set ALLOW_EPHEMERAL_SECRET=true only for "
                "single-process local runs"
            )
        # Tokens signed with this secret cannot be verified by any other instance
        logger.warning(
            "client_auth_secret_ephemeral",
            message="CLIENT_AUTH_SECRET not set; using a random per-process secret",
        )
        self.client_auth_secret = secrets.token_urlsafe(64)
        return self

    @property
    def tls_verify(self) -> bool:
        # Insecure TLS is a local development escape hatch only
        return not (self.backend_tls_insecure and self.is_offline)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
