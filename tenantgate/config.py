from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)

# Tokens, blacklist entries and sessions all share the same 4 hour window
DEFAULT_TOKEN_TTL_SECONDS = 4 * 60 * 60
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide gateway settings, read once at startup."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep tenants, users and sessions in process memory instead of Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("urn:issuer:api", "JWT_ISSUER")
    jwt_audience: str = env_field("urn:audience:api", "JWT_AUDIENCE")
    token_ttl_seconds: int = env_field(
        DEFAULT_TOKEN_TTL_SECONDS, "TOKEN_TTL_SECONDS", gt=0
    )
    token_clock_skew_seconds: int = env_field(15, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)
    session_ttl_seconds: int = env_field(
        DEFAULT_TOKEN_TTL_SECONDS, "SESSION_TTL_SECONDS", gt=0
    )
    ollama_url: str = env_field("http://localhost:11434", "OLLAMA_URL")
    inference_timeout_seconds: float = env_field(
        120.0,
        "INFERENCE_TIMEOUT_SECONDS",
        gt=0,
        description="Hard timeout for chat and model-list calls to the inference service",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("ollama_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH and not self.test_mode:
                logger.warning(
                    "jwt_secret_weak",
                    length=len(self.jwt_secret),
                    minimum=MIN_JWT_SECRET_LENGTH,
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Ephemeral secret: tokens do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self


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
