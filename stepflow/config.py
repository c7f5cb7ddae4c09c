from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepflow.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings resolved from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/stepflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/stepflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: stub agent, runtime reset allowed.",
    )
    # Agent / tool router collaborator
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    agent_model: str = env_field("gpt-4o-mini", "AGENT_MODEL")
    agent_timeout_seconds: float = env_field(
        120.0,
        "AGENT_TIMEOUT_SECONDS",
        description="HTTP timeout for tool router and model calls",
    )
    tool_router_url: str = env_field(
        "https://backend.composio.dev/api/v3/labs/tool_router", "TOOL_ROUTER_URL"
    )
    tool_router_api_key: str | None = env_field(None, "TOOL_ROUTER_API_KEY")
    tool_router_mcp_config_id: str | None = env_field(
        None, "TOOL_ROUTER_MCP_CONFIG_ID"
    )
    # Execution
    default_delay_ms: int = env_field(
        1000, "DEFAULT_DELAY_MS", description="Delay used when a delay step omits duration"
    )
    # Scheduling
    cron_secret: str | None = env_field(None, "CRON_SECRET")
    scheduler_enabled: bool = env_field(
        False,
        "SCHEDULER_ENABLED",
        description="Run the due-schedule scan inside the app process",
    )
    scheduler_poll_interval: int = env_field(60, "SCHEDULER_POLL_INTERVAL")
    schedule_batch_limit: int = env_field(25, "SCHEDULE_BATCH_LIMIT")
    # HTTP surface
    workflow_list_cache_ttl: int = env_field(60, "WORKFLOW_LIST_CACHE_TTL")
    session_ttl_minutes: int = env_field(60 * 24 * 7, "SESSION_TTL_MINUTES")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("redis_url", "openai_api_key", "cron_secret", "tool_router_api_key")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("scheduler_poll_interval", "schedule_batch_limit", "workflow_list_cache_ttl")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


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
