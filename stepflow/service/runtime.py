from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from openai import AsyncOpenAI

from stepflow.config import get_settings, reset_settings_cache
from stepflow.logging import get_logger
from stepflow.service.agent import StubAgent, ToolRouterAgent
from stepflow.service.auth import AuthService
from stepflow.service.coordinator import ExecutionCoordinator
from stepflow.service.invoker import StepInvoker
from stepflow.service.parser import WorkflowParser
from stepflow.service.schedules import ScheduleService, ScheduleWorker
from stepflow.service.workflows import WorkflowService
from stepflow.storage.memory import MemoryStore
from stepflow.storage.postgres import PostgresStore
from stepflow.storage.redis_cache import LocalTTLCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        ttl = self.settings.workflow_list_cache_ttl
        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url, ttl_seconds=ttl)
                else:
                    cache = RedisCache(self.settings.redis_url, ttl_seconds=ttl)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the workflow list cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
        self.list_cache = self.cache or LocalTTLCache(ttl_seconds=ttl)

        if self.settings.openai_api_key and not self.settings.test_mode:
            self.agent = ToolRouterAgent(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                model=self.settings.agent_model,
                tool_router_url=self.settings.tool_router_url,
                tool_router_api_key=self.settings.tool_router_api_key,
                mcp_config_id=self.settings.tool_router_mcp_config_id,
                timeout=self.settings.agent_timeout_seconds,
            )
        else:
            self.agent = StubAgent()

        self.invoker = StepInvoker(
            self.agent, default_delay_ms=self.settings.default_delay_ms
        )
        self.coordinator = ExecutionCoordinator(self.store, self.invoker)
        self.workflows = WorkflowService(self.store, self.coordinator, self.list_cache)
        self.schedules = ScheduleService(
            self.store, self.coordinator, batch_limit=self.settings.schedule_batch_limit
        )
        self.schedule_worker = ScheduleWorker(
            self.schedules, poll_interval=self.settings.scheduler_poll_interval
        )
        self.auth = AuthService(self.store, self.settings)
        llm = None
        if self.settings.openai_api_key and not self.settings.test_mode:
            llm = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                timeout=self.settings.agent_timeout_seconds,
            )
        self.parser = WorkflowParser(llm, model=self.settings.agent_model)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            agent=type(self.agent).__name__,
            scheduler_enabled=self.settings.scheduler_enabled,
        )

    async def close(self) -> None:
        await self.schedule_worker.stop()
        await self.coordinator.shutdown()
        await self.list_cache.close()
        await self.agent.close()
        await self.parser.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
