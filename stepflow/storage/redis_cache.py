from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from stepflow.storage.models import WORKFLOW_STATUSES

DEFAULT_LIST_TTL_SECONDS = 60


def workflow_list_key(user_id: str, status: Optional[str]) -> str:
    return f"workflows:{user_id}:{status or 'all'}"


def _all_list_keys(user_id: str) -> List[str]:
    return [workflow_list_key(user_id, None)] + [
        workflow_list_key(user_id, status) for status in WORKFLOW_STATUSES
    ]


def _decode(cached: Optional[str]) -> Optional[List[dict]]:
    if not cached:
        return None
    try:
        payload = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entry counts as a miss
        return None
    return payload if isinstance(payload, list) else None


class RedisCache:
    """Redis-backed cache for per-user workflow listings."""

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = DEFAULT_LIST_TTL_SECONDS,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_workflow_list(
        self, user_id: str, status: Optional[str]
    ) -> Optional[List[dict]]:
        return _decode(await self.client.get(workflow_list_key(user_id, status)))

    async def set_workflow_list(
        self, user_id: str, status: Optional[str], payload: List[dict]
    ) -> None:
        await self.client.set(
            workflow_list_key(user_id, status),
            json.dumps(payload, default=str),
            ex=self.ttl_seconds,
        )

    async def invalidate_workflow_lists(self, user_id: str) -> None:
        await self.client.delete(*_all_list_keys(user_id))

    async def close(self) -> None:
        """Close the connection pool when the runtime is torn down."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the async cache interface.

    Used in tests so pytest's per-test event loops never bind the client.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = DEFAULT_LIST_TTL_SECONDS,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get_workflow_list(
        self, user_id: str, status: Optional[str]
    ) -> Optional[List[dict]]:
        return _decode(self.client.get(workflow_list_key(user_id, status)))

    async def set_workflow_list(
        self, user_id: str, status: Optional[str], payload: List[dict]
    ) -> None:
        self.client.set(
            workflow_list_key(user_id, status),
            json.dumps(payload, default=str),
            ex=self.ttl_seconds,
        )

    async def invalidate_workflow_lists(self, user_id: str) -> None:
        self.client.delete(*_all_list_keys(user_id))

    async def close(self) -> None:
        self.client.close()


class LocalTTLCache:
    """Per-process fallback used when Redis is unavailable."""

    def __init__(self, *, ttl_seconds: int = DEFAULT_LIST_TTL_SECONDS, clock=None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    async def get_workflow_list(
        self, user_id: str, status: Optional[str]
    ) -> Optional[List[dict]]:
        key = workflow_list_key(user_id, status)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return json.loads(payload)

    async def set_workflow_list(
        self, user_id: str, status: Optional[str], payload: List[dict]
    ) -> None:
        key = workflow_list_key(user_id, status)
        with self._lock:
            self._entries[key] = (
                self._clock() + self.ttl_seconds,
                json.dumps(payload, default=str),
            )

    async def invalidate_workflow_lists(self, user_id: str) -> None:
        with self._lock:
            for key in _all_list_keys(user_id):
                self._entries.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
