"""Tests for the per-user workflow list cache."""

import pytest

from stepflow.storage.redis_cache import LocalTTLCache, workflow_list_key


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_list_keys_are_per_user_and_status():
    assert workflow_list_key("u1", None) == "workflows:u1:all"
    assert workflow_list_key("u1", "active") == "workflows:u1:active"


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = LocalTTLCache(ttl_seconds=60, clock=clock)
    await cache.set_workflow_list("u1", None, [{"id": "w1"}])
    assert await cache.get_workflow_list("u1", None) == [{"id": "w1"}]
    clock.now += 61
    assert await cache.get_workflow_list("u1", None) is None


@pytest.mark.asyncio
async def test_invalidate_clears_every_status_for_user():
    cache = LocalTTLCache(ttl_seconds=60)
    await cache.set_workflow_list("u1", None, [{"id": "w1"}])
    await cache.set_workflow_list("u1", "draft", [{"id": "w1"}])
    await cache.set_workflow_list("u2", None, [{"id": "w2"}])

    await cache.invalidate_workflow_lists("u1")

    assert await cache.get_workflow_list("u1", None) is None
    assert await cache.get_workflow_list("u1", "draft") is None
    assert await cache.get_workflow_list("u2", None) == [{"id": "w2"}]


@pytest.mark.asyncio
async def test_cached_payload_is_a_copy():
    cache = LocalTTLCache(ttl_seconds=60)
    payload = [{"id": "w1"}]
    await cache.set_workflow_list("u1", None, payload)
    payload[0]["id"] = "mutated"
    assert await cache.get_workflow_list("u1", None) == [{"id": "w1"}]
