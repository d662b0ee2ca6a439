"""
Unit tests for SandboxStorage: metadata TTLs, idle queues and the active set.
"""

import time

import pytest

from sandbox_pool.models.exceptions import ResourceExhaustedError
from sandbox_pool.models.payload import SandboxMetadata, SandboxState


def _metadata(sandbox_id="sbx-1", remaining=600):
    now = time.time()
    return SandboxMetadata(
        sandbox_id=sandbox_id,
        affinity_key="canvas-1",
        uid="user-1",
        cwd="/mnt/drive",
        created_at=now,
        timeout_at=now + remaining,
        state=SandboxState.IDLE,
    )


class TestMetadata:
    """Test metadata persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, storage, redis_client):
        assert await storage.save_metadata(_metadata(), 600.9) is True

        loaded = await storage.load_metadata("sbx-1")
        assert loaded.sandbox_id == "sbx-1"
        assert loaded.state == SandboxState.IDLE
        assert 0 < await redis_client.ttl("test:meta:sbx-1") <= 600

    @pytest.mark.asyncio
    async def test_spent_budget_is_not_saved(self, storage):
        await storage.save_metadata(_metadata(), 600)

        assert await storage.save_metadata(_metadata(), 0.5) is False
        assert await storage.load_metadata("sbx-1") is None

    @pytest.mark.asyncio
    async def test_unreadable_record_is_dropped(self, storage, redis_client):
        await redis_client.set("test:meta:sbx-1", "{not json")

        assert await storage.load_metadata("sbx-1") is None
        assert await redis_client.exists("test:meta:sbx-1") == 0

    @pytest.mark.asyncio
    async def test_delete_removes_idle_entry(self, storage):
        await storage.save_metadata(_metadata(), 600)
        await storage.push_idle("canvas-1", "sbx-1")

        await storage.delete_metadata("sbx-1", "canvas-1")

        assert await storage.load_metadata("sbx-1") is None
        assert await storage.idle_length("canvas-1") == 0


class TestIdleQueue:
    """Test per-partition idle queues."""

    @pytest.mark.asyncio
    async def test_pop_empty_partition_returns_none(self, storage):
        assert await storage.pop_idle("nobody") is None

    @pytest.mark.asyncio
    async def test_fifo_and_no_duplicates(self, storage):
        await storage.push_idle("canvas-1", "a")
        await storage.push_idle("canvas-1", "b")
        await storage.push_idle("canvas-1", "a")

        assert await storage.idle_length("canvas-1") == 2
        assert await storage.pop_idle("canvas-1") == "b"
        assert await storage.pop_idle("canvas-1") == "a"

    @pytest.mark.asyncio
    async def test_partitions_are_isolated(self, storage):
        await storage.push_idle("canvas-1", "a")

        assert await storage.pop_idle("canvas-2") is None
        assert await storage.pop_idle("canvas-1") == "a"

    @pytest.mark.asyncio
    async def test_pop_refreshes_ttl_or_deletes_key(self, storage, redis_client):
        await storage.push_idle("canvas-1", "a", ttl_seconds=100)
        await storage.push_idle("canvas-1", "b", ttl_seconds=100)

        await storage.pop_idle("canvas-1")
        assert await redis_client.ttl("test:idle:canvas-1") > 100

        await storage.pop_idle("canvas-1")
        assert await redis_client.exists("test:idle:canvas-1") == 0


class TestActiveSet:
    """Test capacity accounting."""

    @pytest.mark.asyncio
    async def test_reserve_slot_enforces_capacity(self, storage):
        await storage.reserve_slot(2, 60)
        await storage.reserve_slot(2, 60)

        with pytest.raises(ResourceExhaustedError) as excinfo:
            await storage.reserve_slot(2, 60)

        assert excinfo.value.current == 2
        assert excinfo.value.maximum == 2
        assert "2/2" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_expired_lease_frees_slot(self, storage):
        await storage.reserve_slot(1, -1)

        assert await storage.reserve_slot(1, 60)
        assert await storage.count_active() == 1

    @pytest.mark.asyncio
    async def test_activate_and_deactivate(self, storage, redis_client):
        slot_id = await storage.reserve_slot(2, 60)
        await storage.activate(slot_id, "sbx-1", 60)

        assert await redis_client.zscore("test:active", slot_id) is None
        assert await redis_client.zscore("test:active", "sbx-1") is not None
        assert await storage.count_active() == 1

        await storage.deactivate("sbx-1")
        assert await storage.count_active() == 0
