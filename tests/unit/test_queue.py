"""
Unit tests for SandboxQueueScheduler.

Tests delayed scheduling, replacement, cancellation, claiming and the
retry / dead letter path.
"""

import json
import time

import pytest
from unittest.mock import AsyncMock

from sandbox_pool.lifecycle.queue import SandboxQueueScheduler


class TestSandboxQueueScheduler:
    """Test the delayed job queue against an in-memory Redis."""

    @pytest.fixture
    def queue(self, redis_client):
        return SandboxQueueScheduler(redis_client, queue_name="q", max_retries=1)

    @pytest.mark.asyncio
    async def test_due_job_is_processed_once(self, queue, redis_client):
        handler = AsyncMock()
        await queue.setup_consumer(handler)
        await queue.schedule_message("pause:a", "pause", 0, {"sandbox_id": "a"})

        assert await queue.process_ready() == 1
        assert await queue.process_ready() == 0

        handler.assert_awaited_once_with("pause:a", "pause", {"sandbox_id": "a"})
        assert await redis_client.hget("q:messages", "pause:a") is None

    @pytest.mark.asyncio
    async def test_future_job_is_not_processed(self, queue):
        handler = AsyncMock()
        await queue.setup_consumer(handler)
        delivery_time = await queue.schedule_message("pause:a", "pause", 120)

        assert await queue.process_ready() == 0
        handler.assert_not_awaited()
        assert await queue.get_delivery_time("pause:a") == pytest.approx(delivery_time)

    @pytest.mark.asyncio
    async def test_reschedule_replaces_pending_job(self, queue, redis_client):
        await queue.schedule_message("pause:a", "pause", 60)
        await queue.schedule_message("pause:a", "pause", 120)

        assert await redis_client.zcard("q:delayed") == 1
        assert await queue.get_delivery_time("pause:a") > time.time() + 100

    @pytest.mark.asyncio
    async def test_cancel(self, queue, redis_client):
        await queue.schedule_message("pause:a", "pause", 60)

        assert await queue.cancel_message("pause:a") is True
        assert await queue.cancel_message("pause:a") is False
        assert await redis_client.zcard("q:delayed") == 0
        assert await queue.get_delivery_time("pause:a") is None

    @pytest.mark.asyncio
    async def test_failed_job_is_retried_with_backoff(self, queue):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        await queue.setup_consumer(handler)
        await queue.schedule_message("pause:a", "pause", 0)

        await queue.process_ready()

        # First retry is delayed by two minutes
        assert await queue.get_delivery_time("pause:a") > time.time() + 100

    @pytest.mark.asyncio
    async def test_job_moves_to_dead_letter_after_max_retries(self, redis_client):
        queue = SandboxQueueScheduler(redis_client, queue_name="q", max_retries=0)
        await queue.setup_consumer(AsyncMock(side_effect=RuntimeError("boom")))
        await queue.schedule_message("pause:a", "pause", 0)

        await queue.process_ready()

        dead = await redis_client.zrange("q:dead_letter", 0, -1)
        assert len(dead) == 1
        assert json.loads(dead[0])["job_id"] == "pause:a"
        assert await redis_client.zcard("q:delayed") == 0
        assert await queue.get_delivery_time("pause:a") is None

    @pytest.mark.asyncio
    async def test_start_requires_handler(self, queue):
        with pytest.raises(ValueError):
            await queue.start_consuming()

    @pytest.mark.asyncio
    async def test_start_and_stop_consuming(self, queue):
        await queue.setup_consumer(AsyncMock())
        await queue.start_consuming()
        assert queue.is_consuming
        assert queue.consumer_task is not None

        await queue.stop_consuming()
        assert not queue.is_consuming
        assert queue.consumer_task is None

    @pytest.mark.asyncio
    async def test_health_check(self, queue):
        assert await queue.health_check() is True
