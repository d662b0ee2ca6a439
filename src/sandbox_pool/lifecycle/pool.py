"""Sandbox pool coordinating acquire and release across processes."""

import logging
from typing import Optional, Type

from redis.asyncio import Redis

from sandbox_pool.config import SandboxPoolConfig
from sandbox_pool.lifecycle.auto_pause import AutoPauseScheduler
from sandbox_pool.lifecycle.lock import LockManager
from sandbox_pool.lifecycle.queue import SandboxQueueScheduler
from sandbox_pool.lifecycle.storage import SandboxStorage
from sandbox_pool.lifecycle.wrapper import SandboxWrapper
from sandbox_pool.models.exceptions import SandboxConnectionError
from sandbox_pool.models.payload import ExecutionContext, PoolStats, SandboxState
from sandbox_pool.sandboxes.base import BaseSandbox
from sandbox_pool.sandboxes.sandbox_factory import SandboxFactory

logger = logging.getLogger(__name__)


class SandboxPool:
    """Bounded pool of sandboxes partitioned by affinity key.

    ``acquire`` hands a sandbox to exactly one caller until ``release``.
    Capacity is enforced with an active set in Redis whose size never
    exceeds ``max_sandboxes``.
    """

    def __init__(
        self,
        config: SandboxPoolConfig,
        storage: SandboxStorage,
        lock: LockManager,
        auto_pause: AutoPauseScheduler,
        provider: Type[BaseSandbox],
    ):
        self.config = config
        self.storage = storage
        self.lock = lock
        self.auto_pause = auto_pause
        self.provider = provider

    async def start(self) -> None:
        await self.auto_pause.start()
        logger.info("Sandbox pool started")

    async def shutdown(self) -> None:
        await self.auto_pause.stop()
        logger.info("Sandbox pool stopped")

    async def get_stats(self) -> PoolStats:
        return PoolStats(
            active=await self.storage.count_active(), max=self.config.max_sandboxes
        )

    async def acquire(self, context: ExecutionContext) -> SandboxWrapper:
        """Reuse an idle sandbox of ``context.affinity_key`` or create a new one.

        Raises:
            ResourceExhaustedError: ``max_sandboxes`` sandboxes are in use
            QueueOverloadedError: the creation or sandbox lock stayed busy too long
            SandboxCreationError: no sandbox could be created
        """
        lease = self.config.active_lease_seconds
        slot_id = await self.storage.reserve_slot(self.config.max_sandboxes, lease)
        wrapper = None
        try:
            wrapper = await self._reuse_idle(context)
            if wrapper is None:
                wrapper = await self._create_under_lock(context)
            await self.storage.activate(slot_id, wrapper.sandbox_id, lease)
        except BaseException:
            if wrapper is not None:
                await self.release(wrapper)
            await self.storage.deactivate(slot_id)
            raise

        logger.info(f"Sandbox {wrapper.sandbox_id} acquired for {context.affinity_key}")
        return wrapper

    async def _create_under_lock(self, context: ExecutionContext) -> SandboxWrapper:
        async with self.lock.hold(
            LockManager.creation_key(context.affinity_key),
            self.config.lock_ttl_seconds,
            wait_timeout_seconds=self.config.lock_wait_timeout_seconds,
        ):
            # Another caller may have released one while we waited
            wrapper = await self._reuse_idle(context)
            if wrapper is not None:
                return wrapper

            wrapper = await SandboxWrapper.create(context, self.config, self.provider)
            wrapper.mark_as_running()
            try:
                await self.storage.save_metadata(
                    wrapper.to_metadata(), wrapper.remaining_seconds()
                )
            except Exception:
                await self._kill_quietly(wrapper)
                raise
            return wrapper

    async def _reuse_idle(self, context: ExecutionContext) -> Optional[SandboxWrapper]:
        partition = context.affinity_key
        while True:
            sandbox_id = await self.storage.pop_idle(partition)
            if sandbox_id is None:
                logger.debug(f"No idle sandbox for {partition}")
                return None

            await self._cancel_pause(sandbox_id)
            try:
                wrapper = await self._reconnect(sandbox_id, context)
            except BaseException:
                await self._restore_idle(partition, sandbox_id)
                raise
            if wrapper is not None:
                return wrapper

    async def _restore_idle(self, partition: str, sandbox_id: str) -> None:
        # Popped but not handed out: put it back and re-arm its pause
        try:
            await self.storage.push_idle(partition, sandbox_id)
            await self.auto_pause.schedule(sandbox_id, self.config.auto_pause_delay_seconds)
            logger.info(f"Sandbox {sandbox_id} returned to idle pool after failed reuse")
        except Exception as e:
            logger.warning(f"Failed to return sandbox {sandbox_id} to idle pool: {e}")

    async def _reconnect(
        self, sandbox_id: str, context: ExecutionContext
    ) -> Optional[SandboxWrapper]:
        metadata = await self.storage.load_metadata(sandbox_id)
        if metadata is None:
            logger.debug(f"Idle sandbox {sandbox_id} has no metadata, skipping")
            return None
        if metadata.is_expired():
            logger.debug(f"Idle sandbox {sandbox_id} has expired, skipping")
            await self._delete_metadata(sandbox_id)
            return None

        # Serialises with a pause job that may be running for this sandbox
        async with self.lock.hold(
            LockManager.sandbox_key(sandbox_id),
            self.config.pause_lock_ttl_seconds,
            wait_timeout_seconds=self.config.lock_wait_timeout_seconds,
        ):
            metadata = await self.storage.load_metadata(sandbox_id) or metadata
            try:
                wrapper = await SandboxWrapper.reconnect(
                    context, metadata, self.config, self.provider
                )
            except SandboxConnectionError as e:
                logger.warning(f"Failed to reuse idle sandbox {sandbox_id}: {e}")
                await self._delete_metadata(sandbox_id)
                return None

            wrapper.mark_as_running()
            try:
                await self.storage.save_metadata(
                    wrapper.to_metadata(), wrapper.remaining_seconds()
                )
            except Exception as e:
                logger.warning(f"Failed to mark sandbox {sandbox_id} as running: {e}")
        return wrapper

    async def release(self, wrapper: SandboxWrapper) -> None:
        """Return a sandbox to the idle pool, or discard it. Never raises."""
        sandbox_id = wrapper.sandbox_id
        logger.debug(f"Releasing sandbox {sandbox_id}")
        try:
            await self._return_or_discard(wrapper)
        except Exception as e:
            logger.warning(f"Failed to return sandbox {sandbox_id} to idle pool: {e}")
            await self._delete_metadata(sandbox_id, wrapper.affinity_key)
        finally:
            try:
                await self.storage.deactivate(sandbox_id)
            except Exception as e:
                logger.warning(f"Failed to remove sandbox {sandbox_id} from active set: {e}")

    async def _return_or_discard(self, wrapper: SandboxWrapper) -> None:
        sandbox_id = wrapper.sandbox_id

        try:
            await wrapper.extend_timeout(self.config.release_extend_seconds)
        except Exception as e:
            logger.warning(f"Failed to extend timeout of sandbox {sandbox_id}: {e}")

        healthy = await wrapper.health_check()
        remaining = wrapper.remaining_seconds()
        if not healthy or remaining < self.config.min_remaining_seconds:
            logger.info(
                f"Discarding sandbox {sandbox_id} (healthy={healthy}, remaining={remaining:.0f}s)"
            )
            await self._discard(wrapper)
            return

        wrapper.mark_as_idle()
        if not await self.storage.save_metadata(wrapper.to_metadata(), remaining):
            await self._discard(wrapper)
            return
        await self.storage.push_idle(wrapper.affinity_key, sandbox_id)
        await self.auto_pause.schedule(sandbox_id, self.config.auto_pause_delay_seconds)
        logger.info(f"Sandbox {sandbox_id} released to idle pool")

    async def _discard(self, wrapper: SandboxWrapper) -> None:
        wrapper.state = SandboxState.DISCARDED
        await self._delete_metadata(wrapper.sandbox_id, wrapper.affinity_key)
        await self._cancel_pause(wrapper.sandbox_id)
        await self._kill_quietly(wrapper)

    async def _cancel_pause(self, sandbox_id: str) -> None:
        try:
            await self.auto_pause.cancel(sandbox_id)
        except Exception as e:
            logger.warning(f"Failed to cancel auto-pause of sandbox {sandbox_id}: {e}")

    async def _delete_metadata(self, sandbox_id: str, partition: Optional[str] = None) -> None:
        try:
            await self.storage.delete_metadata(sandbox_id, partition)
        except Exception as e:
            logger.warning(f"Failed to delete metadata of sandbox {sandbox_id}: {e}")

    async def _kill_quietly(self, wrapper: SandboxWrapper) -> None:
        try:
            await wrapper.kill()
        except Exception as e:
            logger.warning(f"Failed to kill sandbox {wrapper.sandbox_id}: {e}")


def build_pool(
    config: SandboxPoolConfig,
    redis_client: Redis,
    provider: Optional[Type[BaseSandbox]] = None,
) -> SandboxPool:
    """Wire a pool and its collaborators around one Redis client."""
    provider = provider or SandboxFactory.get_provider(config.provider_type)
    storage = SandboxStorage(
        redis_client,
        key_prefix=config.key_prefix,
        idle_queue_ttl_seconds=config.idle_queue_ttl_seconds,
    )
    lock = LockManager(
        redis_client,
        key_prefix=config.key_prefix,
        poll_interval_seconds=config.lock_poll_interval_seconds,
    )
    queue = SandboxQueueScheduler(
        redis_client,
        queue_name=config.queue_name,
        max_retries=config.queue_max_retries,
        poll_interval_seconds=config.queue_poll_interval_seconds,
    )
    auto_pause = AutoPauseScheduler(queue, storage, lock, config, provider)
    return SandboxPool(config, storage, lock, auto_pause, provider)
