"""Hibernates idle sandboxes after a grace period."""

import logging
from typing import Any, Dict, Type

from sandbox_pool.config import SandboxPoolConfig
from sandbox_pool.lifecycle.lock import LockManager
from sandbox_pool.lifecycle.queue import SandboxQueueScheduler
from sandbox_pool.lifecycle.storage import SandboxStorage
from sandbox_pool.lifecycle.wrapper import SandboxWrapper
from sandbox_pool.models.payload import ExecutionContext, SandboxState
from sandbox_pool.sandboxes.base import BaseSandbox

logger = logging.getLogger(__name__)

PAUSE_ACTION = "pause"


def pause_job_id(sandbox_id: str) -> str:
    return f"pause:{sandbox_id}"


class AutoPauseScheduler:
    """Schedules one delayed pause job per idle sandbox and runs it when due."""

    def __init__(
        self,
        queue: SandboxQueueScheduler,
        storage: SandboxStorage,
        lock: LockManager,
        config: SandboxPoolConfig,
        provider: Type[BaseSandbox],
    ):
        self.queue = queue
        self.storage = storage
        self.lock = lock
        self.config = config
        self.provider = provider

    async def schedule(self, sandbox_id: str, delay_seconds: float) -> None:
        """Arm the pause job, replacing any pending one."""
        await self.queue.schedule_message(
            job_id=pause_job_id(sandbox_id),
            action=PAUSE_ACTION,
            delay_seconds=delay_seconds,
            metadata={"sandbox_id": sandbox_id, "reason": "idle"},
        )
        logger.debug(f"Scheduled auto-pause for sandbox {sandbox_id} in {delay_seconds}s")

    async def cancel(self, sandbox_id: str) -> bool:
        cancelled = await self.queue.cancel_message(pause_job_id(sandbox_id))
        if cancelled:
            logger.debug(f"Cancelled pending auto-pause for sandbox {sandbox_id}")
        return cancelled

    async def start(self) -> None:
        await self.queue.setup_consumer(self._handle_lifecycle_message)
        await self.queue.start_consuming()

    async def stop(self) -> None:
        await self.queue.stop_consuming()

    async def _handle_lifecycle_message(
        self, job_id: str, action: str, metadata: Dict[str, Any]
    ) -> None:
        if action != PAUSE_ACTION:
            logger.warning(f"Unknown lifecycle action '{action}' for job {job_id}")
            return
        sandbox_id = metadata.get("sandbox_id") or job_id.split(":", 1)[-1]
        await self.handle(sandbox_id)

    async def handle(self, sandbox_id: str) -> bool:
        """Pause ``sandbox_id`` if it is still idle. Returns whether it was paused."""
        metadata = await self.storage.load_metadata(sandbox_id)
        if metadata is None:
            logger.debug(f"Sandbox {sandbox_id} metadata not found, skipping pause")
            return False
        if metadata.is_paused:
            logger.debug(f"Sandbox {sandbox_id} already paused, skipping")
            return False
        if metadata.state == SandboxState.RUNNING:
            logger.debug(f"Sandbox {sandbox_id} is in use, skipping pause")
            return False

        try:
            async with self.lock.try_hold(
                LockManager.sandbox_key(sandbox_id), self.config.pause_lock_ttl_seconds
            ) as acquired:
                if not acquired:
                    logger.debug(f"Sandbox {sandbox_id} is locked, skipping pause")
                    return False
                return await self._execute_pause(sandbox_id)
        except Exception as e:
            logger.warning(f"Skipped pause of sandbox {sandbox_id}: {e}")
            return False

    async def _execute_pause(self, sandbox_id: str) -> bool:
        # Re-read under the lock; a reuse may have won the race
        metadata = await self.storage.load_metadata(sandbox_id)
        if metadata is None or metadata.is_paused or metadata.state == SandboxState.RUNNING:
            return False

        context = ExecutionContext(
            affinity_key=metadata.affinity_key, uid=metadata.uid
        )
        wrapper = await SandboxWrapper.reconnect(
            context, metadata, self.config, self.provider
        )
        if not await wrapper.pause():
            return False

        wrapper.mark_as_paused()
        await self.storage.save_metadata(
            wrapper.to_metadata(), wrapper.remaining_seconds()
        )
        return True
