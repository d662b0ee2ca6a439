"""Delayed lifecycle jobs stored in Redis."""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from redis.asyncio import Redis

from sandbox_pool.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

# (job_id, action, metadata)
MessageHandler = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

REDIS_RETRY = RetryPolicy(max_attempts=3, delay_seconds=0.5)

# First redelivery after a failed job waits two minutes, then doubles
RETRY_BASE_SECONDS = 60


class SandboxQueueScheduler:
    """Delayed jobs kept in a Redis sorted set scored by due time.

    A hash maps each job id to its current payload so a job can be replaced
    or cancelled by id. A ready job is claimed with ZREM and only the worker
    that removed it runs it.
    """

    def __init__(
        self,
        redis_client: Redis,
        queue_name: str = "sandbox_lifecycle",
        max_retries: int = 3,
        poll_interval_seconds: float = 1.0,
        batch_size: int = 10,
    ):
        self.redis_client = redis_client
        self.queue_name = queue_name
        self.max_retries = max_retries
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self.message_handler: Optional[MessageHandler] = None
        self.consumer_task: Optional[asyncio.Task] = None
        self.is_consuming = False

    @property
    def delayed_key(self) -> str:
        return f"{self.queue_name}:delayed"

    @property
    def messages_key(self) -> str:
        return f"{self.queue_name}:messages"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.queue_name}:dead_letter"

    async def _redis(self, name: str, *args, **kwargs):
        command = getattr(self.redis_client, name)
        return await retry_async(
            lambda: command(*args, **kwargs), REDIS_RETRY, name=f"redis {name}"
        )

    # Producer side

    async def schedule_message(
        self,
        job_id: str,
        action: str,
        delay_seconds: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> float:
        """Schedule ``action`` in ``delay_seconds``, replacing a pending job with this id.

        Returns the due time as a unix timestamp.
        """
        await self.cancel_message(job_id)
        due_at = time.time() + delay_seconds
        payload = json.dumps(
            {
                "job_id": job_id,
                "action": action,
                "metadata": metadata or {},
                "due_at": due_at,
                "attempts": 0,
            }
        )
        await self._enqueue(job_id, payload, due_at)
        logger.debug(f"Scheduled {action} job {job_id} in {delay_seconds}s")
        return due_at

    async def cancel_message(self, job_id: str) -> bool:
        """Drop a pending job. False when nothing was pending."""
        payload = await self._redis("hget", self.messages_key, job_id)
        if not payload:
            return False
        removed = await self._redis("zrem", self.delayed_key, payload)
        await self._redis("hdel", self.messages_key, job_id)
        if removed:
            logger.debug(f"Cancelled job {job_id}")
        return bool(removed)

    async def get_delivery_time(self, job_id: str) -> Optional[float]:
        payload = await self._redis("hget", self.messages_key, job_id)
        if not payload:
            return None
        return await self._redis("zscore", self.delayed_key, payload)

    async def _enqueue(self, job_id: str, payload: str, due_at: float) -> None:
        await self._redis("zadd", self.delayed_key, {payload: due_at})
        await self._redis("hset", self.messages_key, job_id, payload)

    # Consumer side

    async def setup_consumer(self, handler: MessageHandler) -> None:
        self.message_handler = handler

    async def start_consuming(self) -> None:
        if self.is_consuming:
            return
        if self.message_handler is None:
            raise ValueError("Message handler must be set before starting consumer")

        self.is_consuming = True
        self.consumer_task = asyncio.create_task(self._consume_loop())
        logger.info(f"Started consumer of queue {self.queue_name}")

    async def stop_consuming(self) -> None:
        if not self.is_consuming:
            return

        self.is_consuming = False
        task, self.consumer_task = self.consumer_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"Stopped consumer of queue {self.queue_name}")

    async def _consume_loop(self) -> None:
        while self.is_consuming:
            try:
                await self.process_ready()
                delay = self.poll_interval_seconds
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Lifecycle queue poll failed: {e}")
                delay = self.poll_interval_seconds * 5
            await asyncio.sleep(delay)

    async def process_ready(self) -> int:
        """Run the jobs that are due. Returns how many this worker claimed."""
        due = await self._redis(
            "zrangebyscore",
            self.delayed_key,
            min="-inf",
            max=time.time(),
            start=0,
            num=self.batch_size,
        )

        claimed = 0
        for payload in due:
            # Losing the ZREM race means another worker owns the job
            if not await self._redis("zrem", self.delayed_key, payload):
                continue
            claimed += 1
            try:
                message = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.error(f"Dropping undecodable job: {e}")
                continue
            await self._run(message, payload)
        return claimed

    async def _run(self, message: Dict[str, Any], payload: str) -> None:
        job_id = message["job_id"]
        try:
            if self.message_handler is not None:
                await self.message_handler(
                    job_id, message["action"], message.get("metadata", {})
                )
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            await self._handle_failure(message, payload)
            return

        await self._forget(job_id, payload)
        logger.debug(f"Job {job_id} done")

    async def _handle_failure(self, message: Dict[str, Any], payload: str) -> None:
        job_id = message["job_id"]
        attempts = message.get("attempts", 0) + 1

        if attempts > self.max_retries:
            await self._redis("zadd", self.dead_letter_key, {payload: time.time()})
            await self._forget(job_id, payload)
            logger.error(f"Job {job_id} moved to dead letter after {attempts} attempts")
            return

        retry_at = time.time() + RETRY_BASE_SECONDS * 2**attempts
        retried = json.dumps({**message, "attempts": attempts, "due_at": retry_at})
        # The lookup entry still points at the claimed payload unless rescheduled meanwhile
        if await self._redis("hget", self.messages_key, job_id) == payload:
            await self._enqueue(job_id, retried, retry_at)
            logger.info(f"Retrying job {job_id} ({attempts}/{self.max_retries})")

    async def _forget(self, job_id: str, payload: str) -> None:
        # Keep the lookup entry if the job was rescheduled while running
        if await self._redis("hget", self.messages_key, job_id) == payload:
            await self._redis("hdel", self.messages_key, job_id)

    async def health_check(self) -> bool:
        try:
            await self._redis("ping")
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False
