"""Distributed locks with ownership tokens on top of Redis."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError

from sandbox_pool.models.exceptions import LockBusyError, QueueOverloadedError

logger = logging.getLogger(__name__)


class LockManager:
    """Mutual exclusion across processes on redis-py's ``Lock``.

    Callers hold plain string tokens, so a lock taken in one place can be
    released or renewed elsewhere. There is no queuing or fairness. A holder
    that crashes is only recovered by TTL expiry, so long operations must
    renew the lock at an interval shorter than half the TTL or it is silently
    reclaimed; ``hold`` does this.
    """

    def __init__(
        self,
        redis_client: Redis,
        key_prefix: str = "pool",
        poll_interval_seconds: float = 0.2,
    ):
        self._redis = redis_client
        self._prefix = f"{key_prefix}:lock"
        self._poll_interval = poll_interval_seconds

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _lock(
        self,
        key: str,
        ttl_seconds: Optional[float] = None,
        token: Optional[str] = None,
        sleep: Optional[float] = None,
    ) -> Lock:
        lock = self._redis.lock(
            self._key(key),
            timeout=ttl_seconds,
            sleep=sleep or self._poll_interval,
            thread_local=False,
        )
        if token is not None:
            lock.local.token = token
        return lock

    @staticmethod
    def execute_key(uid: str, affinity_key: str) -> str:
        return f"execute:{uid}:{affinity_key}"

    @staticmethod
    def creation_key(affinity_key: str) -> str:
        return f"create:{affinity_key}"

    @staticmethod
    def sandbox_key(sandbox_id: str) -> str:
        return f"sandbox:{sandbox_id}"

    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Try once. Returns the ownership token, or None when the lock is busy."""
        token = uuid.uuid4().hex
        if await self._lock(key, ttl_seconds).acquire(blocking=False, token=token):
            logger.debug(f"Acquired lock {key}")
            return token
        return None

    async def release(self, key: str, token: str) -> bool:
        """Release a lock. False means the token no longer owns it and nothing was deleted."""
        try:
            await self._lock(key).do_release(token)
        except LockNotOwnedError:
            logger.warning(f"Lock {key} is no longer owned by this holder, skipped release")
            return False
        logger.debug(f"Released lock {key}")
        return True

    async def renew(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Reset the TTL of a lock still owned by ``token``."""
        try:
            return await self._lock(key, ttl_seconds, token).reacquire()
        except LockNotOwnedError:
            return False

    async def wait(
        self,
        key: str,
        ttl_seconds: int,
        timeout_seconds: float,
        poll_interval_seconds: Optional[float] = None,
    ) -> str:
        """Poll until the lock is acquired or the timeout elapses.

        Raises:
            QueueOverloadedError: the lock stayed busy for ``timeout_seconds``
        """
        token = uuid.uuid4().hex
        lock = self._lock(key, ttl_seconds, sleep=poll_interval_seconds)
        started = time.monotonic()
        if await lock.acquire(blocking=True, blocking_timeout=timeout_seconds, token=token):
            logger.debug(f"Acquired lock {key}")
            return token
        raise QueueOverloadedError(key, time.monotonic() - started)

    async def _keep_alive(self, key: str, token: str, ttl_seconds: int) -> None:
        interval = max(ttl_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.renew(key, token, ttl_seconds):
                    logger.warning(f"Lost lock {key} while holding it")
                    return
            except Exception as e:
                logger.warning(f"Failed to renew lock {key}: {e}")

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl_seconds: int,
        wait_timeout_seconds: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Hold a lock for the duration of the block, renewing it in the background.

        Without ``wait_timeout_seconds`` a busy lock raises LockBusyError
        immediately; with it the lock is polled and QueueOverloadedError is
        raised on timeout.
        """
        if wait_timeout_seconds is None:
            token = await self.acquire(key, ttl_seconds)
            if token is None:
                raise LockBusyError(key)
        else:
            token = await self.wait(key, ttl_seconds, wait_timeout_seconds)

        keeper = asyncio.create_task(self._keep_alive(key, token, ttl_seconds))
        try:
            yield token
        finally:
            await self._let_go(key, token, keeper)

    @asynccontextmanager
    async def try_hold(self, key: str, ttl_seconds: int) -> AsyncIterator[bool]:
        """Yield True while holding the lock, or False when it was busy."""
        token = await self.acquire(key, ttl_seconds)
        if token is None:
            yield False
            return

        keeper = asyncio.create_task(self._keep_alive(key, token, ttl_seconds))
        try:
            yield True
        finally:
            await self._let_go(key, token, keeper)

    async def _let_go(self, key: str, token: str, keeper: asyncio.Task) -> None:
        keeper.cancel()
        try:
            await keeper
        except asyncio.CancelledError:
            pass
        try:
            await self.release(key, token)
        except Exception as e:
            logger.warning(f"Failed to release lock {key}: {e}")
