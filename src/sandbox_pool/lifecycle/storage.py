"""Redis persistence of sandbox metadata, idle queues and the active set."""

import logging
import math
import time
import uuid
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from sandbox_pool.models.exceptions import ResourceExhaustedError
from sandbox_pool.models.payload import SandboxMetadata

logger = logging.getLogger(__name__)

# A sandbox lives in its own partition at most once.
PUSH_IDLE_SCRIPT = """
redis.call("lrem", KEYS[1], 0, ARGV[1])
redis.call("rpush", KEYS[1], ARGV[1])
redis.call("expire", KEYS[1], ARGV[2])
return redis.call("llen", KEYS[1])
"""

# The queue key never outlives its last element.
POP_IDLE_SCRIPT = """
local sandbox_id = redis.call("lpop", KEYS[1])
if not sandbox_id then
    return false
end
if redis.call("llen", KEYS[1]) > 0 then
    redis.call("expire", KEYS[1], ARGV[1])
else
    redis.call("del", KEYS[1])
end
return sandbox_id
"""

RESERVE_SLOT_SCRIPT = """
redis.call("zremrangebyscore", KEYS[1], "-inf", ARGV[1])
local count = redis.call("zcard", KEYS[1])
if count >= tonumber(ARGV[2]) then
    return {0, count}
end
redis.call("zadd", KEYS[1], ARGV[3], ARGV[4])
return {1, count + 1}
"""


class SandboxStorage:
    """Cross-process state of the pool.

    Metadata TTL always equals the sandbox's remaining budget, so an expired
    record implies the remote sandbox has expired as well.
    """

    def __init__(
        self,
        redis_client: Redis,
        key_prefix: str = "pool",
        idle_queue_ttl_seconds: int = 3600,
    ):
        self._redis = redis_client
        self._prefix = key_prefix
        self._idle_ttl = idle_queue_ttl_seconds
        self._push_idle = redis_client.register_script(PUSH_IDLE_SCRIPT)
        self._pop_idle = redis_client.register_script(POP_IDLE_SCRIPT)
        self._reserve_slot = redis_client.register_script(RESERVE_SLOT_SCRIPT)

    def metadata_key(self, sandbox_id: str) -> str:
        return f"{self._prefix}:meta:{sandbox_id}"

    def idle_key(self, partition: str) -> str:
        return f"{self._prefix}:idle:{partition}"

    @property
    def active_key(self) -> str:
        return f"{self._prefix}:active"

    # Metadata

    async def save_metadata(self, metadata: SandboxMetadata, ttl_seconds: float) -> bool:
        """Persist metadata for ``ttl_seconds``. Nothing is written when the budget is spent."""
        ttl = math.floor(ttl_seconds)
        if ttl <= 0:
            logger.debug(
                f"Sandbox {metadata.sandbox_id} has no budget left, not saving metadata"
            )
            await self.delete_metadata(metadata.sandbox_id)
            return False
        await self._redis.set(
            self.metadata_key(metadata.sandbox_id), metadata.model_dump_json(), ex=ttl
        )
        return True

    async def load_metadata(self, sandbox_id: str) -> Optional[SandboxMetadata]:
        raw = await self._redis.get(self.metadata_key(sandbox_id))
        if raw is None:
            return None
        try:
            return SandboxMetadata.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Dropping unreadable metadata for sandbox {sandbox_id}: {e}")
            await self.delete_metadata(sandbox_id)
            return None

    async def delete_metadata(
        self, sandbox_id: str, partition: Optional[str] = None
    ) -> None:
        """Delete metadata, and the idle queue entry when the partition is known."""
        await self._redis.delete(self.metadata_key(sandbox_id))
        if partition is not None:
            await self._redis.lrem(self.idle_key(partition), 0, sandbox_id)

    # Idle queues

    async def push_idle(
        self, partition: str, sandbox_id: str, ttl_seconds: Optional[int] = None
    ) -> int:
        """Append to the back of the partition's idle queue and refresh its TTL."""
        return int(
            await self._push_idle(
                keys=[self.idle_key(partition)],
                args=[sandbox_id, ttl_seconds or self._idle_ttl],
            )
        )

    async def pop_idle(self, partition: str) -> Optional[str]:
        """Atomically take the oldest idle sandbox id, or None when the queue is empty."""
        return await self._pop_idle(
            keys=[self.idle_key(partition)], args=[self._idle_ttl]
        )

    async def idle_length(self, partition: str) -> int:
        return int(await self._redis.llen(self.idle_key(partition)))

    # Active set

    async def count_active(self) -> int:
        await self._redis.zremrangebyscore(self.active_key, "-inf", time.time())
        return int(await self._redis.zcard(self.active_key))

    async def reserve_slot(self, max_sandboxes: int, lease_seconds: float) -> str:
        """Claim one unit of capacity.

        Raises:
            ResourceExhaustedError: ``max_sandboxes`` entries are already active
        """
        now = time.time()
        slot_id = f"slot:{uuid.uuid4().hex}"
        reserved, count = await self._reserve_slot(
            keys=[self.active_key],
            args=[now, max_sandboxes, now + lease_seconds, slot_id],
        )
        if not int(reserved):
            raise ResourceExhaustedError(int(count), max_sandboxes)
        return slot_id

    async def activate(self, slot_id: str, sandbox_id: str, lease_seconds: float) -> None:
        """Turn a reserved slot into the active entry of ``sandbox_id``."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, slot_id)
            pipe.zadd(self.active_key, {sandbox_id: time.time() + lease_seconds})
            await pipe.execute()

    async def deactivate(self, member: str) -> None:
        """Free a slot or a sandbox's active entry."""
        await self._redis.zrem(self.active_key, member)
