"""Standalone worker running the auto-pause consumer of the sandbox pool."""

import argparse
import asyncio
import logging
import signal
from typing import Optional

from sandbox_pool import logger as _logging_setup  # noqa: F401
from sandbox_pool.cache import create_redis_client
from sandbox_pool.config import SandboxPoolConfig
from sandbox_pool.lifecycle.pool import build_pool

logger = logging.getLogger(__name__)


async def run(config: Optional[SandboxPoolConfig] = None) -> None:
    """Consume lifecycle jobs until SIGINT or SIGTERM."""
    config = config or SandboxPoolConfig()
    redis_client = create_redis_client(config)
    pool = build_pool(config, redis_client)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    # Startup
    await pool.start()
    stats = await pool.get_stats()
    logger.info(
        f"Sandbox pool worker started ({stats.active}/{stats.max} sandboxes active)"
    )

    try:
        await stop_event.wait()
    finally:
        # Shutdown
        await pool.shutdown()
        await redis_client.aclose()
        logger.info("Sandbox pool worker stopped")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the sandbox pool lifecycle worker (auto-pause of idle sandboxes)"
    )
    parser.add_argument(
        "--redis-url", default=None, help="Override REDIS_URL from the environment"
    )
    parser.add_argument(
        "--queue-name", default=None, help="Override QUEUE_NAME from the environment"
    )
    args = parser.parse_args()

    overrides = {}
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if args.queue_name:
        overrides["queue_name"] = args.queue_name

    asyncio.run(run(SandboxPoolConfig(**overrides)))


if __name__ == "__main__":
    main()
