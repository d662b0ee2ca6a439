"""Shared Redis client for pool state, locks and the pause queue."""

from redis.asyncio import Redis

from sandbox_pool.config import SandboxPoolConfig


def create_redis_client(config: SandboxPoolConfig) -> Redis:
    """Build a pooled keep-alive client from ``redis_url``."""
    kwargs = {
        "encoding": "utf-8",
        "retry_on_error": [ConnectionError, TimeoutError],
        "retry_on_timeout": True,
        "max_connections": 30,
        "socket_keepalive": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "decode_responses": True,
    }

    if config.redis_tls_ca_path is not None:
        kwargs["ssl_ca_certs"] = config.redis_tls_ca_path

    return Redis.from_url(url=config.redis_url, **kwargs)
