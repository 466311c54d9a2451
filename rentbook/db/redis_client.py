from typing import Optional

import redis

from rentbook.core.config import RedisConfig


def create_redis(config: RedisConfig) -> Optional[redis.Redis]:
    """Client for ``host:port`` in ``config.address``; None when redis is not configured."""
    if not config.enabled:
        return None
    host, _, port = config.address.rpartition(":")
    if not host:
        host, port = config.address, "6379"
    pool = redis.ConnectionPool(
        host=host,
        port=int(port or 6379),
        db=config.db,
        password=config.password or None,
        max_connections=config.pool_size,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_timeout,
        decode_responses=True,
    )
    return redis.Redis(connection_pool=pool)
