import logging
from functools import lru_cache

import redis
from redis.exceptions import RedisError, AuthenticationError

from core.config import get_settings

# Configure module-level logger
logger = logging.getLogger(__name__)


class StorageUnavailableError(Exception):
    """Raised when a backing store cannot be reached or written."""
    pass


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Creates a singleton Redis client with a connection pool.

    Reads REDIS_HOST / REDIS_PORT / REDIS_PASSWORD through Settings.
    REDIS_PASSWORD is required.
    """
    settings = get_settings()

    if not settings.redis_password:
        logger.critical("REDIS_PASSWORD environment variable is not set.")
        raise ValueError("REDIS_PASSWORD is required for production security.")

    try:
        pool = redis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            decode_responses=True,  # Returns str instead of bytes
            max_connections=50,
            socket_timeout=5.0
        )

        client = redis.Redis(connection_pool=pool)

        # Health check: Ping immediately to verify connection
        client.ping()
        logger.info(f"Successfully connected to Redis at {settings.redis_host}:{settings.redis_port}")

        return client

    except AuthenticationError:
        logger.critical("Redis authentication failed. Check REDIS_PASSWORD.")
        raise
    except RedisError as e:
        logger.critical(f"Could not connect to Redis: {e}")
        raise StorageUnavailableError(str(e)) from e
