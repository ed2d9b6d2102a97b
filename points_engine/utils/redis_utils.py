"""
Redis utility module for the optional distributed processing lock.

When several replay workers share one database, only one of them may apply
events at a time. The lock is skipped entirely when REDIS_URL is unset.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from points_engine.config import Config
from points_engine.utils.exceptions import ProcessingLockError

logger = logging.getLogger(__name__)

LOCK_NAME = 'points_engine:processing'


class RedisUtils:
    """Centralized Redis configuration and connection utilities."""

    @staticmethod
    def get_redis_url() -> Optional[str]:
        """Redis URL from configuration, validated for production use."""
        redis_url = Config.REDIS_URL
        if not redis_url:
            return None
        if not RedisUtils._validate_redis_security(redis_url):
            logger.error("REDIS_URL contains insecure configuration")
            return None
        return redis_url

    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Production deployments require TLS and credentials."""
        if Config.DEBUG:
            if not redis_url.startswith(('redis://localhost', 'redis://127.0.0.1', 'rediss://')):
                logger.warning(f"Potentially insecure Redis URL in development: {redis_url}")
            return True

        if not redis_url.startswith('rediss://'):
            logger.error("Production Redis must use rediss:// (TLS) protocol")
            return False
        if '@' not in redis_url:
            logger.error("Production Redis must include authentication credentials")
            return False
        return True

    @staticmethod
    async def create_redis_client() -> Optional[redis.Redis]:
        """Create a connected Redis client, or None when Redis is not configured."""
        redis_url = RedisUtils.get_redis_url()
        if not redis_url:
            return None

        try:
            client = redis.from_url(redis_url)
            # Test connection
            await client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None


@asynccontextmanager
async def processing_lock(client: Optional[redis.Redis], name: str = LOCK_NAME,
                          timeout: Optional[float] = None):
    """
    Hold the shared processing lock for the duration of the block.

    With no client this is a no-op. Raises ProcessingLockError if the lock
    cannot be acquired within ``timeout`` seconds.
    """
    if client is None:
        yield
        return

    ttl = timeout or Config.PROCESSING_LOCK_TTL
    lock = client.lock(name, timeout=ttl, blocking_timeout=ttl)
    acquired = await lock.acquire()
    if not acquired:
        raise ProcessingLockError(name, ttl)
    try:
        yield
    finally:
        try:
            await lock.release()
        except LockError as e:
            # Expired while held; the next holder already owns it.
            logger.warning(f"Processing lock '{name}' was lost before release: {e}")
