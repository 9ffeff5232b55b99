import redis.asyncio as redis
from typing import Optional
import logging
import uuid
from .settings import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None


async def init_redis():
    """Initialize Redis connection"""
    global redis_client
    redis_client = redis.from_url(
        settings.redis_url,
        decode_responses=True
    )

    # Test connection
    try:
        await redis_client.ping()
        logger.info("Redis connected")
    except Exception as e:
        logger.warning(f"Redis connection failed, sweep locks are process-local only: {e}")
        redis_client = None


async def close_redis():
    global redis_client
    if redis_client:
        await redis_client.close()
        redis_client = None


class RedisLock:
    """Cross-process lock on a single key (SET NX EX).

    Without a Redis connection every acquire succeeds, so a single process
    relies on its own asyncio lock.
    """

    _RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) else return 0 end"
    )

    def __init__(self, name: str, ttl: int, client: Optional[redis.Redis] = None):
        self.key = f"lock:{name}"
        self.ttl = ttl
        self._client = client
        self._token = uuid.uuid4().hex

    @property
    def redis(self) -> Optional[redis.Redis]:
        return self._client if self._client is not None else redis_client

    async def acquire(self) -> bool:
        if not self.redis:
            return True
        try:
            return bool(await self.redis.set(self.key, self._token, nx=True, ex=self.ttl))
        except Exception as e:
            logger.warning(f"Redis lock {self.key} unavailable, continuing without it: {e}")
            return True

    async def release(self):
        if not self.redis:
            return
        try:
            await self.redis.eval(self._RELEASE_SCRIPT, 1, self.key, self._token)
        except Exception as e:
            logger.warning(f"Failed to release redis lock {self.key}: {e}")
