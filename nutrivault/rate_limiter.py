"""
Per-account cooldown stores for automatic calendar sync
In-memory for a single instance, Redis when several instances share the load
"""

import logging
import os
import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Optional

import redis

from .config import SYNC_COOLDOWN_BACKEND, SYNC_COOLDOWN_MAX_ENTRIES

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None

COOLDOWN_KEY_PREFIX = "calendar_sync_cooldown:"


def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client
    Supports both standard Redis and managed Redis URLs
    """
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection for sync cooldowns...")

        redis_url = os.getenv("REDIS_URL")

        try:
            if redis_url:
                # Mask password in URL for logging
                if "@" in redis_url:
                    url_parts = redis_url.split("@")
                    protocol = url_parts[0].split(":")[0]
                    masked_url = f"{protocol}:****@{url_parts[1]}"
                else:
                    masked_url = "****"
                logger.info(f"📡 Using Redis URL connection: {masked_url}")

                client = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=15,
                    socket_timeout=30,
                    retry_on_timeout=True,
                    health_check_interval=30,
                    max_connections=20,
                )
            else:
                redis_host = os.getenv("REDIS_HOST", "localhost")
                redis_port = int(os.getenv("REDIS_PORT", "6379"))
                redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
                logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (SSL: {'on' if redis_ssl else 'off'})")

                client = redis.Redis(
                    host=redis_host,
                    port=redis_port,
                    password=os.getenv("REDIS_PASSWORD", None),
                    db=int(os.getenv("REDIS_DB", "0")),
                    ssl=redis_ssl,
                    decode_responses=True,
                    socket_connect_timeout=15,
                    socket_timeout=30,
                    retry_on_timeout=True,
                    health_check_interval=30,
                    max_connections=20,
                )
            # Test connection
            client.ping()
            logger.info("✅ Redis connected successfully")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise

        redis_client = client

    return redis_client


class MemoryCooldownStore:
    """
    Bounded in-process cooldown map.

    try_acquire is an atomic check-and-set under a lock: of several concurrent
    triggers for one account only the first wins. The least recently stamped
    accounts are evicted once max_entries is reached.
    """

    def __init__(
        self,
        max_entries: int = SYNC_COOLDOWN_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.clock = clock
        self._expires_at: "OrderedDict[str, float]" = OrderedDict()
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._expires_at)

    def _stamp(self, key: str, cooldown_seconds: float, now: float) -> None:
        self._expires_at[key] = now + cooldown_seconds
        self._expires_at.move_to_end(key)
        while len(self._expires_at) > self.max_entries:
            self._expires_at.popitem(last=False)

    def try_acquire(self, key: str, cooldown_seconds: float) -> bool:
        with self._lock:
            now = self.clock()
            expires_at = self._expires_at.get(key)
            if expires_at is not None and now < expires_at:
                return False
            self._stamp(key, cooldown_seconds, now)
            return True

    def touch(self, key: str, cooldown_seconds: float) -> None:
        with self._lock:
            self._stamp(key, cooldown_seconds, self.clock())


class RedisCooldownStore:
    """Cooldown shared between instances: SET NX PX is the atomic check-and-set"""

    def __init__(self, client: redis.Redis, prefix: str = COOLDOWN_KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    def try_acquire(self, key: str, cooldown_seconds: float) -> bool:
        try:
            acquired = self.client.set(
                f"{self.prefix}{key}", str(time.time()), nx=True, px=max(1, int(cooldown_seconds * 1000))
            )
        except redis.RedisError as e:
            # Fail-open when Redis is unreachable
            logger.warning(f"⚠️ Cooldown check failed, allowing sync for {key}: {e}")
            return True
        return bool(acquired)

    def touch(self, key: str, cooldown_seconds: float) -> None:
        try:
            self.client.set(f"{self.prefix}{key}", str(time.time()), px=max(1, int(cooldown_seconds * 1000)))
        except redis.RedisError as e:
            logger.warning(f"⚠️ Could not stamp sync cooldown for {key}: {e}")


def build_cooldown_store(backend: str = SYNC_COOLDOWN_BACKEND):
    """Cooldown store selected by SYNC_COOLDOWN_BACKEND"""
    if backend == "redis":
        logger.info("🔧 Sync cooldowns stored in Redis")
        return RedisCooldownStore(get_redis_client())
    logger.info(f"🔧 Sync cooldowns stored in memory (max {SYNC_COOLDOWN_MAX_ENTRIES} accounts)")
    return MemoryCooldownStore()
