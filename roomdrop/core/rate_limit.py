from __future__ import annotations

import logging
import threading
from time import monotonic, time
from typing import Dict, Tuple

import redis

from roomdrop.config import REDIS_URL

logger = logging.getLogger("roomdrop")


class RateLimiter:
    """Fixed window limiter per client, kept in Redis when configured, else in memory.

    ``scope`` namespaces the windows so room creation and uploads are
    counted separately for the same client.
    """

    def __init__(self, limit: int, window_seconds: int = 60, scope: str = "default") -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds
        self.scope = scope
        self._clients: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._redis = self._connect_redis()

    @staticmethod
    def _connect_redis():
        if not REDIS_URL:
            return None
        try:
            client = redis.from_url(REDIS_URL)
            client.ping()
            return client
        except redis.RedisError as exc:
            logger.warning("event=rate_limit_redis_unavailable error=%s", exc)
            return None

    def hit(self, key: str) -> Tuple[bool, int]:
        """
        Register a hit for the given key.
        Returns (allowed, retry_after_seconds).
        """
        if self._redis is not None:
            try:
                return self._hit_redis(key)
            except redis.RedisError as exc:
                logger.warning("event=rate_limit_redis_error error=%s", exc)
        return self._hit_memory(key)

    def _hit_redis(self, key: str) -> Tuple[bool, int]:
        window = int(time() // self.window_seconds)
        redis_key = f"rate_limit:{self.scope}:{key}:{window}"
        pipe = self._redis.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, self.window_seconds)
        count, _ = pipe.execute()
        retry_after = self.window_seconds - int(time() % self.window_seconds)
        if int(count) > self.limit:
            return False, retry_after or 1
        return True, retry_after

    def _hit_memory(self, key: str) -> Tuple[bool, int]:
        now = monotonic()
        with self._lock:
            count, reset_at = self._clients.get(key, (0, now + self.window_seconds))
            if now > reset_at:
                count = 0
                reset_at = now + self.window_seconds
            if count >= self.limit:
                retry_after = max(0, int(reset_at - now))
                return False, retry_after or 1

            self._clients[key] = (count + 1, reset_at)
            return True, max(0, int(reset_at - now))
