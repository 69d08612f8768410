"""Distributed mutex on Redis, keyed by pipeline name.

acquire = SET key token NX PX ttl
release = Lua compare-and-delete, so an expired lock that was re-acquired by
another holder is never deleted by the previous owner.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class RedisLock:
    key: str
    token: str


class RedisLockManager:
    """Fail-open lock manager: backend errors mean "not acquired", never raise."""

    def __init__(self, redis_client: Any, key_prefix: str = ""):
        self._redis = redis_client
        self._prefix = key_prefix

    async def acquire(self, key: str, ttl_ms: int) -> Optional[RedisLock]:
        full_key = f"{self._prefix}{key}"
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: self._redis.set(full_key, token, nx=True, px=int(ttl_ms)),
            )
        except Exception as e:
            logger.error("LOCK acquire_failed key=%s err=%s", full_key, e)
            return None

        # SET NX returns None when the key already exists
        if not result:
            return None
        return RedisLock(key=full_key, token=token)

    async def release(self, lock: Optional[RedisLock]) -> None:
        if lock is None:
            return
        loop = asyncio.get_running_loop()
        try:
            deleted = await loop.run_in_executor(
                None,
                lambda: self._redis.eval(RELEASE_SCRIPT, 1, lock.key, lock.token),
            )
        except Exception as e:
            # TTL guarantees eventual release.
            logger.error("LOCK release_failed key=%s err=%s", lock.key, e)
            return
        if not deleted:
            logger.debug("LOCK release_noop key=%s (expired or held by another owner)", lock.key)
