# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Redis-based distributed lock.

Serializes reconcile passes of one cluster object across worker processes.
The lock value is a per-acquisition UUID and release runs a Lua script that
deletes the key only while it still holds that value, so a lock that expired
and was taken over elsewhere is never released by its former owner.
"""

import logging
import time
import uuid
from typing import Optional

import redis

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLock:
    """
    Distributed lock held in a single Redis key with an expiry.

    Usage:
        lock = RedisLock(key="neocluster:reconcile:default/graph", expire_time=120)
        if lock.acquire(timeout=0):
            try:
                ...
            finally:
                lock.release()
    """

    def __init__(
        self,
        key: str,
        redis_url: str = "redis://localhost:6379",
        expire_time: int = 30,
        retry_times: int = 3,
        retry_delay: float = 0.1,
    ):
        if not key:
            raise ValueError("Redis lock key is required")
        self._key = key
        self._redis_url = redis_url
        self._expire_time = expire_time
        self._retry_times = retry_times
        self._retry_delay = retry_delay
        self._redis_client: Optional[redis.Redis] = None
        self._release_sha: Optional[str] = None
        self._lock_value: Optional[str] = None

    @property
    def key(self) -> str:
        return self._key

    def _client(self) -> redis.Redis:
        if self._redis_client is None:
            client = redis.from_url(self._redis_url, decode_responses=True)
            try:
                client.ping()
            except Exception as e:
                raise ConnectionError(f"Cannot connect to Redis at {self._redis_url}: {e}") from e
            try:
                self._release_sha = client.script_load(RELEASE_SCRIPT)
            except redis.RedisError as e:
                logger.warning(f"Could not preload lock release script, falling back to EVAL: {e}")
                self._release_sha = None
            self._redis_client = client
        return self._redis_client

    def is_locked(self) -> bool:
        return self._lock_value is not None

    def _try_set(self, client: redis.Redis, value: str) -> bool:
        try:
            return bool(client.set(self._key, value, nx=True, ex=self._expire_time))
        except Exception as e:
            logger.warning(f"Failed to set lock {self._key}: {e}")
            return False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Acquire the lock.

        Args:
            timeout: Seconds to keep trying; None retries retry_times times instead

        Returns:
            True when the lock is held by this instance
        """
        if self.is_locked():
            return True

        client = self._client()
        value = str(uuid.uuid4())
        deadline = time.monotonic() + timeout if timeout is not None else None
        attempt = 0
        while True:
            if self._try_set(client, value):
                self._lock_value = value
                logger.debug(f"Acquired lock {self._key}")
                return True
            attempt += 1
            if deadline is not None:
                if time.monotonic() + self._retry_delay > deadline:
                    break
            elif attempt > self._retry_times:
                break
            time.sleep(self._retry_delay)

        logger.debug(f"Could not acquire lock {self._key} after {attempt} attempts")
        return False

    def release(self):
        if not self.is_locked():
            return
        value = self._lock_value
        self._lock_value = None
        try:
            client = self._client()
            if self._release_sha:
                client.evalsha(self._release_sha, 1, self._key, value)
            else:
                client.eval(RELEASE_SCRIPT, 1, self._key, value)
            logger.debug(f"Released lock {self._key}")
        except Exception as e:
            # The key expires on its own; local state is already cleared
            logger.warning(f"Failed to release lock {self._key}: {e}")

    def close(self):
        self.release()
        if self._redis_client is not None:
            try:
                self._redis_client.close()
            finally:
                self._redis_client = None

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError(f"Could not acquire lock {self._key}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
