import logging
import threading
from contextlib import contextmanager

import redis

from expenseai_billing.errors import LockTimeout

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:subscription:"


class SubscriptionLockManager:
    """
    Mutual exclusion per subscription key.

    With a Redis client the lock spans every worker process; the TTL bounds
    how long a crashed holder can block the key. Without Redis a process-
    local lock per key is used instead.
    """

    def __init__(self, client=None, ttl=30, wait=10):
        self.client = client
        self.ttl = ttl
        self.wait = wait
        self._guard = threading.Lock()
        self._local = {}

    @property
    def distributed(self):
        return self.client is not None

    @contextmanager
    def hold(self, key):
        if self.client is not None:
            with self._redis_lock(key):
                yield
        else:
            with self._local_lock(key):
                yield

    @contextmanager
    def _redis_lock(self, key):
        lock = self.client.lock(
            f"{LOCK_PREFIX}{key}", timeout=self.ttl, blocking_timeout=self.wait
        )
        try:
            acquired = lock.acquire(blocking=True)
        except redis.RedisError as exc:
            raise LockTimeout(f"Could not reach lock store for {key}") from exc
        if not acquired:
            raise LockTimeout(f"Timed out waiting for subscription lock {key}")

        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning(
                    "Subscription lock expired before release",
                    extra={"lock_key": key, "ttl_seconds": self.ttl},
                )

    @contextmanager
    def _local_lock(self, key):
        with self._guard:
            entry = self._local.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        try:
            if not lock.acquire(timeout=self.wait):
                raise LockTimeout(f"Timed out waiting for subscription lock {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._local.pop(key, None)
