import threading
from unittest.mock import MagicMock

import pytest
import redis

from expenseai_billing.errors import LockTimeout
from expenseai_billing.utils.redis_lock import SubscriptionLockManager


def test_local_lock_excludes_same_key():
    locks = SubscriptionLockManager(wait=0.05)
    entered = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("card_billing:sub_1"):
            entered.set()
            release.wait(1)

    thread = threading.Thread(target=holder)
    thread.start()
    entered.wait(1)
    try:
        with pytest.raises(LockTimeout):
            with locks.hold("card_billing:sub_1"):
                pass
        with locks.hold("card_billing:sub_2"):
            pass
    finally:
        release.set()
        thread.join()


def test_local_locks_are_released():
    locks = SubscriptionLockManager()

    with locks.hold("key"):
        pass

    assert locks._local == {}
    assert locks.distributed is False


def test_redis_lock_acquire_and_release():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    locks = SubscriptionLockManager(client=client, ttl=15, wait=3)

    with locks.hold("store_aggregator:user-1"):
        pass

    client.lock.assert_called_once_with(
        "lock:subscription:store_aggregator:user-1", timeout=15, blocking_timeout=3
    )
    lock.release.assert_called_once()
    assert locks.distributed is True


def test_redis_lock_timeout():
    client = MagicMock()
    client.lock.return_value.acquire.return_value = False
    locks = SubscriptionLockManager(client=client)

    with pytest.raises(LockTimeout):
        with locks.hold("key"):
            pass


def test_redis_unreachable():
    client = MagicMock()
    client.lock.return_value.acquire.side_effect = redis.ConnectionError("refused")
    locks = SubscriptionLockManager(client=client)

    with pytest.raises(LockTimeout):
        with locks.hold("key"):
            pass


def test_expired_lock_release_is_tolerated():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    lock.release.side_effect = redis.exceptions.LockError("not owned")
    locks = SubscriptionLockManager(client=client)

    with locks.hold("key"):
        pass
