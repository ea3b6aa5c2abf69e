import asyncio

import pytest
from redis.exceptions import LockError

from domain.common.exceptions import LockTimeoutException
from infrastructure.external.cache.redis_client import RedisClient
from infrastructure.locks import InProcessLockProvider, RedisLockProvider


@pytest.mark.asyncio
async def test_in_process_lock_serializes_same_key():
    provider = InProcessLockProvider()
    trace = []

    async def worker(name: str):
        async with provider.lock("payment:1"):
            trace.append(f"{name}:enter")
            await asyncio.sleep(0.01)
            trace.append(f"{name}:exit")

    await asyncio.gather(worker("a"), worker("b"))

    assert trace in (
        ["a:enter", "a:exit", "b:enter", "b:exit"],
        ["b:enter", "b:exit", "a:enter", "a:exit"],
    )
    assert len(provider) == 0


@pytest.mark.asyncio
async def test_in_process_lock_does_not_block_other_keys():
    provider = InProcessLockProvider(blocking_timeout=0.05)

    async with provider.lock("payment:1"):
        async with provider.lock("payment:2"):
            assert len(provider) == 2


@pytest.mark.asyncio
async def test_in_process_lock_times_out():
    provider = InProcessLockProvider(blocking_timeout=0.05)

    async with provider.lock("payment:order:ord_1"):
        with pytest.raises(LockTimeoutException) as exc_info:
            async with provider.lock("payment:order:ord_1"):
                pass

    assert exc_info.value.details == {"lock": "payment:order:ord_1"}
    assert len(provider) == 0


class _FakeRedisLock:
    def __init__(self, owner, name: str, acquirable: bool) -> None:
        self._owner = owner
        self.name = name
        self._acquirable = acquirable

    async def acquire(self) -> bool:
        return self._acquirable

    async def release(self) -> None:
        self._owner.released.append(self.name)
        if self._owner.expired:
            raise LockError("Cannot release a lock that's no longer owned")


class _FakeRedis:
    """Stands in for ``redis.asyncio.Redis`` in lock tests."""

    def __init__(self, acquirable: bool = True, expired: bool = False) -> None:
        self.acquirable = acquirable
        self.expired = expired
        self.requested = []
        self.released = []

    def lock(self, name, timeout=None, blocking_timeout=None, thread_local=True):
        self.requested.append((name, timeout, blocking_timeout, thread_local))
        return _FakeRedisLock(self, name, self.acquirable)


@pytest.mark.asyncio
async def test_redis_lock_provider_uses_namespaced_key():
    redis = _FakeRedis()
    provider = RedisLockProvider(RedisClient(redis, namespace="payments"), timeout=30, blocking_timeout=2)

    async with provider.lock("payment:5"):
        pass

    assert redis.requested == [("lock:payments:payment:5", 30, 2, False)]
    assert redis.released == ["lock:payments:payment:5"]


@pytest.mark.asyncio
async def test_redis_lock_provider_maps_acquire_timeout():
    provider = RedisLockProvider(RedisClient(_FakeRedis(acquirable=False)), timeout=30, blocking_timeout=1)

    with pytest.raises(LockTimeoutException):
        async with provider.lock("payment:5"):
            pass


@pytest.mark.asyncio
async def test_redis_lock_provider_propagates_body_errors():
    redis = _FakeRedis(expired=True)
    provider = RedisLockProvider(RedisClient(redis), timeout=30, blocking_timeout=1)

    # a TimeoutError raised while holding the lock is not a lock timeout
    with pytest.raises(TimeoutError):
        async with provider.lock("payment:5"):
            raise TimeoutError("gateway")

    # an expired lock is logged on release, not raised
    async with provider.lock("payment:6"):
        pass
    assert redis.released == ["lock:payment:5", "lock:payment:6"]
