"""
Lock providers for payment critical sections.

``InProcessLockProvider`` serializes coroutines inside one worker process;
``RedisLockProvider`` extends the same guarantee across workers.
"""
from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional

from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import LockTimeoutException
from infrastructure.external.cache.redis_client import RedisClient


logger = get_logger(__name__)


class InProcessLockProvider:
    """Per-key ``asyncio.Lock`` registry; idle keys are dropped."""

    def __init__(self, blocking_timeout: Optional[float] = None) -> None:
        self._blocking_timeout = blocking_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                if self._blocking_timeout is None:
                    await lock.acquire()
                else:
                    await asyncio.wait_for(lock.acquire(), timeout=self._blocking_timeout)
            except asyncio.TimeoutError:
                logger.warning("payment_lock_timeout", lock=key)
                raise LockTimeoutException(key)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class RedisLockProvider:
    """Distributed lock on top of ``RedisClient.lock``."""

    def __init__(
        self,
        client: RedisClient,
        *,
        timeout: int = settings.PAYMENT_LOCK_TIMEOUT,
        blocking_timeout: int = settings.PAYMENT_LOCK_BLOCKING_TIMEOUT,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            try:
                await stack.enter_async_context(
                    self._client.lock(key, timeout=self._timeout, blocking_timeout=self._blocking_timeout)
                )
            except TimeoutError:
                logger.warning("payment_lock_timeout", lock=key, backend="redis")
                raise LockTimeoutException(key)
            yield
