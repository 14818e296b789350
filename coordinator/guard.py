"""
Per-order mutual exclusion with bounded wait. Transitions on one order are
serialized in grant order; different orders never contend.
"""
import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError

from coordinator.errors import LockTimeout
from coordinator.metrics import lock_timeouts_total, lock_wait_seconds

logger = logging.getLogger(__name__)


class ConcurrencyGuard(Protocol):
    def hold(self, order_id: str) -> AbstractAsyncContextManager[None]: ...


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class LocalLockGuard:
    """
    In-process guard: one asyncio.Lock per order, created on demand and dropped
    once nobody holds or waits on it.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._slots: dict[str, _Slot] = {}

    def active_keys(self) -> int:
        return len(self._slots)

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        slot = self._slots.get(order_id)
        if slot is None:
            slot = self._slots[order_id] = _Slot()
        slot.users += 1
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(slot.lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                lock_timeouts_total.inc()
                raise LockTimeout(order_id, self.timeout)
            lock_wait_seconds.observe(time.monotonic() - started)
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(order_id) is slot:
                del self._slots[order_id]


class RedisLockGuard:
    """
    Cross-process guard backed by a redis lock. The lease bounds how long a
    crashed holder can block the order.
    """

    def __init__(self, client: redis.Redis, timeout: float, lease: float, prefix: str = "lock:order:"):
        self._redis = client
        self.timeout = timeout
        self.lease = lease
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self.prefix}{order_id}",
            timeout=self.lease,
            blocking_timeout=self.timeout,
        )
        started = time.monotonic()
        acquired = await lock.acquire()
        if not acquired:
            lock_timeouts_total.inc()
            raise LockTimeout(order_id, self.timeout)
        lock_wait_seconds.observe(time.monotonic() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Lock lease for order_id=%s expired before release", order_id)
