"""Per-account "operation in flight" guards.

A guard is held for the whole duration of a provisioning attempt or a
subscription cancellation and released on every exit path. A second caller for
the same ``(operation, account)`` pair is rejected with
:class:`~src.core.exceptions.AlreadyInProgress` before it can reach the network.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Set

import redis.asyncio as redis
from redis.exceptions import LockNotOwnedError

from src.core.config import settings
from src.core.exceptions import AlreadyInProgress
from src.services.limits import get_redis_client


logger = logging.getLogger(__name__)

PROVISIONING = "provisioning"
CANCELLATION = "cancellation"


def _guard_key(operation: str, account_id: str) -> str:
    return f"guard:{operation}:{account_id}"


class GuardBackend:
    """Storage for held guard keys.

    ``acquire`` returns an opaque lease, or ``None`` when the key is already
    held. Only the returned lease can release the key.
    """

    async def acquire(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def release(self, key: str, lease: Any) -> None:
        raise NotImplementedError

    async def is_held(self, key: str) -> bool:
        raise NotImplementedError


class MemoryGuardBackend(GuardBackend):
    """In-process guard storage.

    ``acquire`` performs its check-and-set without awaiting, so it cannot
    interleave with another coroutine on the same event loop.
    """

    def __init__(self) -> None:
        self._held: Set[str] = set()

    async def acquire(self, key: str) -> Optional[str]:
        if key in self._held:
            return None
        self._held.add(key)
        return key

    async def release(self, key: str, lease: str) -> None:
        self._held.discard(lease)

    async def is_held(self, key: str) -> bool:
        return key in self._held


class RedisGuardBackend(GuardBackend):
    """Guard storage shared between worker processes.

    Each hold is a redis-py :class:`~redis.asyncio.lock.Lock` with its own
    token. Releasing deletes the key only while that token is still stored, so
    a holder whose lease expired cannot drop the lease of the next holder.
    """

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[redis.Redis]] = get_redis_client,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._client_factory = client_factory
        self._ttl = ttl_seconds or settings.guard.ttl_seconds

    async def acquire(self, key: str) -> Optional[Any]:
        client = await self._client_factory()
        lock = client.lock(key, timeout=self._ttl, blocking=False, thread_local=False)
        if await lock.acquire():
            return lock
        return None

    async def release(self, key: str, lease: Any) -> None:
        try:
            await lease.release()
        except LockNotOwnedError:
            logger.warning("Guard %s expired before release; lease now belongs to another holder", key)

    async def is_held(self, key: str) -> bool:
        client = await self._client_factory()
        return bool(await client.exists(key))


def get_guard_backend(backend_type: Optional[str] = None) -> GuardBackend:
    """Build the guard backend selected in settings."""

    backend_type = backend_type or settings.guard.backend
    if backend_type == "redis":
        return RedisGuardBackend()
    if backend_type == "memory":
        return MemoryGuardBackend()
    raise ValueError(f"Unknown guard backend: {backend_type}")


class OperationGuard:
    """Scoped per-account guard around one kind of remote operation."""

    def __init__(self, backend: Optional[GuardBackend] = None) -> None:
        self.backend = backend or get_guard_backend()

    @asynccontextmanager
    async def hold(self, operation: str, account_id: str) -> AsyncIterator[None]:
        key = _guard_key(operation, account_id)
        lease = await self.backend.acquire(key)
        if lease is None:
            logger.info("Rejected %s for account %s: already in progress", operation, account_id)
            raise AlreadyInProgress(f"{operation.capitalize()} already in progress")
        try:
            yield
        finally:
            await self.backend.release(key, lease)

    async def is_held(self, operation: str, account_id: str) -> bool:
        return await self.backend.is_held(_guard_key(operation, account_id))
