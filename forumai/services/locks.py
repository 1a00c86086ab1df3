from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

from forumai.core.config import get_settings
from forumai.core.errors import QueueBusyError
from forumai.services.resilience import get_coordination_redis


logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "forumai:lock"
_POLL_INTERVAL_S = 0.05

_local_locks: dict[str, asyncio.Lock] = {}
_local_owners: dict[str, str] = {}


@dataclass(slots=True)
class ScopeLock:
    scope: str
    token: str
    redis: Any | None
    local: bool


def _lock_key(scope: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{scope}"


def _local_lock(scope: str) -> asyncio.Lock:
    # One asyncio.Lock per scope, created lazily.
    lock = _local_locks.get(scope)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[scope] = lock
    return lock


async def acquire_scope_lock(scope: str, *, wait_s: float = 0.0) -> ScopeLock | None:
    """Take the advisory lock for ``scope``; None when still held after ``wait_s``."""
    settings = get_settings()
    token = uuid4().hex
    redis = get_coordination_redis()
    if redis is not None:
        ttl_s = max(5, int(settings.queue_lock_ttl_s))
        deadline = time.monotonic() + max(0.0, wait_s)
        while True:
            if await redis.set(_lock_key(scope), token, nx=True, ex=ttl_s):
                return ScopeLock(scope=scope, token=token, redis=redis, local=False)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(_POLL_INTERVAL_S)

    # In-process lock for single-node deployments and tests.
    lock = _local_lock(scope)
    if wait_s <= 0:
        if lock.locked():
            return None
        await lock.acquire()
    else:
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait_s)
        except asyncio.TimeoutError:
            return None
    _local_owners[scope] = token
    return ScopeLock(scope=scope, token=token, redis=None, local=True)


async def release_scope_lock(lock: ScopeLock) -> None:
    # Release only while still the owner so an expired holder cannot clobber a newer one.
    if lock.local:
        local = _local_locks.get(lock.scope)
        if local is not None and local.locked() and _local_owners.get(lock.scope) == lock.token:
            _local_owners.pop(lock.scope, None)
            local.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(_lock_key(lock.scope))
    if current == lock.token:
        await lock.redis.delete(_lock_key(lock.scope))
    else:
        logger.warning("scope_lock_lost scope=%s", lock.scope)


@asynccontextmanager
async def scope_lock(scope: str, *, wait_s: float) -> AsyncIterator[ScopeLock]:
    # Hold the scope lock for the block or raise QueueBusyError.
    lock = await acquire_scope_lock(scope, wait_s=wait_s)
    if lock is None:
        raise QueueBusyError(f"lock for {scope} is held by another operation")
    try:
        yield lock
    finally:
        await release_scope_lock(lock)


def reset_local_locks() -> None:
    # Drop in-process locks; used by tests.
    _local_locks.clear()
    _local_owners.clear()
