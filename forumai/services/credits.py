from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

from forumai.core.config import get_settings
from forumai.providers.remote.base import AccountService, AccountStatus
from forumai.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditBalance:
    tenant_id: str
    remaining: int
    total: int
    # Monotonic timestamp of the remote fetch that produced this snapshot.
    fetched_at: float

    def age_s(self, now: float) -> float:
        # Age of the snapshot in monotonic seconds.
        return max(0.0, now - self.fetched_at)

    def affordable(self, cost: int) -> bool:
        # Check a cost against the cached remaining balance.
        return cost <= self.remaining


_credit_cache: dict[str, CreditBalance] = {}
_credit_cache_lock = asyncio.Lock()


def prime_credit_cache(status: AccountStatus, *, now: float | None = None) -> CreditBalance:
    # Status refreshes from the state resolver double as credit fetches.
    balance = CreditBalance(
        tenant_id=status.tenant_id,
        remaining=max(0, int(status.credits_remaining)),
        total=max(0, int(status.credits_total)),
        fetched_at=time.monotonic() if now is None else now,
    )
    _credit_cache[status.tenant_id] = balance
    return balance


def invalidate_credit_cache(tenant_id: str | None = None) -> None:
    # Drop one tenant's snapshot, or all of them, so the next read refetches.
    if tenant_id is None:
        _credit_cache.clear()
        return
    _credit_cache.pop(tenant_id, None)


def reset_credit_cache() -> None:
    # Clear every cached balance; used by tests and process resets.
    _credit_cache.clear()


def record_consumption(tenant_id: str, credits: int) -> CreditBalance | None:
    # Keep the cached balance honest between remote refreshes; never below zero.
    cached = _credit_cache.get(tenant_id)
    if cached is None or credits <= 0:
        return cached
    updated = replace(cached, remaining=max(0, cached.remaining - int(credits)))
    _credit_cache[tenant_id] = updated
    return updated


class CreditLedgerView:
    def __init__(
        self,
        accounts: AccountService,
        *,
        tenant_id: str,
        api_key: str,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._accounts = accounts
        self._tenant_id = tenant_id
        self._api_key = api_key
        self._time = time_source or time.monotonic

    async def balance(self, *, max_age_s: float | None = None, force_fresh: bool = False) -> CreditBalance:
        """Return the credit snapshot, refreshing remotely when older than ``max_age_s``.

        ``max_age_s=0`` forces a live read. TransportError and AuthError from the
        account service propagate; callers decide whether to absorb them.
        """
        if max_age_s is None:
            max_age_s = get_settings().credit_cache_ttl_s
        now = self._time()
        cached = _credit_cache.get(self._tenant_id)
        if not force_fresh and max_age_s > 0 and cached is not None and cached.age_s(now) <= max_age_s:
            increment_counter("credit_cache_hits_total")
            return cached

        status = await self._accounts.get_status(tenant_id=self._tenant_id, api_key=self._api_key)
        async with _credit_cache_lock:
            balance = prime_credit_cache(status, now=self._time())
        logger.info(
            "credit_balance_refreshed tenant_id=%s remaining=%s total=%s",
            self._tenant_id,
            balance.remaining,
            balance.total,
        )
        return balance

    def record_consumption(self, credits: int) -> CreditBalance | None:
        # Apply a local charge to this tenant's cached balance.
        return record_consumption(self._tenant_id, credits)


async def get_credit_balance(
    accounts: AccountService,
    tenant_id: str,
    *,
    api_key: str,
    max_age_s: float | None = None,
    force_fresh: bool = False,
) -> CreditBalance:
    # Read a tenant's balance through the shared cache.
    view = CreditLedgerView(accounts, tenant_id=tenant_id, api_key=api_key)
    return await view.balance(max_age_s=max_age_s, force_fresh=force_fresh)
