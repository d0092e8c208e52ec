"""Read-model cache and the invalidation map tied to ledger mutations.

Derived views (dashboards, analytics, category listings) are cached under the
``treasury:`` key space. Every committed write maps to a fixed set of key
prefixes through :func:`invalidations_for`; :class:`CacheCoordinator` deletes
them after the commit and never lets a cache failure reach the writer.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROOT = "treasury:"


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[object]: ...

    def set(self, key: str, value: object, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...


class MemoryCache:
    """Thread-safe in-process TTL store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[object]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: object, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [k for k, (exp, _) in self._entries.items() if exp <= now]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


def generate_filter_key(filters: Optional[Mapping[str, object]]) -> str:
    if not filters:
        return "default"
    parts = [f"{k}:{filters[k]}" for k in sorted(filters) if filters[k] is not None]
    return "|".join(parts) or "default"


class CacheKeys:
    DASHBOARD = f"{ROOT}dashboard"
    DASHBOARD_CURRENT = f"{ROOT}dashboard:current"
    ANALYTICS = f"{ROOT}analytics"
    CATEGORIES = f"{ROOT}categories"
    STRUCTURE = f"{ROOT}structure"
    SUBCATEGORIES = f"{ROOT}subcategories"
    EXPENSES = f"{ROOT}expenses"
    EXPENSE = f"{ROOT}expense:"
    COLLECTIONS = f"{ROOT}collections"
    COLLECTION = f"{ROOT}collection:"
    YEARLY_BALANCES = f"{ROOT}yearly-balances"
    YEARLY_BALANCE = f"{ROOT}yearly-balance:"
    ACCOUNT_BALANCE = f"{ROOT}account-balance"
    BALANCE_HISTORY = f"{ROOT}balance-history"
    REPORTS = f"{ROOT}report"

    @staticmethod
    def dashboard_year(year: int) -> str:
        return f"{ROOT}dashboard:year:{year}"

    @staticmethod
    def analytics(name: str, token: str = "default") -> str:
        return f"{ROOT}analytics:{name}:{token}"

    @staticmethod
    def yearly_summary(year: int) -> str:
        return f"{ROOT}analytics:yearly:{year}"

    @staticmethod
    def categories(filters: Optional[Mapping[str, object]] = None) -> str:
        return f"{ROOT}categories:{generate_filter_key(filters)}"

    @staticmethod
    def structure(include_inactive: bool, include_amounts: bool) -> str:
        return f"{ROOT}structure:{int(include_inactive)}:{int(include_amounts)}"

    @staticmethod
    def subcategories(category_id: int) -> str:
        return f"{ROOT}subcategories:{category_id}"

    @staticmethod
    def expenses(filters: Mapping[str, object], page: int, limit: int) -> str:
        return f"{CacheKeys.EXPENSES}:{generate_filter_key(filters)}:{page}:{limit}"

    @staticmethod
    def expense_entry(expense_id: int) -> str:
        # Trailing colon keeps id 5 from matching id 50 on prefix deletes.
        return f"{CacheKeys.EXPENSE}{expense_id}:"

    @staticmethod
    def collections(filters: Mapping[str, object], page: int, limit: int) -> str:
        return f"{CacheKeys.COLLECTIONS}:{generate_filter_key(filters)}:{page}:{limit}"

    @staticmethod
    def collection_entry(collection_id: int) -> str:
        return f"{CacheKeys.COLLECTION}{collection_id}:"

    @staticmethod
    def report(name: str, token: str = "default") -> str:
        return f"{CacheKeys.REPORTS}:{name}:{token}"

    @staticmethod
    def yearly_balance(year: int) -> str:
        return f"{ROOT}yearly-balance:{year}"

    @staticmethod
    def balance_history(limit: int) -> str:
        return f"{ROOT}balance-history:{limit}"


class CacheDurations:
    DASHBOARD = 300
    ANALYTICS = 600
    CATEGORIES = 3600
    STRUCTURE = 1800
    YEARLY_BALANCE = 1800
    ACCOUNT_BALANCE = 300
    LISTS = 600
    ENTITY = 1800
    REPORTS = 3600


class MutationKind(str, Enum):
    category = "category"
    subcategory = "subcategory"
    expense = "expense"
    collection = "collection"
    yearly_balance = "yearly_balance"
    account_balance = "account_balance"


def invalidations_for(
    kind: MutationKind,
    *,
    entity_id: Optional[int] = None,
    category_id: Optional[int] = None,
    year: Optional[int] = None,
) -> list[str]:
    """Key prefixes made stale by a committed mutation of ``kind``."""
    if kind in (MutationKind.category, MutationKind.subcategory):
        prefixes = [
            CacheKeys.CATEGORIES,
            CacheKeys.STRUCTURE,
            CacheKeys.SUBCATEGORIES,
            CacheKeys.DASHBOARD,
            CacheKeys.ANALYTICS,
            CacheKeys.REPORTS,
        ]
    elif kind == MutationKind.expense:
        prefixes = [CacheKeys.EXPENSES]
        if entity_id is not None:
            prefixes.append(CacheKeys.expense_entry(entity_id))
        # Category listings carry expense counts and totals.
        prefixes += [CacheKeys.CATEGORIES, CacheKeys.STRUCTURE, CacheKeys.SUBCATEGORIES]
        prefixes += [CacheKeys.DASHBOARD, CacheKeys.ANALYTICS, CacheKeys.REPORTS]
        # Yearly balance detail carries the year's reconciliation figures.
        prefixes.append(CacheKeys.YEARLY_BALANCE)
    elif kind == MutationKind.collection:
        prefixes = [CacheKeys.COLLECTIONS]
        if entity_id is not None:
            prefixes.append(CacheKeys.collection_entry(entity_id))
        prefixes += [CacheKeys.DASHBOARD, CacheKeys.ANALYTICS, CacheKeys.REPORTS]
        prefixes.append(CacheKeys.YEARLY_BALANCE)
    elif kind == MutationKind.yearly_balance:
        prefixes = [CacheKeys.YEARLY_BALANCES]
        if year is not None:
            prefixes += [
                CacheKeys.yearly_balance(year),
                CacheKeys.dashboard_year(year),
                CacheKeys.yearly_summary(year),
                CacheKeys.DASHBOARD_CURRENT,
            ]
        else:
            prefixes += [CacheKeys.YEARLY_BALANCE, CacheKeys.DASHBOARD]
        prefixes.append(CacheKeys.REPORTS)
    elif kind == MutationKind.account_balance:
        prefixes = [
            CacheKeys.ACCOUNT_BALANCE,
            CacheKeys.BALANCE_HISTORY,
            CacheKeys.DASHBOARD,
        ]
    else:  # pragma: no cover
        raise ValueError(f"Unknown mutation kind: {kind}")

    if kind == MutationKind.subcategory and category_id is not None:
        prefixes.append(CacheKeys.subcategories(category_id))
    return list(dict.fromkeys(prefixes))


class CacheCoordinator:
    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        executor: Optional[Executor] = None,
        enabled: bool = True,
    ) -> None:
        self.store: CacheStore = store if store is not None else MemoryCache()
        self.executor = executor
        self.enabled = enabled

    def get_or_compute(self, key: str, ttl_seconds: int, producer: Callable[[], T]) -> T:
        if not self.enabled:
            return producer()
        try:
            cached = self.store.get(key)
        except Exception:
            logger.exception(f"cache_get_failed: key={key}")
            cached = None
        if cached is not None:
            logger.debug(f"cache_hit: key={key}")
            return cached  # type: ignore[return-value]

        logger.debug(f"cache_miss: key={key}")
        value = producer()
        try:
            self.store.set(key, value, ttl_seconds)
        except Exception:
            logger.exception(f"cache_set_failed: key={key}")
        return value

    def after_commit(
        self,
        kind: MutationKind,
        *,
        entity_id: Optional[int] = None,
        category_id: Optional[int] = None,
        year: Optional[int] = None,
    ) -> list[str]:
        """Schedule invalidation for a committed write and return the directives."""
        directives = invalidations_for(
            kind, entity_id=entity_id, category_id=category_id, year=year
        )
        if not self.enabled:
            return directives
        if self.executor is None:
            self.apply(directives)
            return directives
        try:
            self.executor.submit(self.apply, directives)
        except RuntimeError:
            logger.warning("cache_executor_unavailable: applying inline")
            self.apply(directives)
        return directives

    def apply(self, directives: list[str]) -> int:
        removed = 0
        for prefix in directives:
            try:
                removed += self.store.delete_prefix(prefix)
            except Exception:
                logger.exception(f"cache_invalidation_failed: prefix={prefix}")
        logger.debug(f"cache_invalidated: prefixes={len(directives)} keys={removed}")
        return removed
