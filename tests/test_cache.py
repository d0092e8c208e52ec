from concurrent.futures import ThreadPoolExecutor
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cache import (
    CacheCoordinator,
    CacheDurations,
    CacheKeys,
    MemoryCache,
    MutationKind,
    invalidations_for,
)
from database import Base
from schemas import CategoryIn, CollectionIn, ExpenseIn, YearlyBalanceIn
from services import (
    BalanceService,
    CategoryService,
    CollectionFilters,
    CollectionService,
    ExpenseFilters,
    ExpenseService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenStore(MemoryCache):
    def delete_prefix(self, prefix: str) -> int:
        raise ConnectionError("cache down")

    def get(self, key: str):
        raise ConnectionError("cache down")


def test_memory_cache_expires_entries() -> None:
    clock = FakeClock()
    store = MemoryCache(clock=clock)
    store.set("treasury:a", 1, ttl_seconds=10)
    store.set("treasury:b", 2, ttl_seconds=100)

    clock.now = 50
    assert store.get("treasury:a") is None
    assert store.get("treasury:b") == 2
    clock.now = 200
    assert store.purge_expired() == 1
    assert store.keys() == []


def test_delete_prefix_is_idempotent() -> None:
    store = MemoryCache()
    store.set(CacheKeys.dashboard_year(2024), {"x": 1}, 60)
    store.set(CacheKeys.DASHBOARD_CURRENT, {"x": 2}, 60)
    store.set(CacheKeys.categories(), [], 60)

    assert store.delete_prefix(CacheKeys.DASHBOARD) == 2
    assert store.delete_prefix(CacheKeys.DASHBOARD) == 0
    assert store.keys() == [CacheKeys.categories()]


def test_invalidation_map() -> None:
    expense = invalidations_for(MutationKind.expense, entity_id=5)
    assert CacheKeys.expense_entry(5) in expense
    assert CacheKeys.YEARLY_BALANCE in expense
    assert not CacheKeys.expense_entry(50).startswith(CacheKeys.expense_entry(5))
    for prefix in (CacheKeys.DASHBOARD, CacheKeys.ANALYTICS, CacheKeys.CATEGORIES):
        assert prefix in expense

    balance = invalidations_for(MutationKind.yearly_balance, year=2024)
    assert CacheKeys.yearly_balance(2024) in balance
    assert CacheKeys.dashboard_year(2024) in balance
    assert CacheKeys.yearly_summary(2024) in balance
    assert CacheKeys.dashboard_year(2023) not in balance

    sub = invalidations_for(MutationKind.subcategory, category_id=3)
    assert CacheKeys.subcategories(3) in sub
    assert len(sub) == len(set(sub))


def test_write_invalidates_cached_listing() -> None:
    session = make_session()
    cache = CacheCoordinator(MemoryCache())
    categories = CategoryService(session, cache=cache)
    venue = categories.create(CategoryIn(name="Venue"))

    first = categories.list_all()
    assert first[0]["total_amount_cents"] == 0
    assert cache.store.keys() == [CacheKeys.categories()]

    ExpenseService(session, cache=cache).create(
        ExpenseIn(
            amount_cents=700,
            description="Chairs",
            expense_date=date(2024, 8, 1),
            category_id=venue.id,
        )
    )
    assert cache.store.keys() == []
    assert categories.list_all()[0]["total_amount_cents"] == 700


def test_failed_write_leaves_cache_alone() -> None:
    session = make_session()
    cache = CacheCoordinator(MemoryCache())
    balances = BalanceService(session, cache=cache)
    balances.create_yearly_balance(YearlyBalanceIn(year=2024, opening_balance_cents=0))
    balances.list_yearly_balances()
    assert CacheKeys.YEARLY_BALANCES in cache.store.keys()

    try:
        balances.create_yearly_balance(
            YearlyBalanceIn(year=2024, opening_balance_cents=1)
        )
    except ValueError:
        pass
    assert CacheKeys.YEARLY_BALANCES in cache.store.keys()


def test_invalidation_runs_on_executor() -> None:
    store = MemoryCache()
    store.set(CacheKeys.ACCOUNT_BALANCE, 1, CacheDurations.ACCOUNT_BALANCE)
    with ThreadPoolExecutor(max_workers=1) as pool:
        cache = CacheCoordinator(store, executor=pool)
        directives = cache.after_commit(MutationKind.account_balance)
    assert CacheKeys.ACCOUNT_BALANCE in directives
    assert store.keys() == []


def test_cache_failures_never_reach_callers() -> None:
    cache = CacheCoordinator(BrokenStore())
    assert cache.get_or_compute("treasury:x", 10, lambda: 42) == 42
    assert cache.apply([CacheKeys.DASHBOARD, CacheKeys.ANALYTICS]) == 0


def test_disabled_cache_always_computes() -> None:
    calls = []
    cache = CacheCoordinator(MemoryCache(), enabled=False)
    for _ in range(2):
        cache.get_or_compute("treasury:x", 10, lambda: calls.append(1) or len(calls))
    assert len(calls) == 2
    assert cache.store.keys() == []


def test_ledger_write_refreshes_yearly_balance_detail() -> None:
    session = make_session()
    cache = CacheCoordinator(MemoryCache())
    balances = BalanceService(session, cache=cache)
    balances.create_yearly_balance(
        YearlyBalanceIn(
            year=2024, opening_balance_cents=10000, closing_balance_cents=13500
        )
    )
    before = balances.yearly_balance_detail(2024)["year_summary"]
    assert before["theoretical_closing_cents"] == 10000
    assert before["balance_difference_cents"] == 3500

    office = CategoryService(session, cache=cache).create(CategoryIn(name="Office"))
    ExpenseService(session, cache=cache).create(
        ExpenseIn(
            amount_cents=1200,
            description="Printer ink",
            expense_date=date(2024, 4, 2),
            category_id=office.id,
        )
    )
    after = balances.yearly_balance_detail(2024)["year_summary"]
    assert after["theoretical_closing_cents"] == 8800
    assert after["balance_difference_cents"] == 4700

    CollectionService(session, cache=cache).create(
        CollectionIn(
            amount_cents=300,
            description="Raffle",
            collection_date=date(2024, 5, 1),
            collection_mode="CASH",
        )
    )
    assert balances.yearly_balance_detail(2024)["year_summary"][
        "theoretical_closing_cents"
    ] == 9100


def test_expense_pages_and_detail_are_cached_until_written() -> None:
    session = make_session()
    cache = CacheCoordinator(MemoryCache())
    office = CategoryService(session).create(CategoryIn(name="Office"))
    expenses = ExpenseService(session, cache=cache)
    pens = expenses.create(
        ExpenseIn(
            amount_cents=400,
            description="Pens",
            expense_date=date(2024, 2, 1),
            category_id=office.id,
        )
    )

    page = expenses.page(ExpenseFilters(), page=1, limit=10)
    assert [e["id"] for e in page["items"]] == [pens.id]
    assert page["has_more"] is False
    assert expenses.detail(pens.id)["amount_cents"] == 400
    keys = cache.store.keys()
    assert CacheKeys.expenses(ExpenseFilters().as_key(), 1, 10) in keys
    assert f"{CacheKeys.expense_entry(pens.id)}detail" in keys

    expenses.approve(pens.id)
    assert cache.store.keys() == []
    assert expenses.detail(pens.id)["is_approved"] is True
    assert expenses.page(ExpenseFilters(is_approved=True), page=1, limit=10)["items"]


def test_collection_detail_survives_writes_to_other_entries() -> None:
    session = make_session()
    cache = CacheCoordinator(MemoryCache())
    collections = CollectionService(session, cache=cache)
    created = [
        collections.create(
            CollectionIn(
                amount_cents=100 * n,
                description=f"Box {n}",
                collection_date=date(2024, 1, n),
                collection_mode="CASH",
            )
        )
        for n in range(1, 3)
    ]
    first, second = created
    collections.detail(first.id)
    collections.page(CollectionFilters(), page=1, limit=1)

    collections.verify(second.id)
    keys = cache.store.keys()
    assert f"{CacheKeys.collection_entry(first.id)}detail" in keys
    assert not any(k.startswith(CacheKeys.COLLECTIONS) for k in keys)
