from datetime import date, datetime

import pytest

from cache import CacheCoordinator, CacheKeys, MemoryCache
from dashboard import DashboardService
from database import Base, build_engine, build_session_factory
from errors import YearOutOfRange
from models import PaymentStatus, PaymentTransaction
from scheduler import SchedulerManager
from schemas import (
    AccountBalanceIn,
    CategoryIn,
    CollectionIn,
    ExpenseIn,
    YearlyBalanceIn,
)
from services import BalanceService, CategoryService, CollectionService, ExpenseService
from trends import INCREASING


def make_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'treasury.db'}")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


def _seed(factory) -> None:
    with factory() as session:
        general = CategoryService(session).create(CategoryIn(name="General"))
        expenses = ExpenseService(session)
        collections = CollectionService(session)
        collections.create(
            CollectionIn(
                amount_cents=2000,
                description="Cash box",
                collection_date=date(2024, 1, 10),
                collection_mode="CASH",
            )
        )
        expenses.create(
            ExpenseIn(
                amount_cents=1200,
                description="Stationery",
                expense_date=date(2024, 2, 1),
                category_id=general.id,
            )
        )
        collections.create(
            CollectionIn(
                amount_cents=1000,
                description="Raffle",
                collection_date=date(2023, 5, 5),
                collection_mode="CASH",
            )
        )
        expenses.create(
            ExpenseIn(
                amount_cents=4000,
                description="Hall hire",
                expense_date=date(2023, 6, 6),
                category_id=general.id,
            )
        )
        session.add(
            PaymentTransaction(
                amount_cents=3000,
                status=PaymentStatus.completed,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2024, 2, 20, 12, 0),
            )
        )
        session.commit()
        balances = BalanceService(session)
        balances.record_account_balance(
            AccountBalanceIn(current_balance_cents=10000, balance_date=date(2024, 3, 1))
        )
        balances.create_yearly_balance(
            YearlyBalanceIn(year=2024, opening_balance_cents=10000)
        )


def test_main_dashboard(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _seed(factory)

    data = DashboardService(factory, workers=2).main_dashboard(today=date(2024, 3, 15))

    assert data["overview"] == {
        "year": 2024,
        "current_balance_cents": 10000,
        "balance_date": date(2024, 3, 1),
        "total_collections_cents": 5000,
        "total_expenses_cents": 1200,
        "net_movement_cents": 3800,
    }
    assert data["collections"]["online"]["percent"] == 60.0
    assert data["collections"]["manual"]["percent"] == 40.0
    assert data["expenses"]["category_breakdown"][0]["label"] == "General"
    assert len(data["trends"]["monthly"]) == 12
    assert [e["description"] for e in data["recent_activity"]["expenses"]] == [
        "Stationery",
        "Hall hire",
    ]
    assert data["summary"]["financial_health"] == 90


def test_yearly_dashboard(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _seed(factory)
    cache = CacheCoordinator(MemoryCache())
    dashboards = DashboardService(factory, cache=cache, workers=2)

    data = dashboards.yearly_dashboard(2024)

    assert data["yearly_balance"]["opening_balance_cents"] == 10000
    assert data["financial_summary"]["theoretical_closing_cents"] == 13800
    assert data["trends"]["quarterly"][0]["net_movement"] == 3800
    assert data["insights"]["best_month"] == "January"
    assert data["breakdowns"]["top_expenses"][0]["amount_cents"] == 1200
    assert data["breakdowns"]["top_collections"][0]["amount_cents"] == 2000
    assert CacheKeys.dashboard_year(2024) in cache.store.keys()

    with pytest.raises(YearOutOfRange):
        dashboards.yearly_dashboard(1999)


def test_surplus_deficit_projection(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _seed(factory)

    data = DashboardService(factory, workers=2).surplus_deficit(
        2024, today=date(2024, 3, 15)
    )

    assert data["current"]["surplus_cents"] == 3800
    assert data["current"]["status"] == "surplus"
    assert [h["year"] for h in data["historical"]] == [2021, 2022, 2023]
    assert data["historical"][2]["surplus_cents"] == -3000
    assert data["historical"][2]["expenses_cents"] == 4000
    assert data["projected"]["months_elapsed"] == 3
    assert data["projected"]["surplus_cents"] == 15200
    assert data["trends"]["direction"] == INCREASING
    assert data["trends"]["improving"] is True
    assert data["insights"]["worst_year"] == 2023


def test_surplus_deficit_for_past_year_uses_full_year(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _seed(factory)

    data = DashboardService(factory, workers=2).surplus_deficit(
        2023, today=date(2024, 3, 15)
    )
    assert data["projected"]["months_elapsed"] == 12
    assert data["projected"]["surplus_cents"] == -3000
    assert data["current"]["status"] == "deficit"


def test_scheduler_jobs_sweep_and_warm(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _seed(factory)
    cache = CacheCoordinator(MemoryCache())
    cache.store.set(CacheKeys.analytics("stale"), {"x": 1}, 0)
    manager = SchedulerManager(
        factory, cache, DashboardService(factory, cache=cache, workers=2)
    )

    assert manager.sweep_cache() == 1
    manager.warm_dashboards()
    assert CacheKeys.DASHBOARD_CURRENT in cache.store.keys()
