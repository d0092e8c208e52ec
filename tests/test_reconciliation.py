from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    DuplicateSnapshotDate,
    DuplicateYear,
    HasLedgerActivity,
    NotFound,
    ValidationFailed,
    YearOutOfRange,
)
from models import PaymentStatus, PaymentTransaction
from periods import ALL_TIME, year_window
from schemas import (
    AccountBalanceIn,
    CategoryIn,
    CollectionIn,
    ExpenseIn,
    YearlyBalanceIn,
    YearlyBalanceUpdate,
)
from services import (
    AnalyticsService,
    BalanceService,
    CategoryService,
    CollectionService,
    ExpenseService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _seed_2024(session) -> None:
    category = CategoryService(session).create(CategoryIn(name="General"))
    CollectionService(session).create(
        CollectionIn(
            amount_cents=2000,
            description="Cash donations",
            collection_date=date(2024, 2, 14),
            collection_mode="CASH",
        )
    )
    session.add(
        PaymentTransaction(
            amount_cents=3000,
            status=PaymentStatus.completed,
            payment_provider="razorpay",
            reference_type="MEMBERSHIP",
            created_at=datetime(2024, 7, 1, 10, 0),
        )
    )
    session.commit()
    ExpenseService(session).create(
        ExpenseIn(
            amount_cents=1200,
            description="Stationery",
            expense_date=date(2024, 9, 9),
            category_id=category.id,
        )
    )


def test_yearly_reconciliation_scenario() -> None:
    session = make_session()
    _seed_2024(session)
    balances = BalanceService(session)
    balances.create_yearly_balance(
        YearlyBalanceIn(year=2024, opening_balance_cents=10000)
    )

    assert balances.net_movement(year_window(2024)) == 3800
    summary = balances.yearly_summary(2024)
    assert summary.theoretical_closing_cents == 13800
    assert summary.balance_difference_cents is None
    assert summary.is_reconciled is False

    balances.update_yearly_balance(
        2024, YearlyBalanceUpdate(closing_balance_cents=13500)
    )
    summary = balances.yearly_summary(2024)
    assert summary.balance_difference_cents == -300
    assert summary.is_reconciled is True
    assert summary.collections.manual == 2000
    assert summary.collections.online == 3000


def test_summary_without_yearly_balance() -> None:
    session = make_session()
    _seed_2024(session)
    summary = BalanceService(session).yearly_summary(2024)
    assert summary.opening_balance_cents == 0
    assert summary.theoretical_closing_cents == 3800
    assert summary.balance_difference_cents is None
    assert summary.has_yearly_balance is False


def test_year_bounds() -> None:
    session = make_session()
    balances = BalanceService(session)
    with pytest.raises(YearOutOfRange):
        balances.yearly_summary(1999)
    with pytest.raises(YearOutOfRange):
        balances.yearly_summary(2051)
    assert balances.yearly_summary(2000).net_movement_cents == 0
    assert balances.yearly_summary(2050).net_movement_cents == 0


def test_analytics_reject_years_outside_bounds() -> None:
    session = make_session()
    analytics = AnalyticsService(session)
    for read in (
        analytics.collection_analytics,
        analytics.online_analytics,
        analytics.manual_analytics,
        analytics.expense_analytics,
        analytics.category_analytics,
    ):
        with pytest.raises(YearOutOfRange):
            read(ALL_TIME, 1990)
    assert analytics.collection_analytics(ALL_TIME, 2050)["trends"]["year"] == 2050


def test_yearly_balance_lifecycle() -> None:
    session = make_session()
    balances = BalanceService(session)
    balances.create_yearly_balance(YearlyBalanceIn(year=2023, opening_balance_cents=500))

    with pytest.raises(DuplicateYear):
        balances.create_yearly_balance(
            YearlyBalanceIn(year=2023, opening_balance_cents=1)
        )

    balances.update_yearly_balance(2023, YearlyBalanceUpdate(notes="audited"))
    closed = balances.update_yearly_balance(
        2023, YearlyBalanceUpdate(closing_balance_cents=900)
    )
    # Setting the same closing again is a plain update.
    again = balances.update_yearly_balance(
        2023, YearlyBalanceUpdate(closing_balance_cents=900)
    )
    assert closed.closing_balance_cents == again.closing_balance_cents == 900
    assert again.notes == "audited"

    with pytest.raises(ValidationFailed):
        balances.update_yearly_balance(
            2023, YearlyBalanceUpdate(opening_balance_cents=None)
        )

    listing = balances.list_yearly_balances()
    assert listing["summary"] == {
        "total_years": 1,
        "latest_year": 2023,
        "oldest_year": 2023,
    }

    balances.delete_yearly_balance(2023)
    with pytest.raises(NotFound):
        balances.get_yearly_balance(2023)


def test_delete_yearly_balance_blocked_by_activity() -> None:
    session = make_session()
    _seed_2024(session)
    balances = BalanceService(session)
    balances.create_yearly_balance(YearlyBalanceIn(year=2024, opening_balance_cents=0))

    with pytest.raises(HasLedgerActivity) as excinfo:
        balances.delete_yearly_balance(2024)
    assert excinfo.value.details == {"expense_count": 1, "collection_count": 1}


def test_account_balance_snapshots() -> None:
    session = make_session()
    balances = BalanceService(session)
    assert balances.current_account_balance() is None

    first = balances.record_account_balance(
        AccountBalanceIn(current_balance_cents=10000, balance_date=date(2024, 1, 31))
    )
    balances.record_account_balance(
        AccountBalanceIn(current_balance_cents=12500, balance_date=date(2024, 3, 31))
    )
    balances.record_account_balance(
        AccountBalanceIn(current_balance_cents=11000, balance_date=date(2024, 2, 29))
    )

    with pytest.raises(DuplicateSnapshotDate):
        balances.record_account_balance(
            AccountBalanceIn(current_balance_cents=1, balance_date=date(2024, 1, 31))
        )

    latest = balances.current_account_balance()
    assert latest.balance_date == date(2024, 3, 31)
    assert latest.current_balance_cents == 12500

    corrected = balances.update_account_balance(
        first.id,
        AccountBalanceIn(current_balance_cents=9000, balance_date=date(2024, 1, 31)),
    )
    assert corrected.current_balance_cents == 9000

    history = balances.balance_history(limit=500)
    changes = [row["change_cents"] for row in history["balance_history"]]
    assert changes == [1500, 2000, None]
    assert history["summary"]["total_records"] == 3
    assert history["summary"]["latest_balance_cents"] == 12500

    with_statement = balances.set_bank_statement(first.id, "/uploads/jan.pdf")
    assert with_statement.bank_statement_url == "/uploads/jan.pdf"
