from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cache import CacheCoordinator, CacheKeys, MemoryCache
from database import Base
from errors import YearOutOfRange
from models import PaymentStatus, PaymentTransaction
from periods import ALL_TIME, DateWindow, year_window
from schemas import (
    CategoryIn,
    CollectionIn,
    ExpenseIn,
    YearlyBalanceIn,
    YearlyBalanceUpdate,
)
from services import (
    BalanceService,
    CategoryService,
    CollectionService,
    ExpenseService,
    ReportService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _seed(session) -> int:
    venue = CategoryService(session).create(CategoryIn(name="Venue"))
    expenses = ExpenseService(session)
    for amount, day, receipt in [
        (4000, date(2024, 3, 5), "/uploads/hall.pdf"),
        (1000, date(2024, 6, 9), None),
        (700, date(2023, 11, 1), None),
    ]:
        expenses.create(
            ExpenseIn(
                amount_cents=amount,
                description="Hall booking " + "x" * 150,
                expense_date=day,
                category_id=venue.id,
                receipt_url=receipt,
            )
        )
    collections = CollectionService(session)
    for amount, day, receipt in [
        (3000, date(2024, 1, 15), "/uploads/dues.pdf"),
        (2000, date(2024, 3, 20), "/uploads/raffle.pdf"),
    ]:
        collections.create(
            CollectionIn(
                amount_cents=amount,
                description="Dues",
                collection_date=day,
                collection_mode="CASH",
                receipt_url=receipt,
            )
        )
    session.add_all(
        [
            PaymentTransaction(
                amount_cents=1500,
                status=PaymentStatus.completed,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2024, 6, 1, 8, 0),
            ),
            PaymentTransaction(
                amount_cents=800,
                status=PaymentStatus.pending,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2024, 6, 2, 8, 0),
            ),
        ]
    )
    session.commit()
    BalanceService(session).create_yearly_balance(
        YearlyBalanceIn(year=2024, opening_balance_cents=10000, notes="Audited")
    )
    return venue.id


def test_financial_report_for_year() -> None:
    session = make_session()
    _seed(session)

    report = ReportService(session).financial_report(2024)

    assert report["report_info"]["year"] == 2024
    summary = report["financial_summary"]
    assert summary["yearly_balance"] == {
        "opening_balance_cents": 10000,
        "closing_balance_cents": None,
        "notes": "Audited",
    }
    assert summary["collections"]["total_cents"] == 6500
    assert summary["collections"]["manual"]["average_cents"] == 2500.0
    assert summary["collections"]["online"]["count"] == 1
    assert summary["expenses"]["total_cents"] == 5000
    assert summary["expenses"]["category_breakdown"][0]["label"] == "Venue"
    assert summary["net_movement_cents"] == 1500
    assert summary["theoretical_closing_cents"] == 11500

    detail = report["detailed_data"]
    assert [e["amount_cents"] for e in detail["expenses"]] == [1000, 4000]
    assert [e["has_receipt"] for e in detail["expenses"]] == [False, True]
    assert len(detail["manual_collections"]) == 2
    assert [p["amount_cents"] for p in detail["online_collections"]] == [1500]

    insights = report["insights"]
    assert insights["best_month"] == "January"
    assert insights["worst_month"] == "March"
    assert insights["months_with_surplus"] == 2
    assert insights["average_monthly_expenses_cents"] == 5000 / 12
    assert len(report["trends"]["monthly"]) == 12


def test_financial_report_year_bounds() -> None:
    session = make_session()
    with pytest.raises(YearOutOfRange):
        ReportService(session).financial_report(1990)


def test_receipt_summary_counts_and_compliance() -> None:
    session = make_session()
    _seed(session)
    reports = ReportService(session)

    data = reports.receipt_summary(year_window(2024))
    assert data["summary"]["expenses"] == {
        "total": 2,
        "with_receipts": 1,
        "without_receipts": 1,
        "receipt_percent": 50.0,
    }
    assert data["summary"]["collections"]["receipt_percent"] == 100.0
    assert data["summary"]["overall"]["total_entries"] == 4
    assert data["insights"]["transparency_level"] == 75.0
    assert data["insights"]["compliance_status"] == "Needs Improvement"
    assert data["insights"]["missing_receipt_count"] == 1
    recent = data["recent_receipted_entries"]
    assert len(recent["expenses"][0]["description"]) == 100
    assert [c["amount_cents"] for c in recent["collections"]] == [2000, 3000]
    assert data["period"]["date_from"] == date(2024, 1, 1)

    march = reports.receipt_summary(
        DateWindow("custom", date(2024, 3, 1), date(2024, 3, 31))
    )
    assert march["insights"]["compliance_status"] == "Good"
    assert march["summary"]["overall"]["total_with_receipts"] == 2


def test_receipt_summary_on_empty_ledger() -> None:
    data = ReportService(make_session()).receipt_summary(ALL_TIME)
    assert data["summary"]["overall"]["receipt_percent"] == 0.0
    assert data["insights"]["missing_receipt_count"] == 0
    assert data["insights"]["compliance_status"] == "Needs Improvement"


def test_reports_are_cached_until_ledger_changes() -> None:
    session = make_session()
    venue_id = _seed(session)
    cache = CacheCoordinator(MemoryCache())
    reports = ReportService(session, cache=cache)

    reports.financial_report(2024)
    reports.receipt_summary(ALL_TIME)
    assert CacheKeys.report("financial", "2024") in cache.store.keys()
    assert CacheKeys.report("receipts", ALL_TIME.cache_token()) in cache.store.keys()

    ExpenseService(session, cache=cache).create(
        ExpenseIn(
            amount_cents=500,
            description="Chairs",
            expense_date=date(2024, 12, 1),
            category_id=venue_id,
        )
    )
    assert cache.store.keys() == []
    report = reports.financial_report(2024)
    assert report["financial_summary"]["expenses"]["total_cents"] == 5500

    BalanceService(session, cache=cache).update_yearly_balance(
        2024, YearlyBalanceUpdate(closing_balance_cents=11000)
    )
    refreshed = reports.financial_report(2024)["financial_summary"]
    assert refreshed["balance_difference_cents"] == 0
