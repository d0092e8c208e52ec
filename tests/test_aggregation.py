from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationFailed
from models import CollectionMode, PaymentStatus, PaymentTransaction
from periods import ALL_TIME, DateWindow, year_window
from schemas import CategoryIn, CollectionIn, ExpenseIn, SubcategoryIn
from services import (
    AggregationService,
    CategoryService,
    CollectionService,
    ExpenseService,
    LedgerSource,
    SubcategoryService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _seed_expenses(session):
    categories = CategoryService(session)
    venue = categories.create(CategoryIn(name="Venue"))
    food = categories.create(CategoryIn(name="Food"))
    print_ = categories.create(CategoryIn(name="Print"))
    hall = SubcategoryService(session).create(venue.id, SubcategoryIn(name="Hall"))
    expenses = ExpenseService(session)
    for category_id, amount, day, sub in [
        (food.id, 3000, date(2024, 1, 10), None),
        (venue.id, 3000, date(2024, 2, 10), hall.id),
        (print_.id, 4000, date(2024, 3, 10), None),
        (venue.id, 500, date(2025, 1, 1), None),
    ]:
        expenses.create(
            ExpenseIn(
                amount_cents=amount,
                description="Item",
                expense_date=day,
                category_id=category_id,
                subcategory_id=sub,
                vendor_name="Acme" if amount == 3000 else None,
            )
        )
    return venue, food, print_


def test_category_breakdown_orders_and_percentages() -> None:
    session = make_session()
    venue, food, print_ = _seed_expenses(session)

    result = AggregationService(session).aggregate(
        LedgerSource.expense, year_window(2024), group_by="category"
    )

    assert result.total_cents == 10000
    assert result.count == 3
    # Ties on amount fall back to the group's first entry.
    assert [item.label for item in result.breakdown] == ["Print", "Food", "Venue"]
    assert [item.percent for item in result.breakdown] == [40.0, 30.0, 30.0]
    assert sum(item.percent for item in result.breakdown) == pytest.approx(100.0)


def test_window_bounds_are_inclusive_and_open_ended() -> None:
    session = make_session()
    _seed_expenses(session)
    service = AggregationService(session)

    total, count = service.totals(
        LedgerSource.expense, DateWindow("custom", date(2024, 1, 10), date(2024, 3, 10))
    )
    assert (total, count) == (10000, 3)

    since = DateWindow("custom", date(2024, 3, 1), None)
    assert service.totals(LedgerSource.expense, since) == (4500, 2)
    assert service.totals(LedgerSource.expense, ALL_TIME) == (10500, 4)


def test_empty_window_yields_zero_percentages() -> None:
    session = make_session()
    _seed_expenses(session)

    result = AggregationService(session).aggregate(
        LedgerSource.expense, year_window(2030), group_by="category"
    )
    assert result.total_cents == 0
    assert result.breakdown == []
    assert result.average_cents == 0.0


def test_subcategory_and_vendor_groups_include_unspecified() -> None:
    session = make_session()
    _seed_expenses(session)
    service = AggregationService(session)

    subs = service.aggregate(LedgerSource.expense, year_window(2024), "subcategory")
    assert [(i.label, i.amount_cents) for i in subs.breakdown] == [
        ("Unspecified", 7000),
        ("Hall", 3000),
    ]
    vendors = service.aggregate(LedgerSource.expense, year_window(2024), "vendor")
    assert [(i.label, i.amount_cents) for i in vendors.breakdown] == [
        ("Acme", 6000),
        ("Unspecified", 4000),
    ]


def test_unknown_group_dimension_rejected() -> None:
    session = make_session()
    with pytest.raises(ValidationFailed):
        AggregationService(session).aggregate(
            LedgerSource.online_payment, ALL_TIME, group_by="category"
        )


def test_online_payments_count_only_completed() -> None:
    session = make_session()
    session.add_all(
        [
            PaymentTransaction(
                amount_cents=3000,
                status=PaymentStatus.completed,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2024, 12, 31, 23, 30),
            ),
            PaymentTransaction(
                amount_cents=1000,
                status=PaymentStatus.completed,
                payment_provider="stripe",
                reference_type="EVENT_REGISTRATION",
                created_at=datetime(2024, 6, 1, 9, 0),
            ),
            PaymentTransaction(
                amount_cents=9999,
                status=PaymentStatus.failed,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2024, 6, 1, 9, 0),
            ),
            PaymentTransaction(
                amount_cents=50,
                status=PaymentStatus.completed,
                payment_provider="razorpay",
                reference_type="MEMBERSHIP",
                created_at=datetime(2025, 1, 1, 0, 0),
            ),
        ]
    )
    session.commit()

    result = AggregationService(session).aggregate(
        LedgerSource.online_payment, year_window(2024), group_by="provider"
    )
    assert result.total_cents == 4000
    assert result.count == 2
    assert [(i.label, i.percent) for i in result.breakdown] == [
        ("razorpay", 75.0),
        ("stripe", 25.0),
    ]


def test_collection_groups_and_monthly_buckets() -> None:
    session = make_session()
    collections = CollectionService(session)
    for amount, mode, day, verified in [
        (2000, "CASH", date(2024, 1, 5), True),
        (500, "CASH", date(2024, 1, 20), False),
        (1500, "BANK_TRANSFER", date(2024, 3, 2), True),
    ]:
        collections.create(
            CollectionIn(
                amount_cents=amount,
                description="Collection",
                collection_date=day,
                collection_mode=mode,
                is_verified=verified,
            )
        )
    service = AggregationService(session)

    modes = service.aggregate(LedgerSource.manual_collection, ALL_TIME, "mode")
    assert [(i.key, i.amount_cents, i.count) for i in modes.breakdown] == [
        (CollectionMode.cash.value, 2500, 2),
        (CollectionMode.bank_transfer.value, 1500, 1),
    ]
    verification = service.aggregate(
        LedgerSource.manual_collection, ALL_TIME, "verification"
    )
    assert [(i.label, i.amount_cents) for i in verification.breakdown] == [
        ("verified", 3500),
        ("unverified", 500),
    ]

    buckets = service.monthly_buckets(LedgerSource.manual_collection, 2024)
    assert buckets == {1: (2500, 2), 3: (1500, 1)}


def test_online_window_ending_on_last_representable_day() -> None:
    session = make_session()
    session.add(
        PaymentTransaction(
            amount_cents=2500,
            status=PaymentStatus.completed,
            payment_provider="razorpay",
            reference_type="MEMBERSHIP",
            created_at=datetime(2024, 3, 1, 10, 0),
        )
    )
    session.commit()
    window = DateWindow("custom", date(2024, 1, 1), date.max)

    assert window.end_before() is None
    assert AggregationService(session).totals(LedgerSource.online_payment, window) == (
        2500,
        1,
    )
