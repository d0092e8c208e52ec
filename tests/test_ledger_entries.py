from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    CategoryInactive,
    CategoryNotFound,
    EventNotFound,
    InvalidMode,
    NotFound,
    SubcategoryMismatch,
    ValidationFailed,
)
from models import CollectionMode, Event, Expense
from periods import year_window
from schemas import CategoryIn, CollectionIn, ExpenseIn, SubcategoryIn
from services import (
    CategoryService,
    CollectionFilters,
    CollectionService,
    ExpenseFilters,
    ExpenseService,
    SubcategoryService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class StaticEvents:
    def __init__(self, *known: int) -> None:
        self.known = set(known)

    def exists(self, event_id: int) -> bool:
        return event_id in self.known


def _expense(category_id: int, **overrides) -> ExpenseIn:
    data = {
        "amount_cents": 1200,
        "description": "Banner printing",
        "expense_date": date(2024, 5, 2),
        "category_id": category_id,
    }
    data.update(overrides)
    return ExpenseIn(**data)


def test_expense_requires_active_category() -> None:
    session = make_session()
    categories = CategoryService(session)
    inactive = categories.create(CategoryIn(name="Old", is_active=False))
    expenses = ExpenseService(session)

    with pytest.raises(CategoryNotFound):
        expenses.create(_expense(999))
    with pytest.raises(CategoryInactive):
        expenses.create(_expense(inactive.id))
    assert session.query(Expense).count() == 0


def test_subcategory_must_belong_to_category() -> None:
    session = make_session()
    categories = CategoryService(session)
    venue = categories.create(CategoryIn(name="Venue"))
    food = categories.create(CategoryIn(name="Food"))
    snacks = SubcategoryService(session).create(food.id, SubcategoryIn(name="Snacks"))

    with pytest.raises(SubcategoryMismatch):
        ExpenseService(session).create(_expense(venue.id, subcategory_id=snacks.id))


def test_expense_problems_are_collected() -> None:
    session = make_session()
    inactive = CategoryService(session).create(CategoryIn(name="Old", is_active=False))
    expenses = ExpenseService(session, events=StaticEvents())

    with pytest.raises(ValidationFailed) as excinfo:
        expenses.create(_expense(inactive.id, linked_event_id=7))
    kinds = {cause.kind for cause in excinfo.value.causes}
    assert kinds == {"CategoryInactive", "EventNotFound"}
    assert session.query(Expense).count() == 0


def test_linked_event_checked_against_directory() -> None:
    session = make_session()
    venue = CategoryService(session).create(CategoryIn(name="Venue"))

    with pytest.raises(EventNotFound):
        ExpenseService(session).create(_expense(venue.id, linked_event_id=3))

    session.add(Event(id=3, title="Annual Meet"))
    session.commit()
    expense = ExpenseService(session).create(_expense(venue.id, linked_event_id=3))
    assert expense.linked_event_id == 3

    injected = ExpenseService(session, events=StaticEvents(42))
    assert injected.create(_expense(venue.id, linked_event_id=42)).linked_event_id == 42


def test_expense_update_and_delete_returns_receipt() -> None:
    session = make_session()
    venue = CategoryService(session).create(CategoryIn(name="Venue"))
    expenses = ExpenseService(session)
    expense = expenses.create(_expense(venue.id, receipt_url="/uploads/r1.pdf"))

    updated = expenses.update(
        expense.id, _expense(venue.id, amount_cents=1500, vendor_name="  PrintCo ")
    )
    assert updated.amount_cents == 1500
    assert updated.vendor_name == "PrintCo"
    # receipt_url was not sent, so it is kept.
    assert updated.receipt_url == "/uploads/r1.pdf"

    assert expenses.set_receipt(expense.id, "/uploads/r2.pdf") == "/uploads/r1.pdf"
    deleted = expenses.delete(expense.id)
    assert deleted.receipt_url == "/uploads/r2.pdf"
    with pytest.raises(NotFound):
        expenses.get(expense.id)


def test_expense_list_filters() -> None:
    session = make_session()
    categories = CategoryService(session)
    venue = categories.create(CategoryIn(name="Venue"))
    food = categories.create(CategoryIn(name="Food"))
    expenses = ExpenseService(session)
    expenses.create(_expense(venue.id, expense_date=date(2023, 12, 31)))
    hall = expenses.create(
        _expense(venue.id, description="Hall booking", expense_date=date(2024, 1, 1))
    )
    tea = expenses.create(
        _expense(food.id, description="Tea", vendor_name="Chai Point", is_approved=True)
    )

    in_2024 = expenses.list(ExpenseFilters(window=year_window(2024)))
    assert [e.id for e in in_2024] == [tea.id, hall.id]

    assert [e.id for e in expenses.list(ExpenseFilters(category_id=food.id))] == [tea.id]
    assert [e.id for e in expenses.list(ExpenseFilters(query="chai"))] == [tea.id]
    assert [e.id for e in expenses.list(ExpenseFilters(is_approved=True))] == [tea.id]

    expenses.approve(hall.id)
    assert len(expenses.list(ExpenseFilters(is_approved=True))) == 2


def test_collection_mode_validation() -> None:
    session = make_session()
    collections = CollectionService(session)

    with pytest.raises(InvalidMode) as excinfo:
        collections.create(
            CollectionIn(
                amount_cents=500,
                description="Donation",
                collection_date=date(2024, 4, 1),
                collection_mode="BITCOIN",
            )
        )
    assert "CASH" in excinfo.value.details["allowed"]

    created = collections.create(
        CollectionIn(
            amount_cents=500,
            description="Donation",
            collection_date=date(2024, 4, 1),
            collection_mode="upi_offline",
            donor_name="  R. Iyer ",
        )
    )
    assert created.collection_mode is CollectionMode.upi_offline
    assert created.donor_name == "R. Iyer"


def test_collection_verify_list_and_delete() -> None:
    session = make_session()
    collections = CollectionService(session)
    cash = collections.create(
        CollectionIn(
            amount_cents=2000,
            description="Membership fee",
            collection_date=date(2024, 6, 1),
            collection_mode="CASH",
            category="Membership",
        )
    )
    cheque = collections.create(
        CollectionIn(
            amount_cents=700,
            description="Sponsorship",
            collection_date=date(2024, 6, 3),
            collection_mode="CHEQUE",
            receipt_url="/uploads/c.pdf",
        )
    )

    collections.verify(cash.id)
    verified = collections.list(CollectionFilters(is_verified=True))
    assert [c.id for c in verified] == [cash.id]
    by_mode = collections.list(CollectionFilters(collection_mode=CollectionMode.cheque))
    assert [c.id for c in by_mode] == [cheque.id]

    assert collections.clear_receipt(cheque.id) == "/uploads/c.pdf"
    assert collections.delete(cheque.id).receipt_url is None


def test_collection_problems_are_collected() -> None:
    session = make_session()
    collections = CollectionService(session, events=StaticEvents(1))
    data = CollectionIn(
        amount_cents=500,
        description="Stall rent",
        collection_date=date(2024, 4, 1),
        collection_mode="BITCOIN",
        linked_event_id=9,
    )

    with pytest.raises(ValidationFailed) as excinfo:
        collections.create(data)
    assert [type(c) for c in excinfo.value.causes] == [InvalidMode, EventNotFound]

    with pytest.raises(EventNotFound):
        collections.create(data.model_copy(update={"collection_mode": "CASH"}))
    linked = collections.create(
        data.model_copy(update={"collection_mode": "CASH", "linked_event_id": 1})
    )
    assert linked.collection_mode is CollectionMode.cash
