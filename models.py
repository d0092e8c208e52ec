from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CollectionMode(str, Enum):
    cash = "CASH"
    cheque = "CHEQUE"
    bank_transfer = "BANK_TRANSFER"
    upi_offline = "UPI_OFFLINE"
    other = "OTHER"


class PaymentStatus(str, Enum):
    pending = "PENDING"
    completed = "COMPLETED"
    failed = "FAILED"
    refunded = "REFUNDED"


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


COLLECTION_MODE_ENUM = _value_enum(CollectionMode, "collectionmode")
PAYMENT_STATUS_ENUM = _value_enum(PaymentStatus, "paymentstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class ExpenseCategory(Base, TimestampMixin):
    __tablename__ = "expense_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)

    subcategories: Mapped[list["ExpenseSubcategory"]] = relationship(
        "ExpenseSubcategory",
        back_populates="category",
        order_by="ExpenseSubcategory.display_order",
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (Index("ix_expense_categories_order", "display_order"),)


class ExpenseSubcategory(Base, TimestampMixin):
    __tablename__ = "expense_subcategories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("expense_categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped["ExpenseCategory"] = relationship(
        "ExpenseCategory", back_populates="subcategories"
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="subcategory"
    )

    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_subcategory_category_name"),
        Index("ix_expense_subcategories_category_order", "category_id", "display_order"),
    )


class Event(Base, TimestampMixin):
    """Read-only reference to an event owned by the events subsystem."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    event_date: Mapped[Optional[date]] = mapped_column(Date)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    vendor_name: Mapped[Optional[str]] = mapped_column(String(200))
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("expense_categories.id"), nullable=False
    )
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expense_subcategories.id")
    )
    linked_event_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    category: Mapped["ExpenseCategory"] = relationship(
        "ExpenseCategory", back_populates="expenses"
    )
    subcategory: Mapped[Optional["ExpenseSubcategory"]] = relationship(
        "ExpenseSubcategory", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_date", "expense_date"),
        Index("ix_expenses_category_date", "category_id", "expense_date"),
        Index("ix_expenses_subcategory_date", "subcategory_id", "expense_date"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )


class ManualCollection(Base, TimestampMixin):
    __tablename__ = "manual_collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    collection_date: Mapped[date] = mapped_column(Date, nullable=False)
    collection_mode: Mapped[CollectionMode] = mapped_column(
        COLLECTION_MODE_ENUM, nullable=False
    )
    # Free-text classification, unrelated to ExpenseCategory.
    category: Mapped[Optional[str]] = mapped_column(String(100))
    donor_name: Mapped[Optional[str]] = mapped_column(String(200))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    linked_event_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_manual_collections_date", "collection_date"),
        Index("ix_manual_collections_mode_date", "collection_mode", "collection_date"),
        CheckConstraint(
            "amount_cents > 0", name="ck_manual_collections_amount_positive"
        ),
    )


class PaymentTransaction(Base):
    """Completed-payment feed written by the online payment subsystem."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(PAYMENT_STATUS_ENUM, nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_payment_transactions_status_created", "status", "created_at"),
    )


class YearlyBalance(Base, TimestampMixin):
    __tablename__ = "yearly_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    opening_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    closing_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    @property
    def is_reconciled(self) -> bool:
        return self.closing_balance_cents is not None


class AccountBalance(Base, TimestampMixin):
    __tablename__ = "account_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    current_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    bank_statement_url: Mapped[Optional[str]] = mapped_column(String(500))
    updated_by: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (Index("ix_account_balances_date", "balance_date"),)
