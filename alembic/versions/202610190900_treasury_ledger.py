"""treasury ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


COLLECTION_MODES = ("CASH", "CHEQUE", "BANK_TRANSFER", "UPI_OFFLINE", "OTHER")
PAYMENT_STATUSES = ("PENDING", "COMPLETED", "FAILED", "REFUNDED")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "expense_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
    )
    op.create_index(
        "ix_expense_categories_order", "expense_categories", ["display_order"]
    )

    op.create_table(
        "expense_subcategories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("expense_categories.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint("category_id", "name", name="uq_subcategory_category_name"),
    )
    op.create_index(
        "ix_expense_subcategories_category_order",
        "expense_subcategories",
        ["category_id", "display_order"],
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("event_date", sa.Date()),
        *_timestamps(),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("vendor_name", sa.String(length=200)),
        sa.Column("receipt_url", sa.String(length=500)),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("expense_categories.id"),
            nullable=False,
        ),
        sa.Column(
            "subcategory_id", sa.Integer(), sa.ForeignKey("expense_subcategories.id")
        ),
        sa.Column("linked_event_id", sa.Integer()),
        sa.Column("created_by", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_date", "expenses", ["expense_date"])
    op.create_index(
        "ix_expenses_category_date", "expenses", ["category_id", "expense_date"]
    )
    op.create_index(
        "ix_expenses_subcategory_date", "expenses", ["subcategory_id", "expense_date"]
    )

    op.create_table(
        "manual_collections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("collection_date", sa.Date(), nullable=False),
        sa.Column(
            "collection_mode",
            sa.Enum(*COLLECTION_MODES, name="collectionmode"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=100)),
        sa.Column("donor_name", sa.String(length=200)),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("receipt_url", sa.String(length=500)),
        sa.Column("linked_event_id", sa.Integer()),
        sa.Column("created_by", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_manual_collections_amount_positive"
        ),
    )
    op.create_index(
        "ix_manual_collections_date", "manual_collections", ["collection_date"]
    )
    op.create_index(
        "ix_manual_collections_mode_date",
        "manual_collections",
        ["collection_mode", "collection_date"],
    )

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status", sa.Enum(*PAYMENT_STATUSES, name="paymentstatus"), nullable=False
        ),
        sa.Column("payment_provider", sa.String(length=50), nullable=False),
        sa.Column("reference_type", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_payment_transactions_status_created",
        "payment_transactions",
        ["status", "created_at"],
    )

    op.create_table(
        "yearly_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False, unique=True),
        sa.Column("opening_balance_cents", sa.Integer(), nullable=False),
        sa.Column("closing_balance_cents", sa.Integer()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )

    op.create_table(
        "account_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False),
        sa.Column("balance_date", sa.Date(), nullable=False, unique=True),
        sa.Column("notes", sa.Text()),
        sa.Column("bank_statement_url", sa.String(length=500)),
        sa.Column("updated_by", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_account_balances_date", "account_balances", ["balance_date"])


def downgrade():
    op.drop_index("ix_account_balances_date", table_name="account_balances")
    op.drop_table("account_balances")
    op.drop_table("yearly_balances")
    op.drop_index(
        "ix_payment_transactions_status_created", table_name="payment_transactions"
    )
    op.drop_table("payment_transactions")
    op.drop_index("ix_manual_collections_mode_date", table_name="manual_collections")
    op.drop_index("ix_manual_collections_date", table_name="manual_collections")
    op.drop_table("manual_collections")
    op.drop_index("ix_expenses_subcategory_date", table_name="expenses")
    op.drop_index("ix_expenses_category_date", table_name="expenses")
    op.drop_index("ix_expenses_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("events")
    op.drop_index(
        "ix_expense_subcategories_category_order", table_name="expense_subcategories"
    )
    op.drop_table("expense_subcategories")
    op.drop_index("ix_expense_categories_order", table_name="expense_categories")
    op.drop_table("expense_categories")
    sa.Enum(name="paymentstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="collectionmode").drop(op.get_bind(), checkfirst=True)
