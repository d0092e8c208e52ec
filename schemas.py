from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True
    display_order: Optional[int] = Field(default=None, ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class SubcategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True
    display_order: Optional[int] = Field(default=None, ge=0)


class SubcategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class ReorderIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class StructureItem(BaseModel):
    category_id: int
    subcategory_ids: list[int] = Field(default_factory=list)


class StructureReorderIn(BaseModel):
    structure: list[StructureItem] = Field(..., min_length=1)


class ExpenseIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    expense_date: date
    category_id: int
    subcategory_id: Optional[int] = None
    vendor_name: Optional[str] = Field(default=None, max_length=200)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    linked_event_id: Optional[int] = None
    is_approved: bool = False


class CollectionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    collection_date: date
    # Checked against CollectionMode by the service so callers get InvalidMode.
    collection_mode: str
    category: Optional[str] = Field(default=None, max_length=100)
    donor_name: Optional[str] = Field(default=None, max_length=200)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    linked_event_id: Optional[int] = None
    is_verified: bool = False


class YearlyBalanceIn(BaseModel):
    year: int = Field(..., ge=1900, le=3000)
    opening_balance_cents: int
    closing_balance_cents: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class YearlyBalanceUpdate(BaseModel):
    """Partial update; only fields that were explicitly sent are applied."""

    model_config = ConfigDict(extra="forbid")

    opening_balance_cents: Optional[int] = None
    closing_balance_cents: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AccountBalanceIn(BaseModel):
    current_balance_cents: int
    balance_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    bank_statement_url: Optional[str] = Field(default=None, max_length=500)


class SubcategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    name: str
    description: Optional[str]
    is_active: bool
    display_order: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    is_active: bool
    display_order: int


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    description: str
    expense_date: date
    vendor_name: Optional[str]
    receipt_url: Optional[str]
    is_approved: bool
    category_id: int
    subcategory_id: Optional[int]
    linked_event_id: Optional[int]
    created_by: int


class CollectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    description: str
    collection_date: date
    collection_mode: str
    category: Optional[str]
    donor_name: Optional[str]
    is_verified: bool
    receipt_url: Optional[str]
    linked_event_id: Optional[int]
    created_by: int

    @field_validator("collection_mode", mode="before")
    @classmethod
    def _mode_value(cls, value: object) -> object:
        return getattr(value, "value", value)


class YearlyBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int
    opening_balance_cents: int
    closing_balance_cents: Optional[int]
    notes: Optional[str]
    created_by: int
    is_reconciled: bool


class AccountBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    current_balance_cents: int
    balance_date: date
    notes: Optional[str]
    bank_statement_url: Optional[str]
    updated_by: int


class ReceiptIn(BaseModel):
    url: str = Field(..., min_length=1, max_length=500)


class ApprovalIn(BaseModel):
    value: bool = True
