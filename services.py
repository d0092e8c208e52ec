from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Optional, Protocol

from sqlalchemy import ColumnElement, extract, func, or_, select
from sqlalchemy.orm import Session, joinedload

from cache import CacheCoordinator, CacheDurations, CacheKeys, MutationKind
from config import get_settings
from errors import (
    CategoryInactive,
    CategoryNotFound,
    DuplicateName,
    DuplicateSnapshotDate,
    DuplicateYear,
    EventNotFound,
    HasDependentExpenses,
    HasDependentSubcategories,
    HasLedgerActivity,
    InvalidMode,
    NotFound,
    SubcategoryMismatch,
    TreasuryError,
    UnknownEntity,
    ValidationFailed,
    YearOutOfRange,
    raise_collected,
)
from models import (
    AccountBalance,
    CollectionMode,
    Event,
    Expense,
    ExpenseCategory,
    ExpenseSubcategory,
    ManualCollection,
    PaymentStatus,
    PaymentTransaction,
    YearlyBalance,
)
from periods import ALL_TIME, DateWindow, local_now, local_today, year_window
from schemas import (
    AccountBalanceIn,
    AccountBalanceOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    CollectionIn,
    CollectionOut,
    ExpenseIn,
    ExpenseOut,
    StructureItem,
    SubcategoryIn,
    SubcategoryOut,
    SubcategoryUpdate,
    YearlyBalanceIn,
    YearlyBalanceOut,
    YearlyBalanceUpdate,
)
from trends import (
    CollectionTotals,
    ExpenseTotals,
    MonthlyTrend,
    QuarterSummary,
    best_month,
    collection_frequency,
    concentration,
    consistency,
    diversity_index,
    empty_year,
    expense_distribution,
    growth_rate,
    percent_of,
    quarterly_rollup,
    seasonality,
    trend_direction,
    volatility,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def get_current_user_id() -> int:
    return 1


def _commit(session: Session) -> None:
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


def _after_commit(cache: Optional[CacheCoordinator], kind: MutationKind, **ctx) -> None:
    if cache is not None:
        cache.after_commit(kind, **ctx)


def _cached(
    cache: Optional[CacheCoordinator], key: str, ttl: int, producer: Callable[[], object]
):
    if cache is None:
        return producer()
    return cache.get_or_compute(key, ttl, producer)


def _clean_name(name: Optional[str]) -> str:
    clean = (name or "").strip()
    if not clean:
        raise ValidationFailed(["Name cannot be empty"])
    return clean


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    return clean or None


def _ensure_unique_ids(ids: list[int]) -> None:
    dupes = sorted(i for i, count in Counter(ids).items() if count > 1)
    if dupes:
        raise ValidationFailed(
            [f"Duplicate IDs in ordering: {', '.join(str(i) for i in dupes)}"]
        )


class EventDirectory(Protocol):
    def exists(self, event_id: int) -> bool: ...


class SqlEventDirectory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def exists(self, event_id: int) -> bool:
        return self.session.get(Event, event_id) is not None


@dataclass
class CategoryFilters:
    query: Optional[str] = None
    is_active: Optional[bool] = None

    def as_key(self) -> dict[str, object]:
        return {"q": self.query, "active": self.is_active}


@dataclass
class ExpenseFilters:
    window: DateWindow = ALL_TIME
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    event_id: Optional[int] = None
    is_approved: Optional[bool] = None
    query: Optional[str] = None

    def as_key(self) -> dict[str, object]:
        return {
            "window": self.window.cache_token(),
            "category": self.category_id,
            "subcategory": self.subcategory_id,
            "event": self.event_id,
            "approved": self.is_approved,
            "q": self.query,
        }


@dataclass
class CollectionFilters:
    window: DateWindow = ALL_TIME
    collection_mode: Optional[CollectionMode] = None
    category: Optional[str] = None
    event_id: Optional[int] = None
    is_verified: Optional[bool] = None
    query: Optional[str] = None

    def as_key(self) -> dict[str, object]:
        mode = self.collection_mode.value if self.collection_mode else None
        return {
            "window": self.window.cache_token(),
            "mode": mode,
            "category": self.category,
            "event": self.event_id,
            "verified": self.is_verified,
            "q": self.query,
        }


@dataclass(frozen=True)
class DeletedEntry:
    """A removed ledger entry; ``receipt_url`` is for the upload store to release."""

    id: int
    amount_cents: int
    receipt_url: Optional[str]


# ---------------------------------------------------------------------------
# Category hierarchy
# ---------------------------------------------------------------------------


class CategoryService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[CacheCoordinator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache

    def get(self, category_id: int) -> ExpenseCategory:
        category = self.session.get(ExpenseCategory, category_id)
        if not category:
            raise CategoryNotFound("Category not found", category_id=category_id)
        return category

    def _expense_stats(self) -> dict[int, tuple[int, int]]:
        rows = self.session.execute(
            select(
                Expense.category_id,
                func.count(Expense.id),
                func.coalesce(func.sum(Expense.amount_cents), 0),
            ).group_by(Expense.category_id)
        ).all()
        return {row[0]: (int(row[1]), int(row[2])) for row in rows}

    def _subcategory_counts(self) -> dict[int, int]:
        rows = self.session.execute(
            select(
                ExpenseSubcategory.category_id, func.count(ExpenseSubcategory.id)
            ).group_by(ExpenseSubcategory.category_id)
        ).all()
        return {row[0]: int(row[1]) for row in rows}

    def list_all(
        self, filters: Optional[CategoryFilters] = None
    ) -> list[dict[str, object]]:
        filters = filters or CategoryFilters()

        def produce() -> list[dict[str, object]]:
            stmt = select(ExpenseCategory).order_by(
                ExpenseCategory.display_order, ExpenseCategory.id
            )
            if filters.is_active is not None:
                stmt = stmt.where(ExpenseCategory.is_active.is_(filters.is_active))
            if filters.query:
                pattern = f"%{filters.query.strip()}%"
                stmt = stmt.where(
                    or_(
                        ExpenseCategory.name.ilike(pattern),
                        ExpenseCategory.description.ilike(pattern),
                    )
                )
            categories = self.session.scalars(stmt).all()
            stats = self._expense_stats()
            sub_counts = self._subcategory_counts()
            out = []
            for category in categories:
                count, total = stats.get(category.id, (0, 0))
                item = CategoryOut.model_validate(category).model_dump()
                item["expense_count"] = count
                item["subcategory_count"] = sub_counts.get(category.id, 0)
                item["total_amount_cents"] = total
                out.append(item)
            return out

        return _cached(
            self.cache,
            CacheKeys.categories(filters.as_key()),
            CacheDurations.CATEGORIES,
            produce,
        )

    def summary(self, category_id: int) -> dict[str, object]:
        category = self.get(category_id)
        count, total = self._expense_stats().get(category.id, (0, 0))
        item = CategoryOut.model_validate(category).model_dump()
        item.update(
            {
                "expense_count": count,
                "total_amount_cents": total,
                "subcategory_count": len(category.subcategories),
                "subcategories": [
                    SubcategoryOut.model_validate(s).model_dump()
                    for s in category.subcategories
                    if s.is_active
                ],
            }
        )
        return item

    def _next_display_order(self) -> int:
        current = self.session.execute(
            select(func.max(ExpenseCategory.display_order))
        ).scalar_one()
        return 0 if current is None else int(current) + 1

    def _ensure_name_free(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(ExpenseCategory.id).where(ExpenseCategory.name == name)
        if exclude_id is not None:
            stmt = stmt.where(ExpenseCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName("Category name already exists", name=name)

    def create(self, data: CategoryIn) -> ExpenseCategory:
        name = _clean_name(data.name)
        self._ensure_name_free(name)
        category = ExpenseCategory(
            name=name,
            description=_clean_text(data.description),
            is_active=data.is_active,
            display_order=(
                data.display_order
                if data.display_order is not None
                else self._next_display_order()
            ),
            created_by=self.user_id,
        )
        self.session.add(category)
        _commit(self.session)
        self.session.refresh(category)
        logger.info(f"category_created: id={category.id} name={category.name!r}")
        _after_commit(self.cache, MutationKind.category, entity_id=category.id)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> ExpenseCategory:
        category = self.get(category_id)
        if data.name is not None:
            name = _clean_name(data.name)
            self._ensure_name_free(name, exclude_id=category.id)
            category.name = name
        if "description" in data.model_fields_set:
            category.description = _clean_text(data.description)
        if data.is_active is not None:
            category.is_active = data.is_active
        if data.display_order is not None:
            category.display_order = data.display_order
        _commit(self.session)
        self.session.refresh(category)
        _after_commit(self.cache, MutationKind.category, entity_id=category.id)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        # Subcategories are checked before expenses.
        subcategory_count = self.session.execute(
            select(func.count(ExpenseSubcategory.id)).where(
                ExpenseSubcategory.category_id == category.id
            )
        ).scalar_one()
        if subcategory_count:
            raise HasDependentSubcategories(
                f"Cannot delete category with {subcategory_count} subcategory(ies)",
                subcategory_count=int(subcategory_count),
            )
        expense_count = self.session.execute(
            select(func.count(Expense.id)).where(Expense.category_id == category.id)
        ).scalar_one()
        if expense_count:
            raise HasDependentExpenses(
                f"Cannot delete category with {expense_count} expense(s)",
                expense_count=int(expense_count),
            )
        self.session.delete(category)
        _commit(self.session)
        logger.info(f"category_deleted: id={category_id}")
        _after_commit(self.cache, MutationKind.category, entity_id=category_id)

    def reorder(self, ids: list[int]) -> list[ExpenseCategory]:
        _ensure_unique_ids(ids)
        found = self.session.scalars(
            select(ExpenseCategory).where(ExpenseCategory.id.in_(ids))
        ).all()
        by_id = {c.id: c for c in found}
        missing = [i for i in ids if i not in by_id]
        if missing:
            raise UnknownEntity(
                f"Categories not found: {', '.join(str(i) for i in missing)}", missing
            )
        for position, category_id in enumerate(ids):
            by_id[category_id].display_order = position
        _commit(self.session)
        _after_commit(self.cache, MutationKind.category)
        return [by_id[i] for i in ids]

    def reorder_structure(self, structure: list[StructureItem]) -> None:
        """Reorder categories and each listed category's subcategories at once."""
        category_ids = [item.category_id for item in structure]
        _ensure_unique_ids(category_ids)
        categories = {
            c.id: c
            for c in self.session.scalars(
                select(ExpenseCategory).where(ExpenseCategory.id.in_(category_ids))
            ).all()
        }
        errors: list[str] = []
        missing: list[int] = [i for i in category_ids if i not in categories]
        if missing:
            errors.append(
                f"Categories not found: {', '.join(str(i) for i in missing)}"
            )

        subcategories: dict[int, dict[int, ExpenseSubcategory]] = {}
        for item in structure:
            if not item.subcategory_ids:
                continue
            _ensure_unique_ids(item.subcategory_ids)
            rows = self.session.scalars(
                select(ExpenseSubcategory).where(
                    ExpenseSubcategory.id.in_(item.subcategory_ids),
                    ExpenseSubcategory.category_id == item.category_id,
                )
            ).all()
            subcategories[item.category_id] = {s.id: s for s in rows}
            stray = [i for i in item.subcategory_ids if i not in subcategories[item.category_id]]
            if stray:
                missing.extend(stray)
                errors.append(
                    f"Subcategories not found or don't belong to category "
                    f"{item.category_id}: {', '.join(str(i) for i in stray)}"
                )
        if errors:
            raise UnknownEntity("; ".join(errors), missing)

        for position, item in enumerate(structure):
            categories[item.category_id].display_order = position
            for sub_position, sub_id in enumerate(item.subcategory_ids):
                subcategories[item.category_id][sub_id].display_order = sub_position
        _commit(self.session)
        logger.info(f"structure_reordered: categories={len(structure)}")
        _after_commit(self.cache, MutationKind.category)

    def structure(
        self, *, include_inactive: bool = False, include_amounts: bool = True
    ) -> dict[str, object]:
        def produce() -> dict[str, object]:
            stmt = (
                select(ExpenseCategory)
                .options(joinedload(ExpenseCategory.subcategories))
                .order_by(ExpenseCategory.display_order, ExpenseCategory.id)
            )
            if not include_inactive:
                stmt = stmt.where(ExpenseCategory.is_active.is_(True))
            categories = self.session.scalars(stmt).unique().all()

            category_stats = self._expense_stats() if include_amounts else {}
            sub_stats: dict[int, tuple[int, int]] = {}
            if include_amounts:
                rows = self.session.execute(
                    select(
                        Expense.subcategory_id,
                        func.count(Expense.id),
                        func.coalesce(func.sum(Expense.amount_cents), 0),
                    )
                    .where(Expense.subcategory_id.is_not(None))
                    .group_by(Expense.subcategory_id)
                ).all()
                sub_stats = {row[0]: (int(row[1]), int(row[2])) for row in rows}

            tree = []
            for category in categories:
                subs = [
                    s for s in category.subcategories if include_inactive or s.is_active
                ]
                node = CategoryOut.model_validate(category).model_dump()
                node["subcategory_count"] = len(subs)
                node["subcategories"] = []
                for sub in subs:
                    child = SubcategoryOut.model_validate(sub).model_dump()
                    if include_amounts:
                        count, total = sub_stats.get(sub.id, (0, 0))
                        child["expense_count"] = count
                        child["total_amount_cents"] = total
                    node["subcategories"].append(child)
                if include_amounts:
                    count, total = category_stats.get(category.id, (0, 0))
                    node["expense_count"] = count
                    node["total_amount_cents"] = total
                tree.append(node)

            statistics: dict[str, object] = {
                "total_categories": len(tree),
                "active_categories": sum(1 for n in tree if n["is_active"]),
                "total_subcategories": sum(len(n["subcategories"]) for n in tree),
                "active_subcategories": sum(
                    1 for n in tree for s in n["subcategories"] if s["is_active"]
                ),
            }
            if include_amounts:
                statistics["total_expenses"] = sum(n["expense_count"] for n in tree)
                statistics["total_amount_cents"] = sum(
                    n["total_amount_cents"] for n in tree
                )
            return {"structure": tree, "statistics": statistics}

        return _cached(
            self.cache,
            CacheKeys.structure(include_inactive, include_amounts),
            CacheDurations.STRUCTURE,
            produce,
        )

    def structure_tree(self) -> list[dict[str, object]]:
        """Active categories and subcategories as value/label option nodes."""
        data = self.structure(include_inactive=False, include_amounts=False)
        return [
            {
                "value": node["id"],
                "label": node["name"],
                "description": node["description"],
                "children": [
                    {
                        "value": child["id"],
                        "label": child["name"],
                        "description": child["description"],
                        "parent_id": node["id"],
                    }
                    for child in node["subcategories"]
                ],
            }
            for node in data["structure"]
        ]


class SubcategoryService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[CacheCoordinator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache

    def get(self, subcategory_id: int) -> ExpenseSubcategory:
        subcategory = self.session.get(ExpenseSubcategory, subcategory_id)
        if not subcategory:
            raise NotFound("Subcategory not found", subcategory_id=subcategory_id)
        return subcategory

    def list_for_category(
        self, category_id: int, *, include_inactive: bool = False
    ) -> list[dict[str, object]]:
        CategoryService(self.session, self.user_id).get(category_id)

        def produce() -> list[dict[str, object]]:
            stmt = (
                select(ExpenseSubcategory)
                .where(ExpenseSubcategory.category_id == category_id)
                .order_by(ExpenseSubcategory.display_order, ExpenseSubcategory.id)
            )
            if not include_inactive:
                stmt = stmt.where(ExpenseSubcategory.is_active.is_(True))
            subcategories = self.session.scalars(stmt).all()
            rows = self.session.execute(
                select(
                    Expense.subcategory_id,
                    func.count(Expense.id),
                    func.coalesce(func.sum(Expense.amount_cents), 0),
                )
                .where(Expense.category_id == category_id)
                .group_by(Expense.subcategory_id)
            ).all()
            stats = {row[0]: (int(row[1]), int(row[2])) for row in rows}
            out = []
            for sub in subcategories:
                count, total = stats.get(sub.id, (0, 0))
                item = SubcategoryOut.model_validate(sub).model_dump()
                item["expense_count"] = count
                item["total_amount_cents"] = total
                out.append(item)
            return out

        key = f"{CacheKeys.subcategories(category_id)}:{int(include_inactive)}"
        return _cached(self.cache, key, CacheDurations.CATEGORIES, produce)

    def _next_display_order(self, category_id: int) -> int:
        current = self.session.execute(
            select(func.max(ExpenseSubcategory.display_order)).where(
                ExpenseSubcategory.category_id == category_id
            )
        ).scalar_one()
        return 0 if current is None else int(current) + 1

    def _ensure_name_free(
        self, category_id: int, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(ExpenseSubcategory.id).where(
            ExpenseSubcategory.category_id == category_id,
            ExpenseSubcategory.name == name,
        )
        if exclude_id is not None:
            stmt = stmt.where(ExpenseSubcategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName(
                "Subcategory name already exists in this category", name=name
            )

    def create(self, category_id: int, data: SubcategoryIn) -> ExpenseSubcategory:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if not category.is_active:
            raise CategoryInactive("Cannot add subcategory to inactive category")
        name = _clean_name(data.name)
        self._ensure_name_free(category_id, name)
        subcategory = ExpenseSubcategory(
            category_id=category_id,
            name=name,
            description=_clean_text(data.description),
            is_active=data.is_active,
            display_order=(
                data.display_order
                if data.display_order is not None
                else self._next_display_order(category_id)
            ),
            created_by=self.user_id,
        )
        self.session.add(subcategory)
        _commit(self.session)
        self.session.refresh(subcategory)
        logger.info(
            f"subcategory_created: id={subcategory.id} category_id={category_id} "
            f"name={subcategory.name!r}"
        )
        _after_commit(
            self.cache,
            MutationKind.subcategory,
            entity_id=subcategory.id,
            category_id=category_id,
        )
        return subcategory

    def update(
        self, subcategory_id: int, data: SubcategoryUpdate
    ) -> ExpenseSubcategory:
        subcategory = self.get(subcategory_id)
        if data.name is not None:
            name = _clean_name(data.name)
            self._ensure_name_free(
                subcategory.category_id, name, exclude_id=subcategory.id
            )
            subcategory.name = name
        if "description" in data.model_fields_set:
            subcategory.description = _clean_text(data.description)
        if data.is_active is not None:
            subcategory.is_active = data.is_active
        if data.display_order is not None:
            subcategory.display_order = data.display_order
        _commit(self.session)
        self.session.refresh(subcategory)
        _after_commit(
            self.cache,
            MutationKind.subcategory,
            entity_id=subcategory.id,
            category_id=subcategory.category_id,
        )
        return subcategory

    def delete(self, subcategory_id: int) -> None:
        subcategory = self.get(subcategory_id)
        expense_count = self.session.execute(
            select(func.count(Expense.id)).where(
                Expense.subcategory_id == subcategory.id
            )
        ).scalar_one()
        if expense_count:
            raise HasDependentExpenses(
                f"Cannot delete subcategory with {expense_count} expense(s)",
                expense_count=int(expense_count),
            )
        category_id = subcategory.category_id
        self.session.delete(subcategory)
        _commit(self.session)
        logger.info(f"subcategory_deleted: id={subcategory_id}")
        _after_commit(
            self.cache,
            MutationKind.subcategory,
            entity_id=subcategory_id,
            category_id=category_id,
        )

    def reorder(self, category_id: int, ids: list[int]) -> list[ExpenseSubcategory]:
        CategoryService(self.session, self.user_id).get(category_id)
        _ensure_unique_ids(ids)
        found = self.session.scalars(
            select(ExpenseSubcategory).where(
                ExpenseSubcategory.id.in_(ids),
                ExpenseSubcategory.category_id == category_id,
            )
        ).all()
        by_id = {s.id: s for s in found}
        missing = [i for i in ids if i not in by_id]
        if missing:
            raise UnknownEntity(
                "Some subcategories not found or do not belong to this category",
                missing,
            )
        for position, subcategory_id in enumerate(ids):
            by_id[subcategory_id].display_order = position
        _commit(self.session)
        _after_commit(self.cache, MutationKind.subcategory, category_id=category_id)
        return [by_id[i] for i in ids]


# ---------------------------------------------------------------------------
# Ledger entries
# ---------------------------------------------------------------------------


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[CacheCoordinator] = None,
        events: Optional[EventDirectory] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache
        self.events = events or SqlEventDirectory(session)

    def _validate(self, data: ExpenseIn) -> None:
        problems: list[TreasuryError] = []
        category = self.session.get(ExpenseCategory, data.category_id)
        if not category:
            problems.append(CategoryNotFound("Category not found"))
        elif not category.is_active:
            problems.append(CategoryInactive("Category is inactive"))

        if data.subcategory_id is not None:
            subcategory = self.session.get(ExpenseSubcategory, data.subcategory_id)
            if not subcategory:
                problems.append(NotFound("Subcategory not found"))
            else:
                if not subcategory.is_active:
                    problems.append(CategoryInactive("Subcategory is inactive"))
                if subcategory.category_id != data.category_id:
                    problems.append(
                        SubcategoryMismatch(
                            "Subcategory does not belong to specified category"
                        )
                    )

        if data.linked_event_id is not None and not self.events.exists(
            data.linked_event_id
        ):
            problems.append(EventNotFound("Linked event not found"))
        raise_collected(problems)

    def get(self, expense_id: int) -> Expense:
        expense = self.session.scalar(
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.subcategory))
            .where(Expense.id == expense_id)
        )
        if not expense:
            raise NotFound("Expense not found", expense_id=expense_id)
        return expense

    def create(self, data: ExpenseIn) -> Expense:
        self._validate(data)
        expense = Expense(
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            expense_date=data.expense_date,
            vendor_name=_clean_text(data.vendor_name),
            receipt_url=data.receipt_url,
            is_approved=data.is_approved,
            category_id=data.category_id,
            subcategory_id=data.subcategory_id,
            linked_event_id=data.linked_event_id,
            created_by=self.user_id,
        )
        self.session.add(expense)
        _commit(self.session)
        self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} amount_cents={expense.amount_cents} "
            f"category_id={expense.category_id}"
        )
        _after_commit(self.cache, MutationKind.expense, entity_id=expense.id)
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        self._validate(data)
        expense.amount_cents = data.amount_cents
        expense.description = data.description.strip()
        expense.expense_date = data.expense_date
        expense.vendor_name = _clean_text(data.vendor_name)
        expense.is_approved = data.is_approved
        expense.category_id = data.category_id
        expense.subcategory_id = data.subcategory_id
        expense.linked_event_id = data.linked_event_id
        if "receipt_url" in data.model_fields_set:
            expense.receipt_url = data.receipt_url
        _commit(self.session)
        self.session.refresh(expense)
        _after_commit(self.cache, MutationKind.expense, entity_id=expense.id)
        return expense

    def delete(self, expense_id: int) -> DeletedEntry:
        expense = self.get(expense_id)
        deleted = DeletedEntry(expense.id, expense.amount_cents, expense.receipt_url)
        self.session.delete(expense)
        _commit(self.session)
        logger.info(
            f"expense_deleted: id={expense_id} had_receipt={bool(deleted.receipt_url)}"
        )
        _after_commit(self.cache, MutationKind.expense, entity_id=expense_id)
        return deleted

    def approve(self, expense_id: int, approved: bool = True) -> Expense:
        expense = self.get(expense_id)
        expense.is_approved = approved
        _commit(self.session)
        _after_commit(self.cache, MutationKind.expense, entity_id=expense.id)
        return expense

    def set_receipt(self, expense_id: int, receipt_url: Optional[str]) -> Optional[str]:
        """Store (or clear with ``None``) the receipt URL; returns the previous one."""
        expense = self.get(expense_id)
        previous = expense.receipt_url
        expense.receipt_url = receipt_url
        _commit(self.session)
        _after_commit(self.cache, MutationKind.expense, entity_id=expense.id)
        return previous

    def clear_receipt(self, expense_id: int) -> Optional[str]:
        return self.set_receipt(expense_id, None)

    def list(
        self,
        filters: Optional[ExpenseFilters] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Expense]:
        filters = filters or ExpenseFilters()
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.subcategory))
            .where(*_window_conditions(Expense.expense_date, filters.window))
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
        )
        if filters.category_id is not None:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.subcategory_id is not None:
            stmt = stmt.where(Expense.subcategory_id == filters.subcategory_id)
        if filters.event_id is not None:
            stmt = stmt.where(Expense.linked_event_id == filters.event_id)
        if filters.is_approved is not None:
            stmt = stmt.where(Expense.is_approved.is_(filters.is_approved))
        if filters.query:
            pattern = f"%{filters.query.strip()}%"
            stmt = stmt.where(
                or_(
                    Expense.description.ilike(pattern),
                    Expense.vendor_name.ilike(pattern),
                )
            )
        return self.session.scalars(stmt.limit(limit).offset(offset)).all()

    def detail(self, expense_id: int) -> dict[str, object]:
        def produce() -> dict[str, object]:
            return ExpenseOut.model_validate(self.get(expense_id)).model_dump()

        return _cached(
            self.cache,
            f"{CacheKeys.expense_entry(expense_id)}detail",
            CacheDurations.ENTITY,
            produce,
        )

    def page(
        self, filters: Optional[ExpenseFilters] = None, *, page: int = 1, limit: int = 50
    ) -> dict[str, object]:
        """One page of the listing plus a ``has_more`` flag, cached per filter set."""
        filters = filters or ExpenseFilters()

        def produce() -> dict[str, object]:
            items = self.list(filters, limit=limit + 1, offset=(page - 1) * limit)
            return {
                "items": [ExpenseOut.model_validate(e).model_dump() for e in items[:limit]],
                "page": page,
                "limit": limit,
                "has_more": len(items) > limit,
            }

        return _cached(
            self.cache,
            CacheKeys.expenses(filters.as_key(), page, limit),
            CacheDurations.LISTS,
            produce,
        )


class CollectionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[CacheCoordinator] = None,
        events: Optional[EventDirectory] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache
        self.events = events or SqlEventDirectory(session)

    @staticmethod
    def parse_mode(value: object) -> CollectionMode:
        if isinstance(value, CollectionMode):
            return value
        try:
            return CollectionMode(str(value).strip().upper())
        except ValueError:
            raise InvalidMode(
                "Invalid collection mode",
                mode=value,
                allowed=[m.value for m in CollectionMode],
            ) from None

    def _validate(self, data: CollectionIn) -> CollectionMode:
        problems: list[TreasuryError] = []
        if data.linked_event_id is not None and not self.events.exists(
            data.linked_event_id
        ):
            problems.append(EventNotFound("Linked event not found"))
        try:
            mode = self.parse_mode(data.collection_mode)
        except InvalidMode as exc:
            raise_collected([exc, *problems])
            raise
        raise_collected(problems)
        return mode

    def get(self, collection_id: int) -> ManualCollection:
        collection = self.session.get(ManualCollection, collection_id)
        if not collection:
            raise NotFound("Collection not found", collection_id=collection_id)
        return collection

    def create(self, data: CollectionIn) -> ManualCollection:
        mode = self._validate(data)
        collection = ManualCollection(
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            collection_date=data.collection_date,
            collection_mode=mode,
            category=_clean_text(data.category),
            donor_name=_clean_text(data.donor_name),
            is_verified=data.is_verified,
            receipt_url=data.receipt_url,
            linked_event_id=data.linked_event_id,
            created_by=self.user_id,
        )
        self.session.add(collection)
        _commit(self.session)
        self.session.refresh(collection)
        logger.info(
            f"collection_created: id={collection.id} "
            f"amount_cents={collection.amount_cents} mode={mode.value}"
        )
        _after_commit(self.cache, MutationKind.collection, entity_id=collection.id)
        return collection

    def update(self, collection_id: int, data: CollectionIn) -> ManualCollection:
        collection = self.get(collection_id)
        mode = self._validate(data)
        collection.amount_cents = data.amount_cents
        collection.description = data.description.strip()
        collection.collection_date = data.collection_date
        collection.collection_mode = mode
        collection.category = _clean_text(data.category)
        collection.donor_name = _clean_text(data.donor_name)
        collection.is_verified = data.is_verified
        collection.linked_event_id = data.linked_event_id
        if "receipt_url" in data.model_fields_set:
            collection.receipt_url = data.receipt_url
        _commit(self.session)
        self.session.refresh(collection)
        _after_commit(self.cache, MutationKind.collection, entity_id=collection.id)
        return collection

    def delete(self, collection_id: int) -> DeletedEntry:
        collection = self.get(collection_id)
        deleted = DeletedEntry(
            collection.id, collection.amount_cents, collection.receipt_url
        )
        self.session.delete(collection)
        _commit(self.session)
        logger.info(f"collection_deleted: id={collection_id}")
        _after_commit(self.cache, MutationKind.collection, entity_id=collection_id)
        return deleted

    def verify(self, collection_id: int, verified: bool = True) -> ManualCollection:
        collection = self.get(collection_id)
        collection.is_verified = verified
        _commit(self.session)
        _after_commit(self.cache, MutationKind.collection, entity_id=collection.id)
        return collection

    def set_receipt(
        self, collection_id: int, receipt_url: Optional[str]
    ) -> Optional[str]:
        collection = self.get(collection_id)
        previous = collection.receipt_url
        collection.receipt_url = receipt_url
        _commit(self.session)
        _after_commit(self.cache, MutationKind.collection, entity_id=collection.id)
        return previous

    def clear_receipt(self, collection_id: int) -> Optional[str]:
        return self.set_receipt(collection_id, None)

    def list(
        self,
        filters: Optional[CollectionFilters] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ManualCollection]:
        filters = filters or CollectionFilters()
        stmt = (
            select(ManualCollection)
            .where(*_window_conditions(ManualCollection.collection_date, filters.window))
            .order_by(ManualCollection.collection_date.desc(), ManualCollection.id.desc())
        )
        if filters.collection_mode is not None:
            stmt = stmt.where(ManualCollection.collection_mode == filters.collection_mode)
        if filters.category:
            stmt = stmt.where(ManualCollection.category == filters.category)
        if filters.event_id is not None:
            stmt = stmt.where(ManualCollection.linked_event_id == filters.event_id)
        if filters.is_verified is not None:
            stmt = stmt.where(ManualCollection.is_verified.is_(filters.is_verified))
        if filters.query:
            pattern = f"%{filters.query.strip()}%"
            stmt = stmt.where(
                or_(
                    ManualCollection.description.ilike(pattern),
                    ManualCollection.donor_name.ilike(pattern),
                )
            )
        return self.session.scalars(stmt.limit(limit).offset(offset)).all()

    def detail(self, collection_id: int) -> dict[str, object]:
        def produce() -> dict[str, object]:
            return CollectionOut.model_validate(self.get(collection_id)).model_dump()

        return _cached(
            self.cache,
            f"{CacheKeys.collection_entry(collection_id)}detail",
            CacheDurations.ENTITY,
            produce,
        )

    def page(
        self,
        filters: Optional[CollectionFilters] = None,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, object]:
        filters = filters or CollectionFilters()

        def produce() -> dict[str, object]:
            items = self.list(filters, limit=limit + 1, offset=(page - 1) * limit)
            return {
                "items": [
                    CollectionOut.model_validate(c).model_dump() for c in items[:limit]
                ],
                "page": page,
                "limit": limit,
                "has_more": len(items) > limit,
            }

        return _cached(
            self.cache,
            CacheKeys.collections(filters.as_key(), page, limit),
            CacheDurations.LISTS,
            produce,
        )


# ---------------------------------------------------------------------------
# Source aggregation
# ---------------------------------------------------------------------------


class LedgerSource(str, Enum):
    expense = "expense"
    manual_collection = "manual_collection"
    online_payment = "online_payment"


GROUP_DIMENSIONS: dict[LedgerSource, tuple[str, ...]] = {
    LedgerSource.expense: ("category", "subcategory", "vendor", "event"),
    LedgerSource.manual_collection: ("mode", "category", "verification"),
    LedgerSource.online_payment: ("provider", "reference_type"),
}


@dataclass(frozen=True)
class BreakdownItem:
    key: object
    label: str
    amount_cents: int
    count: int
    percent: float


@dataclass
class Aggregate:
    source: LedgerSource
    total_cents: int = 0
    count: int = 0
    breakdown: list[BreakdownItem] = field(default_factory=list)

    @property
    def average_cents(self) -> float:
        return self.total_cents / self.count if self.count else 0.0


def _window_conditions(column, window: DateWindow) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    if window.start is not None:
        conditions.append(column >= window.start)
    if window.end is not None:
        conditions.append(column <= window.end)
    return conditions


def _payment_window_conditions(window: DateWindow) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = [
        PaymentTransaction.status == PaymentStatus.completed
    ]
    start_at = window.start_at()
    end_before = window.end_before()
    if start_at is not None:
        conditions.append(PaymentTransaction.created_at >= start_at)
    if end_before is not None:
        conditions.append(PaymentTransaction.created_at < end_before)
    return conditions


class AggregationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _source_columns(source: LedgerSource):
        if source == LedgerSource.expense:
            return Expense, Expense.amount_cents, Expense.expense_date
        if source == LedgerSource.manual_collection:
            return (
                ManualCollection,
                ManualCollection.amount_cents,
                ManualCollection.collection_date,
            )
        return (
            PaymentTransaction,
            PaymentTransaction.amount_cents,
            PaymentTransaction.created_at,
        )

    @staticmethod
    def _conditions(source: LedgerSource, window: DateWindow):
        if source == LedgerSource.online_payment:
            return _payment_window_conditions(window)
        _, _, date_col = AggregationService._source_columns(source)
        return _window_conditions(date_col, window)

    def totals(self, source: LedgerSource, window: DateWindow) -> tuple[int, int]:
        model, amount_col, _ = self._source_columns(source)
        row = self.session.execute(
            select(
                func.coalesce(func.sum(amount_col), 0).label("total"),
                func.count(model.id).label("count"),
            ).where(*self._conditions(source, window))
        ).one()
        return int(row.total or 0), int(row.count or 0)

    def _group_statement(self, source: LedgerSource, group_by: str):
        model, amount_col, _ = self._source_columns(source)
        measures = (
            func.coalesce(func.sum(amount_col), 0).label("total"),
            func.count(model.id).label("count"),
            func.min(model.id).label("first_id"),
        )
        if source == LedgerSource.expense:
            if group_by == "category":
                return (
                    select(Expense.category_id, ExpenseCategory.name, *measures)
                    .join(ExpenseCategory, ExpenseCategory.id == Expense.category_id)
                    .group_by(Expense.category_id, ExpenseCategory.name)
                )
            if group_by == "subcategory":
                return (
                    select(Expense.subcategory_id, ExpenseSubcategory.name, *measures)
                    .outerjoin(
                        ExpenseSubcategory,
                        ExpenseSubcategory.id == Expense.subcategory_id,
                    )
                    .group_by(Expense.subcategory_id, ExpenseSubcategory.name)
                )
            if group_by == "vendor":
                column = Expense.vendor_name
                return select(
                    column.label("key"), column.label("label"), *measures
                ).group_by(column)
            return (
                select(Expense.linked_event_id, Event.title, *measures)
                .outerjoin(Event, Event.id == Expense.linked_event_id)
                .group_by(Expense.linked_event_id, Event.title)
            )
        if source == LedgerSource.manual_collection:
            column = {
                "mode": ManualCollection.collection_mode,
                "category": ManualCollection.category,
                "verification": ManualCollection.is_verified,
            }[group_by]
            return select(
                column.label("key"), column.label("label"), *measures
            ).group_by(column)
        column = {
            "provider": PaymentTransaction.payment_provider,
            "reference_type": PaymentTransaction.reference_type,
        }[group_by]
        return select(
            column.label("key"), column.label("label"), *measures
        ).group_by(column)

    @staticmethod
    def _label(group_by: str, key: object, label: object) -> tuple[object, str]:
        if isinstance(key, Enum):
            key = key.value
        if group_by == "verification":
            return bool(key), "verified" if key else "unverified"
        if label is None or label == "":
            return key, "Unspecified"
        return key, str(getattr(label, "value", label))

    def aggregate(
        self,
        source: LedgerSource,
        window: DateWindow = ALL_TIME,
        group_by: Optional[str] = None,
    ) -> Aggregate:
        total, count = self.totals(source, window)
        result = Aggregate(source=source, total_cents=total, count=count)
        if group_by is None:
            return result
        if group_by not in GROUP_DIMENSIONS[source]:
            raise ValidationFailed(
                [f"Cannot group {source.value} by {group_by!r}"]
            )

        stmt = self._group_statement(source, group_by).where(
            *self._conditions(source, window)
        )
        rows = []
        for key, label, group_total, group_count, first_id in self.session.execute(stmt):
            clean_key, clean_label = self._label(group_by, key, label)
            rows.append((int(group_total or 0), int(first_id), clean_key, clean_label, int(group_count)))
        rows.sort(key=lambda r: (-r[0], r[1]))
        result.breakdown = [
            BreakdownItem(
                key=key,
                label=label,
                amount_cents=amount,
                count=group_count,
                percent=percent_of(amount, total),
            )
            for amount, _, key, label, group_count in rows
        ]
        return result

    def monthly_buckets(
        self,
        source: LedgerSource,
        year: int,
        *,
        category_id: Optional[int] = None,
    ) -> dict[int, tuple[int, int]]:
        """Month number -> (total, count) for ``source`` within calendar ``year``."""
        model, amount_col, date_col = self._source_columns(source)
        month = extract("month", date_col)
        stmt = (
            select(
                month.label("month"),
                func.coalesce(func.sum(amount_col), 0).label("total"),
                func.count(model.id).label("count"),
            )
            .where(*self._conditions(source, year_window(year)))
            .group_by(month)
        )
        if category_id is not None and source == LedgerSource.expense:
            stmt = stmt.where(Expense.category_id == category_id)
        return {
            int(row.month): (int(row.total or 0), int(row.count or 0))
            for row in self.session.execute(stmt)
        }

    def top_entries(
        self, source: LedgerSource, window: DateWindow = ALL_TIME, limit: int = 10
    ) -> list[dict[str, object]]:
        if source == LedgerSource.expense:
            expenses = self.session.scalars(
                select(Expense)
                .options(joinedload(Expense.category), joinedload(Expense.subcategory))
                .where(*self._conditions(source, window))
                .order_by(Expense.amount_cents.desc(), Expense.id)
                .limit(limit)
            ).all()
            return [
                {
                    "id": e.id,
                    "amount_cents": e.amount_cents,
                    "description": e.description[:100],
                    "date": e.expense_date,
                    "category": e.category.name,
                    "subcategory": e.subcategory.name if e.subcategory else None,
                }
                for e in expenses
            ]
        if source == LedgerSource.manual_collection:
            collections = self.session.scalars(
                select(ManualCollection)
                .where(*self._conditions(source, window))
                .order_by(ManualCollection.amount_cents.desc(), ManualCollection.id)
                .limit(limit)
            ).all()
            return [
                {
                    "id": c.id,
                    "amount_cents": c.amount_cents,
                    "description": c.description[:100],
                    "date": c.collection_date,
                    "mode": c.collection_mode.value,
                    "category": c.category,
                    "is_verified": c.is_verified,
                }
                for c in collections
            ]
        payments = self.session.scalars(
            select(PaymentTransaction)
            .where(*self._conditions(source, window))
            .order_by(PaymentTransaction.amount_cents.desc(), PaymentTransaction.id)
            .limit(limit)
        ).all()
        return [
            {
                "id": p.id,
                "amount_cents": p.amount_cents,
                "reference_type": p.reference_type,
                "payment_provider": p.payment_provider,
                "date": p.created_at,
                "user_id": p.user_id,
            }
            for p in payments
        ]

    def recent_entries(
        self, source: LedgerSource, limit: int = 5
    ) -> list[dict[str, object]]:
        def short(text: str) -> str:
            return text[:50] + ("..." if len(text) > 50 else "")

        if source == LedgerSource.expense:
            expenses = self.session.scalars(
                select(Expense)
                .options(joinedload(Expense.category), joinedload(Expense.subcategory))
                .order_by(Expense.expense_date.desc(), Expense.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": e.id,
                    "amount_cents": e.amount_cents,
                    "description": short(e.description),
                    "date": e.expense_date,
                    "category": e.category.name,
                    "subcategory": e.subcategory.name if e.subcategory else None,
                }
                for e in expenses
            ]
        collections = self.session.scalars(
            select(ManualCollection)
            .order_by(ManualCollection.collection_date.desc(), ManualCollection.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": c.id,
                "amount_cents": c.amount_cents,
                "description": short(c.description),
                "date": c.collection_date,
                "mode": c.collection_mode.value,
                "category": c.category,
            }
            for c in collections
        ]

    def count_in_window(self, source: LedgerSource, window: DateWindow) -> int:
        return self.totals(source, window)[1]


# ---------------------------------------------------------------------------
# Balances and reconciliation
# ---------------------------------------------------------------------------


@dataclass
class YearlySummary:
    year: int
    opening_balance_cents: int
    closing_balance_cents: Optional[int]
    collections: CollectionTotals
    expenses: ExpenseTotals
    has_yearly_balance: bool

    @property
    def net_movement_cents(self) -> int:
        return self.collections.total - self.expenses.total

    @property
    def theoretical_closing_cents(self) -> int:
        return self.opening_balance_cents + self.net_movement_cents

    @property
    def balance_difference_cents(self) -> Optional[int]:
        if self.closing_balance_cents is None:
            return None
        return self.closing_balance_cents - self.theoretical_closing_cents

    @property
    def is_reconciled(self) -> bool:
        return self.closing_balance_cents is not None

    def as_dict(self) -> dict[str, object]:
        return {
            "year": self.year,
            "opening_balance_cents": self.opening_balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "collections": {
                "online": self.collections.online,
                "manual": self.collections.manual,
                "total": self.collections.total,
                "online_count": self.collections.online_count,
                "manual_count": self.collections.manual_count,
            },
            "expenses": {"total": self.expenses.total, "count": self.expenses.count},
            "net_movement_cents": self.net_movement_cents,
            "theoretical_closing_cents": self.theoretical_closing_cents,
            "balance_difference_cents": self.balance_difference_cents,
            "is_reconciled": self.is_reconciled,
            "has_yearly_balance": self.has_yearly_balance,
        }


class BalanceService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[CacheCoordinator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache
        self.aggregates = AggregationService(session)
        settings = get_settings()
        self.min_year = settings.min_year
        self.max_year = settings.max_year

    def validate_year(self, year: int) -> int:
        if year < self.min_year or year > self.max_year:
            raise YearOutOfRange(
                f"Year must be between {self.min_year} and {self.max_year}", year=year
            )
        return year

    def collection_totals(self, window: DateWindow) -> CollectionTotals:
        manual, manual_count = self.aggregates.totals(
            LedgerSource.manual_collection, window
        )
        online, online_count = self.aggregates.totals(
            LedgerSource.online_payment, window
        )
        return CollectionTotals(
            total=manual + online,
            manual=manual,
            online=online,
            manual_count=manual_count,
            online_count=online_count,
        )

    def total_collections(self, window: DateWindow) -> int:
        return self.collection_totals(window).total

    def net_movement(self, window: DateWindow) -> int:
        expenses, _ = self.aggregates.totals(LedgerSource.expense, window)
        return self.total_collections(window) - expenses

    def find_yearly_balance(self, year: int) -> Optional[YearlyBalance]:
        return self.session.scalar(
            select(YearlyBalance).where(YearlyBalance.year == year)
        )

    def yearly_summary(self, year: int) -> YearlySummary:
        self.validate_year(year)
        window = year_window(year)
        balance = self.find_yearly_balance(year)
        expense_total, expense_count = self.aggregates.totals(
            LedgerSource.expense, window
        )
        return YearlySummary(
            year=year,
            opening_balance_cents=balance.opening_balance_cents if balance else 0,
            closing_balance_cents=balance.closing_balance_cents if balance else None,
            collections=self.collection_totals(window),
            expenses=ExpenseTotals(total=expense_total, count=expense_count),
            has_yearly_balance=balance is not None,
        )

    def theoretical_closing(self, year: int) -> int:
        return self.yearly_summary(year).theoretical_closing_cents

    def balance_difference(self, year: int) -> Optional[int]:
        return self.yearly_summary(year).balance_difference_cents

    # Yearly balances

    def list_yearly_balances(self) -> dict[str, object]:
        def produce() -> dict[str, object]:
            balances = self.session.scalars(
                select(YearlyBalance).order_by(YearlyBalance.year.desc())
            ).all()
            return {
                "yearly_balances": [
                    YearlyBalanceOut.model_validate(b).model_dump() for b in balances
                ],
                "summary": {
                    "total_years": len(balances),
                    "latest_year": balances[0].year if balances else None,
                    "oldest_year": balances[-1].year if balances else None,
                },
            }

        return _cached(
            self.cache, CacheKeys.YEARLY_BALANCES, CacheDurations.YEARLY_BALANCE, produce
        )

    def get_yearly_balance(self, year: int) -> YearlyBalance:
        self.validate_year(year)
        balance = self.find_yearly_balance(year)
        if not balance:
            raise NotFound("Yearly balance not found for this year", year=year)
        return balance

    def yearly_balance_detail(self, year: int) -> dict[str, object]:
        def produce() -> dict[str, object]:
            balance = self.get_yearly_balance(year)
            return {
                "yearly_balance": YearlyBalanceOut.model_validate(balance).model_dump(),
                "year_summary": self.yearly_summary(year).as_dict(),
            }

        return _cached(
            self.cache,
            CacheKeys.yearly_balance(year),
            CacheDurations.YEARLY_BALANCE,
            produce,
        )

    def create_yearly_balance(self, data: YearlyBalanceIn) -> YearlyBalance:
        self.validate_year(data.year)
        if self.find_yearly_balance(data.year):
            raise DuplicateYear(
                "Yearly balance already exists for this year", year=data.year
            )
        balance = YearlyBalance(
            year=data.year,
            opening_balance_cents=data.opening_balance_cents,
            closing_balance_cents=data.closing_balance_cents,
            notes=_clean_text(data.notes),
            created_by=self.user_id,
        )
        self.session.add(balance)
        _commit(self.session)
        self.session.refresh(balance)
        logger.info(
            f"yearly_balance_created: year={balance.year} "
            f"opening_cents={balance.opening_balance_cents}"
        )
        _after_commit(self.cache, MutationKind.yearly_balance, year=balance.year)
        return balance

    def update_yearly_balance(
        self, year: int, data: YearlyBalanceUpdate
    ) -> YearlyBalance:
        balance = self.get_yearly_balance(year)
        sent = data.model_fields_set
        if "opening_balance_cents" in sent:
            if data.opening_balance_cents is None:
                raise ValidationFailed(["Opening balance cannot be cleared"])
            balance.opening_balance_cents = data.opening_balance_cents
        if "closing_balance_cents" in sent:
            balance.closing_balance_cents = data.closing_balance_cents
        if "notes" in sent:
            balance.notes = _clean_text(data.notes)
        _commit(self.session)
        self.session.refresh(balance)
        logger.info(
            f"yearly_balance_updated: year={year} reconciled={balance.is_reconciled}"
        )
        _after_commit(self.cache, MutationKind.yearly_balance, year=year)
        return balance

    def delete_yearly_balance(self, year: int) -> None:
        balance = self.get_yearly_balance(year)
        window = year_window(year)
        expense_count = self.aggregates.count_in_window(LedgerSource.expense, window)
        collection_count = self.aggregates.count_in_window(
            LedgerSource.manual_collection, window
        )
        if expense_count or collection_count:
            raise HasLedgerActivity(
                f"Cannot delete yearly balance for {year}. There are "
                f"{expense_count} expenses and {collection_count} collections "
                f"for this year.",
                expense_count=expense_count,
                collection_count=collection_count,
            )
        self.session.delete(balance)
        _commit(self.session)
        logger.info(f"yearly_balance_deleted: year={year}")
        _after_commit(self.cache, MutationKind.yearly_balance, year=year)

    # Account balance snapshots

    def current_account_balance(self) -> Optional[AccountBalance]:
        return self.session.scalar(
            select(AccountBalance)
            .order_by(AccountBalance.balance_date.desc(), AccountBalance.id.desc())
            .limit(1)
        )

    def current_account_balance_view(self) -> dict[str, object]:
        def produce() -> dict[str, object]:
            latest = self.current_account_balance()
            if latest is None:
                return {
                    "current_balance": None,
                    "message": "No account balance records found",
                }
            return {
                "current_balance": AccountBalanceOut.model_validate(latest).model_dump()
            }

        return _cached(
            self.cache, CacheKeys.ACCOUNT_BALANCE, CacheDurations.ACCOUNT_BALANCE, produce
        )

    def _snapshot_for_date(self, balance_date: date) -> Optional[AccountBalance]:
        return self.session.scalar(
            select(AccountBalance).where(AccountBalance.balance_date == balance_date)
        )

    def record_account_balance(self, data: AccountBalanceIn) -> AccountBalance:
        if self._snapshot_for_date(data.balance_date):
            raise DuplicateSnapshotDate(
                "Account balance already exists for this date. "
                "Please update the existing record.",
                balance_date=data.balance_date.isoformat(),
            )
        snapshot = AccountBalance(
            current_balance_cents=data.current_balance_cents,
            balance_date=data.balance_date,
            notes=_clean_text(data.notes),
            bank_statement_url=data.bank_statement_url,
            updated_by=self.user_id,
        )
        self.session.add(snapshot)
        _commit(self.session)
        self.session.refresh(snapshot)
        logger.info(
            f"account_balance_recorded: date={snapshot.balance_date} "
            f"balance_cents={snapshot.current_balance_cents}"
        )
        _after_commit(self.cache, MutationKind.account_balance)
        return snapshot

    def _get_snapshot(self, balance_id: int) -> AccountBalance:
        snapshot = self.session.get(AccountBalance, balance_id)
        if not snapshot:
            raise NotFound("Account balance record not found", balance_id=balance_id)
        return snapshot

    def update_account_balance(
        self, balance_id: int, data: AccountBalanceIn
    ) -> AccountBalance:
        snapshot = self._get_snapshot(balance_id)
        other = self._snapshot_for_date(data.balance_date)
        if other is not None and other.id != snapshot.id:
            raise DuplicateSnapshotDate(
                "Account balance already exists for this date",
                balance_date=data.balance_date.isoformat(),
            )
        snapshot.current_balance_cents = data.current_balance_cents
        snapshot.balance_date = data.balance_date
        snapshot.notes = _clean_text(data.notes)
        if "bank_statement_url" in data.model_fields_set:
            snapshot.bank_statement_url = data.bank_statement_url
        snapshot.updated_by = self.user_id
        _commit(self.session)
        self.session.refresh(snapshot)
        _after_commit(self.cache, MutationKind.account_balance)
        return snapshot

    def set_bank_statement(
        self, balance_id: int, statement_url: Optional[str]
    ) -> AccountBalance:
        snapshot = self._get_snapshot(balance_id)
        snapshot.bank_statement_url = statement_url
        _commit(self.session)
        _after_commit(self.cache, MutationKind.account_balance)
        return snapshot

    def balance_history(self, limit: int = 50) -> dict[str, object]:
        limit = max(1, min(int(limit or 50), MAX_HISTORY_LIMIT))

        def produce() -> dict[str, object]:
            snapshots = self.session.scalars(
                select(AccountBalance)
                .order_by(AccountBalance.balance_date.desc(), AccountBalance.id.desc())
                .limit(limit)
            ).all()
            history = []
            for index, snapshot in enumerate(snapshots):
                previous = snapshots[index + 1] if index + 1 < len(snapshots) else None
                item = AccountBalanceOut.model_validate(snapshot).model_dump()
                item["change_cents"] = (
                    snapshot.current_balance_cents - previous.current_balance_cents
                    if previous
                    else None
                )
                history.append(item)
            return {
                "balance_history": history,
                "summary": {
                    "total_records": len(snapshots),
                    "latest_balance_cents": (
                        snapshots[0].current_balance_cents if snapshots else None
                    ),
                    "oldest_balance_cents": (
                        snapshots[-1].current_balance_cents if snapshots else None
                    ),
                    "date_from": snapshots[-1].balance_date if snapshots else None,
                    "date_to": snapshots[0].balance_date if snapshots else None,
                },
            }

        return _cached(
            self.cache,
            CacheKeys.balance_history(limit),
            CacheDurations.ACCOUNT_BALANCE,
            produce,
        )


# ---------------------------------------------------------------------------
# Trends
# ---------------------------------------------------------------------------


class TrendService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.aggregates = AggregationService(session)

    def monthly_trend(self, year: int) -> list[MonthlyTrend]:
        expenses = self.aggregates.monthly_buckets(LedgerSource.expense, year)
        manual = self.aggregates.monthly_buckets(LedgerSource.manual_collection, year)
        online = self.aggregates.monthly_buckets(LedgerSource.online_payment, year)

        months = empty_year()
        for entry in months:
            expense_total, expense_count = expenses.get(entry.month, (0, 0))
            manual_total, manual_count = manual.get(entry.month, (0, 0))
            online_total, online_count = online.get(entry.month, (0, 0))
            entry.expenses = ExpenseTotals(total=expense_total, count=expense_count)
            entry.collections = CollectionTotals(
                total=manual_total + online_total,
                manual=manual_total,
                online=online_total,
                manual_count=manual_count,
                online_count=online_count,
            )
        return months

    def quarterly_trend(self, year: int) -> list[QuarterSummary]:
        return quarterly_rollup(self.monthly_trend(year))

    def source_series(self, source: LedgerSource, year: int) -> list[int]:
        buckets = self.aggregates.monthly_buckets(source, year)
        return [buckets.get(m, (0, 0))[0] for m in range(1, 13)]

    def category_series(self, category_id: int, year: int) -> list[int]:
        buckets = self.aggregates.monthly_buckets(
            LedgerSource.expense, year, category_id=category_id
        )
        return [buckets.get(m, (0, 0))[0] for m in range(1, 13)]


# ---------------------------------------------------------------------------
# Analytics read models
# ---------------------------------------------------------------------------


def breakdown_dicts(items: list[BreakdownItem]) -> list[dict[str, object]]:
    return [asdict(item) for item in items]


class AnalyticsService:
    def __init__(
        self, session: Session, *, cache: Optional[CacheCoordinator] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self.aggregates = AggregationService(session)
        self.trends = TrendService(session)

    def _trend_year(self, window: DateWindow, year: Optional[int]) -> int:
        if year is not None:
            return BalanceService(self.session).validate_year(year)
        if window.start is not None:
            return window.start.year
        return local_today().year

    def _cached(self, name: str, token: str, producer: Callable[[], object]):
        return _cached(
            self.cache,
            CacheKeys.analytics(name, token),
            CacheDurations.ANALYTICS,
            producer,
        )

    def collection_analytics(
        self, window: DateWindow = ALL_TIME, year: Optional[int] = None
    ) -> dict[str, object]:
        trend_year = self._trend_year(window, year)

        def produce() -> dict[str, object]:
            manual = self.aggregates.aggregate(LedgerSource.manual_collection, window)
            online = self.aggregates.aggregate(LedgerSource.online_payment, window)
            by_mode = self.aggregates.aggregate(
                LedgerSource.manual_collection, window, group_by="mode"
            ).breakdown
            by_category = self.aggregates.aggregate(
                LedgerSource.manual_collection, window, group_by="category"
            ).breakdown
            monthly = self.trends.monthly_trend(trend_year)
            totals = [m.collections.total for m in monthly]
            total = manual.total_cents + online.total_cents
            count = manual.count + online.count
            best = best_month(monthly, key="collections")
            return {
                "summary": {
                    "total_cents": total,
                    "count": count,
                    "average_cents": total / count if count else 0.0,
                    "manual": {
                        "amount_cents": manual.total_cents,
                        "count": manual.count,
                        "percent": percent_of(manual.total_cents, total),
                    },
                    "online": {
                        "amount_cents": online.total_cents,
                        "count": online.count,
                        "percent": percent_of(online.total_cents, total),
                    },
                },
                "breakdown": {
                    "by_mode": breakdown_dicts(by_mode),
                    "by_category": breakdown_dicts(by_category),
                },
                "trends": {
                    "year": trend_year,
                    "monthly": [m.as_dict() for m in monthly],
                    "growth": growth_rate(totals),
                    "best_month": best.month_name if best else None,
                    "consistency": consistency(totals),
                },
                "top_collections": self.aggregates.top_entries(
                    LedgerSource.manual_collection, window
                ),
                "insights": {
                    "average_manual_cents": manual.average_cents,
                    "average_online_cents": online.average_cents,
                    "preferred_mode": by_mode[0].label if by_mode else None,
                    "diversity_index": diversity_index(
                        [b.amount_cents for b in by_mode],
                        [b.amount_cents for b in by_category],
                    ),
                },
            }

        return self._cached("collections", f"{window.cache_token()}:{trend_year}", produce)

    def online_analytics(
        self, window: DateWindow = ALL_TIME, year: Optional[int] = None
    ) -> dict[str, object]:
        trend_year = self._trend_year(window, year)

        def produce() -> dict[str, object]:
            source = LedgerSource.online_payment
            by_provider = self.aggregates.aggregate(source, window, group_by="provider")
            by_purpose = self.aggregates.aggregate(
                source, window, group_by="reference_type"
            ).breakdown
            series = self.trends.source_series(source, trend_year)
            return {
                "summary": {
                    "total_cents": by_provider.total_cents,
                    "count": by_provider.count,
                    "average_cents": by_provider.average_cents,
                },
                "breakdown": {
                    "by_provider": breakdown_dicts(by_provider.breakdown),
                    "by_purpose": breakdown_dicts(by_purpose),
                },
                "trends": {
                    "year": trend_year,
                    "monthly": series,
                    "growth": growth_rate(series),
                },
                "top_transactions": self.aggregates.top_entries(source, window),
                "insights": {
                    "most_used_provider": (
                        by_provider.breakdown[0].label if by_provider.breakdown else None
                    ),
                    "primary_purpose": by_purpose[0].label if by_purpose else None,
                },
            }

        return self._cached("online", f"{window.cache_token()}:{trend_year}", produce)

    def manual_analytics(
        self, window: DateWindow = ALL_TIME, year: Optional[int] = None
    ) -> dict[str, object]:
        trend_year = self._trend_year(window, year)

        def produce() -> dict[str, object]:
            source = LedgerSource.manual_collection
            by_mode = self.aggregates.aggregate(source, window, group_by="mode")
            by_category = self.aggregates.aggregate(
                source, window, group_by="category"
            ).breakdown
            verification = {
                item.key: item
                for item in self.aggregates.aggregate(
                    source, window, group_by="verification"
                ).breakdown
            }
            verified = verification.get(True)
            unverified = verification.get(False)
            monthly_counts = self.aggregates.monthly_buckets(source, trend_year)
            series = [monthly_counts.get(m, (0, 0))[0] for m in range(1, 13)]
            counts = [monthly_counts.get(m, (0, 0))[1] for m in range(1, 13)]
            return {
                "summary": {
                    "total_cents": by_mode.total_cents,
                    "count": by_mode.count,
                    "average_cents": by_mode.average_cents,
                },
                "breakdown": {
                    "by_mode": breakdown_dicts(by_mode.breakdown),
                    "by_category": breakdown_dicts(by_category),
                },
                "verification": {
                    "verified": {
                        "amount_cents": verified.amount_cents if verified else 0,
                        "count": verified.count if verified else 0,
                    },
                    "unverified": {
                        "amount_cents": unverified.amount_cents if unverified else 0,
                        "count": unverified.count if unverified else 0,
                    },
                    "verification_rate": percent_of(
                        verified.count if verified else 0, by_mode.count
                    ),
                },
                "trends": {
                    "year": trend_year,
                    "monthly": series,
                    "growth": growth_rate(series),
                    "seasonality": seasonality(series),
                },
                "top_collections": self.aggregates.top_entries(source, window),
                "insights": {
                    "preferred_mode": (
                        by_mode.breakdown[0].label if by_mode.breakdown else None
                    ),
                    "top_category": by_category[0].label if by_category else None,
                    "collection_frequency": collection_frequency(counts),
                },
            }

        return self._cached("manual", f"{window.cache_token()}:{trend_year}", produce)

    def expense_analytics(
        self,
        window: DateWindow = ALL_TIME,
        year: Optional[int] = None,
        *,
        category_id: Optional[int] = None,
    ) -> dict[str, object]:
        trend_year = self._trend_year(window, year)

        def produce() -> dict[str, object]:
            source = LedgerSource.expense
            by_category = self.aggregates.aggregate(source, window, group_by="category")
            by_subcategory = (
                self.aggregates.aggregate(source, window, group_by="subcategory")
                .breakdown
                if category_id is None
                else self._subcategory_breakdown(category_id, window)
            )
            by_vendor = self.aggregates.aggregate(
                source, window, group_by="vendor"
            ).breakdown
            by_event = self.aggregates.aggregate(
                source, window, group_by="event"
            ).breakdown
            series = (
                self.trends.category_series(category_id, trend_year)
                if category_id is not None
                else self.trends.source_series(source, trend_year)
            )
            season = seasonality(series)
            amounts = [b.amount_cents for b in by_category.breakdown]
            return {
                "summary": {
                    "total_cents": by_category.total_cents,
                    "count": by_category.count,
                    "average_cents": by_category.average_cents,
                },
                "breakdown": {
                    "by_category": breakdown_dicts(by_category.breakdown),
                    "by_subcategory": breakdown_dicts(by_subcategory),
                    "by_vendor": breakdown_dicts(by_vendor[:10]),
                    "by_event": breakdown_dicts(by_event),
                },
                "trends": {
                    "year": trend_year,
                    "monthly": series,
                    "growth": growth_rate(series),
                    "seasonality": season,
                    "peak_month": season["peak_month"],
                    "direction": trend_direction(series),
                },
                "top_expenses": self.aggregates.top_entries(source, window),
                "insights": {
                    "most_expensive_category": (
                        asdict(by_category.breakdown[0]) if by_category.breakdown else None
                    ),
                    "top_vendor": asdict(by_vendor[0]) if by_vendor else None,
                    "concentration": concentration(amounts),
                    "distribution": expense_distribution(amounts),
                    "volatility": volatility(series),
                },
            }

        token = f"{window.cache_token()}:{trend_year}:{category_id or 'all'}"
        return self._cached("expenses", token, produce)

    def _subcategory_breakdown(
        self, category_id: int, window: DateWindow
    ) -> list[BreakdownItem]:
        conditions = _window_conditions(Expense.expense_date, window)
        total = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.category_id == category_id, *conditions
            )
        ).scalar_one()
        rows = self.session.execute(
            select(
                Expense.subcategory_id,
                ExpenseSubcategory.name,
                func.coalesce(func.sum(Expense.amount_cents), 0),
                func.count(Expense.id),
                func.min(Expense.id),
            )
            .outerjoin(
                ExpenseSubcategory, ExpenseSubcategory.id == Expense.subcategory_id
            )
            .where(Expense.category_id == category_id, *conditions)
            .group_by(Expense.subcategory_id, ExpenseSubcategory.name)
        ).all()
        ordered = sorted(rows, key=lambda r: (-int(r[2]), int(r[4])))
        return [
            BreakdownItem(
                key=sub_id,
                label=name or "Unspecified",
                amount_cents=int(amount),
                count=int(count),
                percent=percent_of(int(amount), int(total)),
            )
            for sub_id, name, amount, count, _ in ordered
        ]

    def category_analytics(
        self, window: DateWindow = ALL_TIME, year: Optional[int] = None
    ) -> dict[str, object]:
        """Per active category: totals, subcategory split and monthly series."""
        trend_year = self._trend_year(window, year)

        def produce() -> dict[str, object]:
            categories = self.session.scalars(
                select(ExpenseCategory)
                .where(ExpenseCategory.is_active.is_(True))
                .order_by(ExpenseCategory.display_order, ExpenseCategory.id)
            ).all()
            rows = []
            for category in categories:
                subs = self._subcategory_breakdown(category.id, window)
                total = sum(s.amount_cents for s in subs)
                count = sum(s.count for s in subs)
                series = self.trends.category_series(category.id, trend_year)
                rows.append(
                    {
                        "category": {
                            "id": category.id,
                            "name": category.name,
                            "description": category.description,
                        },
                        "totals": {"total_cents": total, "count": count},
                        "subcategories": breakdown_dicts(subs),
                        "trends": {
                            "monthly": series,
                            "growth": growth_rate(series),
                            "consistency": consistency(series),
                        },
                    }
                )
            rows.sort(key=lambda r: -r["totals"]["total_cents"])
            grand_total = sum(r["totals"]["total_cents"] for r in rows)
            for row in rows:
                row["percent"] = percent_of(row["totals"]["total_cents"], grand_total)
            return {
                "categories": rows,
                "summary": {
                    "total_categories": len(rows),
                    "total_cents": grand_total,
                    "average_per_category_cents": (
                        grand_total / len(rows) if rows else 0.0
                    ),
                },
            }

        return self._cached(
            "categories", f"{window.cache_token()}:{trend_year}", produce
        )

    def yearly_financial_summary(self, year: int) -> dict[str, object]:
        balances = BalanceService(self.session)
        balances.validate_year(year)

        def produce() -> dict[str, object]:
            summary = balances.yearly_summary(year)
            monthly = self.trends.monthly_trend(year)
            quarters = quarterly_rollup(monthly)
            by_category = self.aggregates.aggregate(
                LedgerSource.expense, year_window(year), group_by="category"
            )
            by_mode = self.aggregates.aggregate(
                LedgerSource.manual_collection, year_window(year), group_by="mode"
            )
            expenses = [m.expenses.total for m in monthly]
            collections = [m.collections.total for m in monthly]
            biggest = best_month(monthly, key="expenses")
            best = best_month(monthly, key="collections")
            data = summary.as_dict()
            data["breakdown"] = {
                "monthly": [m.as_dict() for m in monthly],
                "quarterly": [asdict(q) for q in quarters],
                "categories": breakdown_dicts(by_category.breakdown),
            }
            data["collection_analysis"] = {
                "by_mode": breakdown_dicts(by_mode.breakdown),
                "online_percent": percent_of(
                    summary.collections.online, summary.collections.total
                ),
            }
            data["insights"] = {
                "profitable_months": sum(1 for m in monthly if m.net_movement > 0),
                "biggest_expense_month": biggest.month_name if biggest else None,
                "best_collection_month": best.month_name if best else None,
                "consistency": {
                    "expenses": consistency(expenses),
                    "collections": consistency(collections),
                },
            }
            return data

        return _cached(
            self.cache,
            CacheKeys.yearly_summary(year),
            CacheDurations.ANALYTICS,
            produce,
        )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

COMPLIANT_RECEIPT_PERCENT = 80.0


class ReportService:
    """Printable year reports and the receipt transparency summary."""

    def __init__(
        self, session: Session, *, cache: Optional[CacheCoordinator] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self.aggregates = AggregationService(session)
        self.trends = TrendService(session)

    def _year_entries(self, year: int) -> dict[str, list[dict[str, object]]]:
        window = year_window(year)
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.subcategory))
            .where(*_window_conditions(Expense.expense_date, window))
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
        ).all()
        collections = self.session.scalars(
            select(ManualCollection)
            .where(*_window_conditions(ManualCollection.collection_date, window))
            .order_by(ManualCollection.collection_date.desc(), ManualCollection.id.desc())
        ).all()
        payments = self.session.scalars(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status == PaymentStatus.completed,
                *_payment_window_conditions(window),
            )
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        ).all()
        return {
            "expenses": [
                {
                    "id": e.id,
                    "amount_cents": e.amount_cents,
                    "description": e.description,
                    "date": e.expense_date,
                    "category": e.category.name,
                    "subcategory": e.subcategory.name if e.subcategory else None,
                    "vendor_name": e.vendor_name,
                    "is_approved": e.is_approved,
                    "has_receipt": e.receipt_url is not None,
                }
                for e in expenses
            ],
            "manual_collections": [
                {
                    "id": c.id,
                    "amount_cents": c.amount_cents,
                    "description": c.description,
                    "date": c.collection_date,
                    "mode": c.collection_mode.value,
                    "category": c.category,
                    "donor_name": c.donor_name,
                    "is_verified": c.is_verified,
                    "has_receipt": c.receipt_url is not None,
                }
                for c in collections
            ],
            "online_collections": [
                {
                    "id": p.id,
                    "amount_cents": p.amount_cents,
                    "date": p.created_at,
                    "payment_provider": p.payment_provider,
                    "reference_type": p.reference_type,
                    "user_id": p.user_id,
                }
                for p in payments
            ],
        }

    def financial_report(self, year: int) -> dict[str, object]:
        balances = BalanceService(self.session)
        balances.validate_year(year)

        def produce() -> dict[str, object]:
            summary = balances.yearly_summary(year)
            balance = balances.find_yearly_balance(year)
            window = year_window(year)
            manual = self.aggregates.aggregate(LedgerSource.manual_collection, window)
            online = self.aggregates.aggregate(LedgerSource.online_payment, window)
            expenses = self.aggregates.aggregate(
                LedgerSource.expense, window, group_by="category"
            )
            monthly = self.trends.monthly_trend(year)
            best = best_month(monthly)
            worst = min(monthly, key=lambda m: m.net_movement)
            logger.info(f"financial_report_built: year={year}")
            return {
                "report_info": {
                    "year": year,
                    "generated_at": local_now(),
                    "report_type": "Annual Financial Report",
                },
                "financial_summary": {
                    "yearly_balance": (
                        {
                            "opening_balance_cents": balance.opening_balance_cents,
                            "closing_balance_cents": balance.closing_balance_cents,
                            "notes": balance.notes,
                        }
                        if balance
                        else None
                    ),
                    "collections": {
                        "total_cents": summary.collections.total,
                        "manual": {
                            "amount_cents": manual.total_cents,
                            "count": manual.count,
                            "average_cents": manual.average_cents,
                        },
                        "online": {
                            "amount_cents": online.total_cents,
                            "count": online.count,
                            "average_cents": online.average_cents,
                        },
                    },
                    "expenses": {
                        "total_cents": expenses.total_cents,
                        "count": expenses.count,
                        "average_cents": expenses.average_cents,
                        "category_breakdown": breakdown_dicts(expenses.breakdown),
                    },
                    "net_movement_cents": summary.net_movement_cents,
                    "theoretical_closing_cents": summary.theoretical_closing_cents,
                    "balance_difference_cents": summary.balance_difference_cents,
                },
                "detailed_data": self._year_entries(year),
                "trends": {"monthly": [m.as_dict() for m in monthly]},
                "insights": {
                    "best_month": best.month_name if best else None,
                    "worst_month": worst.month_name,
                    "months_with_surplus": sum(1 for m in monthly if m.net_movement > 0),
                    "average_monthly_collections_cents": summary.collections.total / 12,
                    "average_monthly_expenses_cents": summary.expenses.total / 12,
                },
            }

        return _cached(
            self.cache,
            CacheKeys.report("financial", str(year)),
            CacheDurations.REPORTS,
            produce,
        )

    def _receipt_counts(self, model, date_col, window: DateWindow) -> dict[str, object]:
        total, with_receipt = self.session.execute(
            select(func.count(model.id), func.count(model.receipt_url)).where(
                *_window_conditions(date_col, window)
            )
        ).one()
        return {
            "total": total,
            "with_receipts": with_receipt,
            "without_receipts": total - with_receipt,
            "receipt_percent": percent_of(with_receipt, total),
        }

    def receipt_summary(self, window: DateWindow = ALL_TIME) -> dict[str, object]:
        """Receipt coverage of expenses and manual collections in ``window``.

        Online payments carry no receipts and are left out.
        """

        def produce() -> dict[str, object]:
            expenses = self._receipt_counts(Expense, Expense.expense_date, window)
            collections = self._receipt_counts(
                ManualCollection, ManualCollection.collection_date, window
            )
            entries = expenses["total"] + collections["total"]
            receipted = expenses["with_receipts"] + collections["with_receipts"]
            coverage = percent_of(receipted, entries)

            recent_expenses = self.session.scalars(
                select(Expense)
                .options(joinedload(Expense.category), joinedload(Expense.subcategory))
                .where(
                    Expense.receipt_url.is_not(None),
                    *_window_conditions(Expense.expense_date, window),
                )
                .order_by(Expense.expense_date.desc(), Expense.id.desc())
                .limit(20)
            ).all()
            recent_collections = self.session.scalars(
                select(ManualCollection)
                .where(
                    ManualCollection.receipt_url.is_not(None),
                    *_window_conditions(ManualCollection.collection_date, window),
                )
                .order_by(
                    ManualCollection.collection_date.desc(), ManualCollection.id.desc()
                )
                .limit(20)
            ).all()
            return {
                "summary": {
                    "expenses": expenses,
                    "collections": collections,
                    "overall": {
                        "total_entries": entries,
                        "total_with_receipts": receipted,
                        "receipt_percent": coverage,
                    },
                },
                "recent_receipted_entries": {
                    "expenses": [
                        {
                            "id": e.id,
                            "amount_cents": e.amount_cents,
                            "description": e.description[:100],
                            "date": e.expense_date,
                            "category": e.category.name,
                            "subcategory": e.subcategory.name if e.subcategory else None,
                            "receipt_url": e.receipt_url,
                        }
                        for e in recent_expenses
                    ],
                    "collections": [
                        {
                            "id": c.id,
                            "amount_cents": c.amount_cents,
                            "description": c.description[:100],
                            "date": c.collection_date,
                            "mode": c.collection_mode.value,
                            "receipt_url": c.receipt_url,
                        }
                        for c in recent_collections
                    ],
                },
                "insights": {
                    "transparency_level": coverage,
                    "compliance_status": (
                        "Good"
                        if coverage >= COMPLIANT_RECEIPT_PERCENT
                        else "Needs Improvement"
                    ),
                    "missing_receipt_count": entries - receipted,
                },
                "period": {
                    "slug": window.slug,
                    "date_from": window.start,
                    "date_to": window.end,
                },
                "generated_at": local_now(),
            }

        return _cached(
            self.cache,
            CacheKeys.report("receipts", window.cache_token()),
            CacheDurations.REPORTS,
            produce,
        )
