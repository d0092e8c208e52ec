"""Error kinds raised by the treasury services.

Every error is a ``ValueError`` so callers that only care about "the request
was rejected" can keep catching ``ValueError``; the HTTP layer uses ``kind``
and the subclass to pick a status code.
"""

from __future__ import annotations

from typing import Iterable, Optional


class TreasuryError(ValueError):
    kind = "TreasuryError"

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(TreasuryError):
    kind = "NotFound"


class CategoryNotFound(NotFound):
    kind = "CategoryNotFound"


class YearOutOfRange(NotFound):
    kind = "YearOutOfRange"


class UnknownEntity(NotFound):
    kind = "UnknownEntity"

    def __init__(self, message: str, missing_ids: Iterable[int] = ()) -> None:
        missing = sorted(set(missing_ids))
        super().__init__(message, missing_ids=missing)
        self.missing_ids = missing


class EventNotFound(TreasuryError):
    kind = "EventNotFound"


class DuplicateName(TreasuryError):
    kind = "DuplicateName"


class DuplicateYear(TreasuryError):
    kind = "DuplicateYear"


class DuplicateSnapshotDate(TreasuryError):
    kind = "DuplicateSnapshotDate"


class HasDependentExpenses(TreasuryError):
    kind = "HasDependentExpenses"


class HasDependentSubcategories(TreasuryError):
    kind = "HasDependentSubcategories"


class HasLedgerActivity(TreasuryError):
    kind = "HasLedgerActivity"


class CategoryInactive(TreasuryError):
    kind = "CategoryInactive"


class SubcategoryMismatch(TreasuryError):
    kind = "SubcategoryMismatch"


class InvalidMode(TreasuryError):
    kind = "InvalidMode"


class ValidationFailed(TreasuryError):
    """Several field-level problems found while validating one write."""

    kind = "ValidationFailed"

    def __init__(
        self, errors: list[str], causes: Optional[list[TreasuryError]] = None
    ) -> None:
        super().__init__("; ".join(errors), errors=list(errors))
        self.errors = list(errors)
        self.causes = list(causes or [])


CONFLICT_ERRORS: tuple[type[TreasuryError], ...] = (
    DuplicateName,
    DuplicateYear,
    DuplicateSnapshotDate,
    HasDependentExpenses,
    HasDependentSubcategories,
    HasLedgerActivity,
)


def raise_collected(problems: list[TreasuryError]) -> None:
    """Raise the single collected problem as-is, or wrap several together."""
    if not problems:
        return
    if len(problems) == 1:
        raise problems[0]
    raise ValidationFailed([p.message for p in problems], causes=problems)
