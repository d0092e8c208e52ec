"""Pure trend and statistics helpers used by the analytics reads.

Nothing in here touches the database; every function is deterministic in its
inputs and returns a zero-valued result instead of raising when there is no
data, so dashboards always have something to render.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from periods import MONTH_NAMES

STABLE = "stable"
INCREASING = "increasing"
DECREASING = "decreasing"

TREND_THRESHOLD_PERCENT = 5.0

QUARTERS = (
    ("Q1", (1, 2, 3)),
    ("Q2", (4, 5, 6)),
    ("Q3", (7, 8, 9)),
    ("Q4", (10, 11, 12)),
)


@dataclass
class CollectionTotals:
    total: int = 0
    manual: int = 0
    online: int = 0
    manual_count: int = 0
    online_count: int = 0


@dataclass
class ExpenseTotals:
    total: int = 0
    count: int = 0


@dataclass
class MonthlyTrend:
    month: int
    month_name: str
    expenses: ExpenseTotals = field(default_factory=ExpenseTotals)
    collections: CollectionTotals = field(default_factory=CollectionTotals)

    @property
    def net_movement(self) -> int:
        return self.collections.total - self.expenses.total

    def as_dict(self) -> dict[str, object]:
        return {
            "month": self.month,
            "month_name": self.month_name,
            "expenses": {"total": self.expenses.total, "count": self.expenses.count},
            "collections": {
                "total": self.collections.total,
                "manual": self.collections.manual,
                "online": self.collections.online,
                "manual_count": self.collections.manual_count,
                "online_count": self.collections.online_count,
            },
            "net_movement": self.net_movement,
        }


@dataclass(frozen=True)
class QuarterSummary:
    quarter: str
    expenses: int
    collections: int
    net_movement: int
    month_count: int


def empty_year() -> list[MonthlyTrend]:
    return [MonthlyTrend(month=i + 1, month_name=MONTH_NAMES[i]) for i in range(12)]


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_std(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    avg = mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def growth_rate(series: Sequence[float]) -> float:
    """Percent change between the averages of the two halves of ``series``.

    On odd lengths the first half takes the middle element.
    """
    if len(series) < 2:
        return 0.0
    split = (len(series) + 1) // 2
    first_avg = mean(series[:split])
    second_avg = mean(series[split:])
    if first_avg == 0:
        return 0.0
    return (second_avg - first_avg) / first_avg * 100


def consistency(values: Sequence[float]) -> float:
    """Coefficient-of-variation score: ``(1 - std / mean) * 100``.

    Not bounded below; a very volatile series scores negative.
    """
    if not values:
        return 0.0
    avg = mean(values)
    if avg <= 0:
        return 0.0
    return (1 - population_std(values) / avg) * 100


def trend_direction(values: Sequence[float]) -> str:
    if len(values) < 2:
        return STABLE
    recent = list(values[-3:])
    older = list(values[-6:-3])
    if not recent or not older:
        return STABLE
    older_avg = mean(older)
    if older_avg <= 0:
        return STABLE
    change = (mean(recent) - older_avg) / older_avg * 100
    if change > TREND_THRESHOLD_PERCENT:
        return INCREASING
    if change < -TREND_THRESHOLD_PERCENT:
        return DECREASING
    return STABLE


def volatility(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return population_std(values)


def quarterly_rollup(monthly: Sequence[MonthlyTrend]) -> list[QuarterSummary]:
    by_month = {m.month: m for m in monthly}
    out: list[QuarterSummary] = []
    for name, months in QUARTERS:
        present = [by_month[m] for m in months if m in by_month]
        expenses = sum(m.expenses.total for m in present)
        collections = sum(m.collections.total for m in present)
        out.append(
            QuarterSummary(
                quarter=name,
                expenses=expenses,
                collections=collections,
                net_movement=collections - expenses,
                month_count=len(present),
            )
        )
    return out


def seasonality(values: Sequence[float]) -> dict[str, object]:
    """Seasonal index per month (value / mean) and the peak-to-trough spread."""
    if not values:
        return {"peak_month": None, "low_month": None, "indices": [], "strength": 0.0}
    avg = mean(values)
    peak_idx = max(range(len(values)), key=lambda i: (values[i], -i))
    low_idx = min(range(len(values)), key=lambda i: (values[i], i))
    if avg <= 0:
        return {
            "peak_month": None,
            "low_month": None,
            "indices": [0.0 for _ in values],
            "strength": 0.0,
        }
    return {
        "peak_month": peak_idx + 1,
        "low_month": low_idx + 1,
        "indices": [round(v / avg, 4) for v in values],
        "strength": (values[peak_idx] - values[low_idx]) / avg * 100,
    }


def best_month(
    monthly: Sequence[MonthlyTrend], key: str = "net_movement"
) -> Optional[MonthlyTrend]:
    """First month with the highest value for ``key``; None without activity."""
    getters = {
        "net_movement": lambda m: m.net_movement,
        "collections": lambda m: m.collections.total,
        "expenses": lambda m: m.expenses.total,
    }
    getter = getters[key]
    best: Optional[MonthlyTrend] = None
    for month in monthly:
        if best is None or getter(month) > getter(best):
            best = month
    if key != "net_movement" and best is not None and getter(best) <= 0:
        return None
    return best


def expense_distribution(amounts: Sequence[int]) -> dict[str, float]:
    """Share of spend held by the top 20% / middle 60% / bottom 20% of groups."""
    ordered = sorted(amounts, reverse=True)
    total = sum(ordered)
    if not ordered or total == 0:
        return {"high": 0.0, "medium": 0.0, "low": 0.0}
    top_n = max(1, math.ceil(len(ordered) * 0.2))
    bottom_start = max(top_n, math.ceil(len(ordered) * 0.8))
    return {
        "high": sum(ordered[:top_n]) / total * 100,
        "medium": sum(ordered[top_n:bottom_start]) / total * 100,
        "low": sum(ordered[bottom_start:]) / total * 100,
    }


def concentration(amounts: Sequence[int]) -> float:
    """Herfindahl index on a 0-100 scale; 100 means one group holds everything."""
    total = sum(amounts)
    if total <= 0:
        return 0.0
    return sum((a / total) ** 2 for a in amounts) * 100


def evenness(amounts: Sequence[int]) -> float:
    """Normalised Shannon entropy (0-100) of the non-zero groups."""
    positive = [a for a in amounts if a > 0]
    if len(positive) < 2:
        return 0.0
    total = sum(positive)
    entropy = -sum((a / total) * math.log(a / total) for a in positive)
    return entropy / math.log(len(positive)) * 100


def diversity_index(*breakdowns: Sequence[int]) -> float:
    scores = [evenness(b) for b in breakdowns if b]
    return mean(scores)


def collection_frequency(counts: Sequence[int]) -> dict[str, float]:
    active = [c for c in counts if c > 0]
    return {
        "active_months": float(len(active)),
        "average_per_active_month": mean(active),
    }


def financial_health_score(
    net_movement: int, current_balance: int, total_expenses: int
) -> int:
    score = 50
    if net_movement > 0:
        score += 20
    elif net_movement < 0:
        score -= 20

    if total_expenses > 0:
        ratio = current_balance / total_expenses
        if ratio > 1:
            score += 20
        elif ratio > 0.5:
            score += 10
        elif ratio < 0.1:
            score -= 20

    return max(0, min(100, score))


def project_year_end(net_to_date: int, months_elapsed: int) -> int:
    """Straight-line projection of a year's net movement from a partial year."""
    if months_elapsed <= 0:
        return 0
    months = min(months_elapsed, 12)
    return round(net_to_date / months * 12)


def percent_of(part: int, total: int) -> float:
    return (part * 100 / total) if total else 0.0
