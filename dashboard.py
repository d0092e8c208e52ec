"""Dashboard and surplus/deficit read models.

Each dashboard is assembled from independent aggregate reads. They run on a
thread pool, every task with its own session from the session factory, and
are joined before the response is built.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import Session

from cache import CacheCoordinator, CacheDurations, CacheKeys
from config import get_settings
from database import SessionFactory
from periods import local_today, year_window
from schemas import YearlyBalanceOut
from services import (
    AggregationService,
    BalanceService,
    LedgerSource,
    TrendService,
    breakdown_dicts,
)
from trends import (
    DECREASING,
    INCREASING,
    STABLE,
    best_month,
    expense_distribution,
    financial_health_score,
    mean,
    percent_of,
    project_year_end,
    quarterly_rollup,
    trend_direction,
    volatility,
)

logger = logging.getLogger(__name__)

HISTORY_YEARS = 3

Task = Callable[[Session], object]


class DashboardService:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        cache: Optional[CacheCoordinator] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.workers = workers or get_settings().dashboard_workers

    def _run(self, task: Task) -> object:
        with self.session_factory() as session:
            return task(session)

    def _gather(self, tasks: dict[str, Task]) -> dict[str, object]:
        """Run every task concurrently and return results keyed like ``tasks``."""
        logger.debug(f"dashboard_gather: tasks={len(tasks)} workers={self.workers}")
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {name: pool.submit(self._run, task) for name, task in tasks.items()}
            return {name: future.result() for name, future in futures.items()}

    def _cached(self, key: str, producer: Callable[[], dict[str, object]]):
        if self.cache is None:
            return producer()
        return self.cache.get_or_compute(key, CacheDurations.DASHBOARD, producer)

    def summary(self, year: int) -> dict[str, object]:
        """Collections/expenses/net for ``year`` plus the current bank balance."""

        def produce() -> dict[str, object]:
            results = self._gather(
                {
                    "summary": lambda s: BalanceService(s).yearly_summary(year),
                    "balance": lambda s: BalanceService(s).current_account_balance(),
                }
            )
            summary = results["summary"]
            balance = results["balance"]
            data = summary.as_dict()
            data["current_balance_cents"] = (
                balance.current_balance_cents if balance else 0
            )
            data["balance_date"] = balance.balance_date if balance else None
            return data

        return self._cached(CacheKeys.dashboard_year(year) + ":summary", produce)

    def main_dashboard(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        year = today.year

        def produce() -> dict[str, object]:
            window = year_window(year)
            results = self._gather(
                {
                    "balance": lambda s: BalanceService(s).current_account_balance(),
                    "summary": lambda s: BalanceService(s).yearly_summary(year),
                    "recent_expenses": lambda s: AggregationService(s).recent_entries(
                        LedgerSource.expense
                    ),
                    "recent_collections": lambda s: AggregationService(
                        s
                    ).recent_entries(LedgerSource.manual_collection),
                    "categories": lambda s: AggregationService(s).aggregate(
                        LedgerSource.expense, window, group_by="category"
                    ),
                    "monthly": lambda s: TrendService(s).monthly_trend(year),
                }
            )
            balance = results["balance"]
            summary = results["summary"]
            categories = results["categories"]
            monthly = results["monthly"]
            collections = summary.collections
            expenses = summary.expenses
            net = summary.net_movement_cents
            current_balance = balance.current_balance_cents if balance else 0
            return {
                "overview": {
                    "year": year,
                    "current_balance_cents": current_balance,
                    "balance_date": balance.balance_date if balance else None,
                    "total_collections_cents": collections.total,
                    "total_expenses_cents": expenses.total,
                    "net_movement_cents": net,
                },
                "collections": {
                    "total_cents": collections.total,
                    "online": {
                        "amount_cents": collections.online,
                        "count": collections.online_count,
                        "percent": percent_of(collections.online, collections.total),
                    },
                    "manual": {
                        "amount_cents": collections.manual,
                        "count": collections.manual_count,
                        "percent": percent_of(collections.manual, collections.total),
                    },
                },
                "expenses": {
                    "total_cents": expenses.total,
                    "count": expenses.count,
                    "average_cents": (
                        expenses.total / expenses.count if expenses.count else 0.0
                    ),
                    "category_breakdown": breakdown_dicts(categories.breakdown[:5]),
                },
                "recent_activity": {
                    "expenses": results["recent_expenses"],
                    "collections": results["recent_collections"],
                },
                "trends": {
                    "monthly": [m.as_dict() for m in monthly],
                    "collection_trend": trend_direction(
                        [m.collections.total for m in monthly]
                    ),
                    "expense_trend": trend_direction(
                        [m.expenses.total for m in monthly]
                    ),
                },
                "summary": {
                    "categories_with_expenses": len(categories.breakdown),
                    "average_expense_per_category_cents": (
                        expenses.total / len(categories.breakdown)
                        if categories.breakdown
                        else 0.0
                    ),
                    "financial_health": financial_health_score(
                        net, current_balance, expenses.total
                    ),
                },
            }

        return self._cached(CacheKeys.DASHBOARD_CURRENT, produce)

    def yearly_dashboard(self, year: int) -> dict[str, object]:
        with self.session_factory() as session:
            BalanceService(session).validate_year(year)

        def produce() -> dict[str, object]:
            window = year_window(year)
            results = self._gather(
                {
                    "yearly_balance": lambda s: _yearly_balance_dict(s, year),
                    "summary": lambda s: BalanceService(s).yearly_summary(year),
                    "monthly": lambda s: TrendService(s).monthly_trend(year),
                    "categories": lambda s: AggregationService(s).aggregate(
                        LedgerSource.expense, window, group_by="category"
                    ),
                    "top_expenses": lambda s: AggregationService(s).top_entries(
                        LedgerSource.expense, window
                    ),
                    "top_collections": lambda s: AggregationService(s).top_entries(
                        LedgerSource.manual_collection, window
                    ),
                }
            )
            monthly = results["monthly"]
            categories = results["categories"]
            best = best_month(monthly, key="net_movement")
            return {
                "year": year,
                "yearly_balance": results["yearly_balance"],
                "financial_summary": results["summary"].as_dict(),
                "trends": {
                    "monthly": [m.as_dict() for m in monthly],
                    "quarterly": [asdict(q) for q in quarterly_rollup(monthly)],
                },
                "breakdowns": {
                    "category_expenses": breakdown_dicts(categories.breakdown),
                    "top_expenses": results["top_expenses"],
                    "top_collections": results["top_collections"],
                },
                "insights": {
                    "most_expensive_category": (
                        asdict(categories.breakdown[0]) if categories.breakdown else None
                    ),
                    "average_monthly_expense_cents": mean(
                        [m.expenses.total for m in monthly]
                    ),
                    "average_monthly_collection_cents": mean(
                        [m.collections.total for m in monthly]
                    ),
                    "best_month": best.month_name if best else None,
                    "expense_distribution": expense_distribution(
                        [b.amount_cents for b in categories.breakdown]
                    ),
                },
            }

        return self._cached(CacheKeys.dashboard_year(year), produce)

    def surplus_deficit(
        self, year: Optional[int] = None, today: Optional[date] = None
    ) -> dict[str, object]:
        """Current year's surplus against the previous years and a projection."""
        today = today or local_today()
        year = year or today.year
        history_years = list(range(year - HISTORY_YEARS, year))

        def produce() -> dict[str, object]:
            tasks: dict[str, Task] = {
                "current": lambda s: BalanceService(s).yearly_summary(year),
            }
            for past in history_years:
                tasks[str(past)] = lambda s, past=past: _year_net(s, past)
            results = self._gather(tasks)

            current = results["current"]
            net = current.net_movement_cents
            historical = [
                {"year": past, **results[str(past)]} for past in history_years
            ]
            surpluses = [h["surplus_cents"] for h in historical]
            average = mean(surpluses)

            if year < today.year:
                months_elapsed = 12
            elif year == today.year:
                months_elapsed = today.month
            else:
                months_elapsed = 0
            projected = project_year_end(net, months_elapsed)

            if not historical or net == average:
                direction = STABLE
            else:
                direction = INCREASING if net > average else DECREASING
            best = max(historical, key=lambda h: h["surplus_cents"], default=None)
            worst = min(historical, key=lambda h: h["surplus_cents"], default=None)
            return {
                "current": {
                    "year": year,
                    "surplus_cents": net,
                    "total_collections_cents": current.collections.total,
                    "total_expenses_cents": current.expenses.total,
                    "status": "surplus" if net > 0 else "deficit",
                },
                "historical": historical,
                "projected": {
                    "year": year,
                    "months_elapsed": months_elapsed,
                    "surplus_cents": projected,
                    "status": "surplus" if projected > 0 else "deficit",
                },
                "trends": {
                    "direction": direction,
                    "improving": direction == INCREASING,
                    "average_historical_cents": average,
                },
                "insights": {
                    "best_year": best["year"] if best else None,
                    "worst_year": worst["year"] if worst else None,
                    "volatility": volatility(surpluses),
                },
            }

        key = CacheKeys.analytics("surplus-deficit", f"{year}:{today.isoformat()}")
        if self.cache is None:
            return produce()
        return self.cache.get_or_compute(key, CacheDurations.ANALYTICS, produce)


def _yearly_balance_dict(session: Session, year: int) -> Optional[dict[str, object]]:
    balance = BalanceService(session).find_yearly_balance(year)
    if balance is None:
        return None
    return YearlyBalanceOut.model_validate(balance).model_dump()


def _year_net(session: Session, year: int) -> dict[str, int]:
    balances = BalanceService(session)
    window = year_window(year)
    collections = balances.total_collections(window)
    net = balances.net_movement(window)
    return {
        "surplus_cents": net,
        "collections_cents": collections,
        "expenses_cents": collections - net,
    }

