from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive ``[start, end]`` date filter; a missing bound is open."""

    slug: str
    start: Optional[date] = None
    end: Optional[date] = None

    def start_at(self) -> Optional[datetime]:
        if self.start is None:
            return None
        return datetime.combine(self.start, time.min)

    def end_before(self) -> Optional[datetime]:
        """Exclusive upper bound for datetime columns (midnight after ``end``).

        ``None`` when there is no bound, including an ``end`` of ``date.max``
        which has no following day.
        """
        if self.end is None or self.end == date.max:
            return None
        return datetime.combine(self.end + timedelta(days=1), time.min)

    def cache_token(self) -> str:
        start = self.start.isoformat() if self.start else "open"
        end = self.end.isoformat() if self.end else "open"
        return f"{start}_{end}"


ALL_TIME = DateWindow("all")


def year_window(year: int) -> DateWindow:
    return DateWindow(f"year_{year}", date(year, 1, 1), date(year, 12, 31))


def resolve_window(
    year: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> DateWindow:
    """Build the window the analytics reads accept: a year wins over a range."""
    if year is not None:
        return year_window(int(year))
    if not date_from and not date_to:
        return ALL_TIME
    start = date.fromisoformat(date_from) if date_from else None
    end = date.fromisoformat(date_to) if date_to else None
    if start and end and start > end:
        raise ValueError("Start date must be before end date")
    return DateWindow("custom", start, end)


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


def local_today() -> date:
    return local_now().date()
