from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Protocol
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency, TransactionType
from periods import month_end, month_start, shift_month

PROJECTION_MONTHS_BACK = 3
PROJECTION_MONTHS_AHEAD = 2


class ScheduleLike(Protocol):
    date: date
    frequency: Frequency
    type: TransactionType
    amount_cents: int


class TransactionLike(Protocol):
    date: date
    type: TransactionType
    amount_cents: int


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    return month_end(year, month).day


def _add_months(base: date, months: int) -> date:
    year, month = shift_month(base.year, base.month, months)
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance_date(current: date, frequency: Frequency) -> date:
    """Move a schedule date forward by exactly one period.

    Month and year steps land on the last day of the target month when the
    original day does not exist there (Jan 31 -> Feb 29, Feb 29 -> Feb 28).
    """
    if frequency == Frequency.weekly:
        return current + timedelta(days=7)
    if frequency == Frequency.monthly:
        return _add_months(current, 1)
    if frequency == Frequency.yearly:
        return _add_months(current, 12)
    raise ValueError("One-off schedules have no next date")


def occurrences_in_month(schedule: ScheduleLike, year: int, month: int) -> int:
    start = schedule.date
    if start > month_end(year, month):
        return 0

    frequency = schedule.frequency
    if frequency == Frequency.once:
        return 1 if (start.year, start.month) == (year, month) else 0
    if frequency == Frequency.monthly:
        # start <= end of month already implies (year, month) >= start month
        return 1
    if frequency == Frequency.yearly:
        return 1 if month == start.month and year >= start.year else 0
    if frequency == Frequency.weekly:
        first = max(month_start(year, month), start)
        offset = (start.weekday() - first.weekday()) % 7
        first_match = first + timedelta(days=offset)
        last = month_end(year, month)
        if first_match > last:
            return 0
        return (last - first_match).days // 7 + 1
    raise ValueError(f"Unsupported frequency: {frequency}")


def upcoming_occurrences(schedule: ScheduleLike, start: date, end: date) -> list[date]:
    """Concrete occurrence dates of a schedule between ``start`` and ``end``."""
    dates: list[date] = []
    current = schedule.date
    if schedule.frequency == Frequency.once:
        return [current] if start <= current <= end else []
    max_iterations = 1000
    iterations = 0
    while current <= end and iterations < max_iterations:
        if current >= start:
            dates.append(current)
        current = advance_date(current, schedule.frequency)
        iterations += 1
    return dates


@dataclass
class MonthProjection:
    year: int
    month: int
    is_projected: bool
    realized_income_cents: int = 0
    realized_expense_cents: int = 0
    predicted_income_cents: int = 0
    predicted_expense_cents: int = 0

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def total_income_cents(self) -> int:
        return self.realized_income_cents + self.predicted_income_cents

    @property
    def total_expense_cents(self) -> int:
        return self.realized_expense_cents + self.predicted_expense_cents

    @property
    def net_flow_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


def project_cash_flow(
    transactions: Iterable[TransactionLike],
    schedules: Iterable[ScheduleLike],
    today: Optional[date] = None,
) -> list[MonthProjection]:
    """Realized vs predicted income/expense for the six months around ``today``.

    Past months only carry realized transactions. The current month and the
    months ahead also get schedule occurrences multiplied by their amount.
    Transfers and adjustments do not move net flow and are ignored.
    """
    today = today or local_today()
    window: list[MonthProjection] = []
    by_key: dict[tuple[int, int], MonthProjection] = {}
    for offset in range(-PROJECTION_MONTHS_BACK, PROJECTION_MONTHS_AHEAD + 1):
        year, month = shift_month(today.year, today.month, offset)
        row = MonthProjection(year=year, month=month, is_projected=offset >= 0)
        window.append(row)
        by_key[(year, month)] = row

    for txn in transactions:
        row = by_key.get((txn.date.year, txn.date.month))
        if row is None:
            continue
        if txn.type == TransactionType.income:
            row.realized_income_cents += txn.amount_cents
        elif txn.type == TransactionType.expense:
            row.realized_expense_cents += txn.amount_cents

    schedules = list(schedules)
    for row in window:
        if not row.is_projected:
            continue
        for schedule in schedules:
            if schedule.type not in (TransactionType.income, TransactionType.expense):
                continue
            count = occurrences_in_month(schedule, row.year, row.month)
            if not count:
                continue
            if schedule.type == TransactionType.income:
                row.predicted_income_cents += count * schedule.amount_cents
            else:
                row.predicted_expense_cents += count * schedule.amount_cents
    return window
