from dataclasses import dataclass
from datetime import date

from periods import days_in_month


@dataclass(frozen=True)
class Forecast:
    days_in_month: int
    days_elapsed: int
    income_cents: int
    expense_cents: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents

    @property
    def is_negative(self) -> bool:
        return self.net_cents < 0


def elapsed_days(month_start: date, today: date) -> int:
    total = days_in_month(month_start)
    if (today.year, today.month) == (month_start.year, month_start.month):
        return max(1, today.day)
    if today < month_start:
        return 1
    return total


def project_month(
    income_cents: int, expense_cents: int, month_start: date, today: date
) -> Forecast:
    """Linear projection of month-to-date totals to the end of the month."""
    total = days_in_month(month_start)
    elapsed = elapsed_days(month_start, today)
    return Forecast(
        days_in_month=total,
        days_elapsed=elapsed,
        income_cents=round(income_cents * total / elapsed),
        expense_cents=round(expense_cents * total / elapsed),
    )
