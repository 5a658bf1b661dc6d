"""Pure aggregation over transaction collections.

Nothing here touches the database: callers pass in already-scoped
transactions (ORM rows or transient ``Transaction`` objects) and get back
frozen records. Amounts stay in integer cents throughout; only the
percentages are floats.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Optional

from models import Budget, Transaction, TransactionType
from periods import trailing_months


class GroupBy(str, Enum):
    category = "category"
    month = "month"


@dataclass(frozen=True)
class SummaryRecord:
    label: str
    total_cents: int
    count: int
    percentage: float
    color: Optional[str] = None


@dataclass(frozen=True)
class MonthlyTrend:
    year: int
    month: int
    label: str
    income_cents: int
    expense_cents: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass(frozen=True)
class BudgetConsumption:
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    percentage_used: float

    @property
    def is_over_budget(self) -> bool:
        return self.spent_cents > self.limit_cents


def month_label(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def share_percent(part_cents: int, total_cents: int) -> float:
    return (part_cents * 100 / total_cents) if total_cents else 0.0


def percentage_used(spent_cents: int, limit_cents: int) -> float:
    if limit_cents <= 0:
        return 0.0
    return spent_cents * 100 / limit_cents


def _group_key(txn: Transaction, group_by: GroupBy) -> tuple[str, Optional[str]]:
    if group_by == GroupBy.month:
        return month_label(txn.date.year, txn.date.month), None
    category = txn.category
    if category is None:
        return f"Category {txn.category_id}", None
    return category.name, category.color


def summarize(
    transactions: Iterable[Transaction],
    group_by: GroupBy = GroupBy.category,
    *,
    transaction_type: Optional[TransactionType] = None,
) -> list[SummaryRecord]:
    """Group transactions and total each group, largest first.

    Percentages are shares of the filtered set's total. Groups with equal
    totals keep the order in which they were first seen.
    """
    totals: dict[str, int] = {}
    counts: dict[str, int] = {}
    colors: dict[str, Optional[str]] = {}
    for txn in transactions:
        if transaction_type is not None and txn.type != transaction_type:
            continue
        label, color = _group_key(txn, group_by)
        if label not in totals:
            totals[label] = 0
            counts[label] = 0
            colors[label] = color
        totals[label] += txn.amount_cents
        counts[label] += 1

    grand_total = sum(totals.values())
    records = [
        SummaryRecord(
            label=label,
            total_cents=total,
            count=counts[label],
            percentage=share_percent(total, grand_total),
            color=colors[label],
        )
        for label, total in totals.items()
    ]
    # sorted() is stable, including with reverse=True
    return sorted(records, key=lambda r: r.total_cents, reverse=True)


def monthly_totals(
    transactions: Iterable[Transaction],
    *,
    end: date,
    months: int = 6,
    transaction_type: Optional[TransactionType] = None,
) -> list[SummaryRecord]:
    """One record per calendar month of the trailing window, oldest first.

    Months without transactions are emitted with a zero total.
    """
    window = trailing_months(end, months)
    totals: dict[tuple[int, int], int] = {(m.year, m.month): 0 for m in window}
    counts: dict[tuple[int, int], int] = {key: 0 for key in totals}
    for txn in transactions:
        if transaction_type is not None and txn.type != transaction_type:
            continue
        key = (txn.date.year, txn.date.month)
        if key not in totals:
            continue
        totals[key] += txn.amount_cents
        counts[key] += 1

    window_total = sum(totals.values())
    return [
        SummaryRecord(
            label=month_label(m.year, m.month),
            total_cents=totals[(m.year, m.month)],
            count=counts[(m.year, m.month)],
            percentage=share_percent(totals[(m.year, m.month)], window_total),
        )
        for m in window
    ]


def monthly_trend(
    transactions: Iterable[Transaction], *, end: date, months: int = 6
) -> list[MonthlyTrend]:
    rows = list(transactions)
    income = monthly_totals(
        rows, end=end, months=months, transaction_type=TransactionType.income
    )
    expense = monthly_totals(
        rows, end=end, months=months, transaction_type=TransactionType.expense
    )
    out: list[MonthlyTrend] = []
    for month, inc, exp in zip(trailing_months(end, months), income, expense):
        out.append(
            MonthlyTrend(
                year=month.year,
                month=month.month,
                label=inc.label,
                income_cents=inc.total_cents,
                expense_cents=exp.total_cents,
            )
        )
    return out


def budget_spent(budget: Budget, transactions: Iterable[Transaction]) -> int:
    return sum(
        txn.amount_cents
        for txn in transactions
        if txn.type == TransactionType.expense
        and txn.category_id == budget.category_id
        and budget.start_date <= txn.date <= budget.end_date
    )


def budget_consumption(
    budget: Budget, transactions: Iterable[Transaction]
) -> BudgetConsumption:
    spent = budget_spent(budget, transactions)
    return consumption_from_spent(budget.limit_cents, spent)


def consumption_from_spent(limit_cents: int, spent_cents: int) -> BudgetConsumption:
    return BudgetConsumption(
        limit_cents=limit_cents,
        spent_cents=spent_cents,
        remaining_cents=limit_cents - spent_cents,
        percentage_used=percentage_used(spent_cents, limit_cents),
    )


def percent_change(current_cents: int, previous_cents: int) -> float:
    if previous_cents > 0:
        return (current_cents - previous_cents) * 100 / previous_cents
    if current_cents > 0:
        return 100.0
    return 0.0


def net_change_percent(current_cents: int, previous_cents: int) -> float:
    if previous_cents != 0:
        return (current_cents - previous_cents) * 100 / abs(previous_cents)
    if current_cents != 0:
        return 100.0 if current_cents > 0 else -100.0
    return 0.0


def savings_rate(income_cents: int, expense_cents: int) -> float:
    if income_cents <= 0:
        return 0.0
    return (income_cents - expense_cents) * 100 / income_cents
