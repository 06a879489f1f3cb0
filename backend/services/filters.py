"""
Keyword-driven filter vocabulary for plan entries.

The planner describes filters in free text ("income this year", "overdue");
this module maps trigger phrases to SQL predicates through an ordered rule
table. Phrases outside the vocabulary add no predicate. Changes to triggers
or order change user-visible answers: bump FILTER_RULES_VERSION.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import Table
from sqlalchemy.sql.elements import ColumnElement


FILTER_RULES_VERSION = 2

INCOME_ACCOUNT_TYPES = ("Income", "Other Income")
EXPENSE_ACCOUNT_TYPES = ("Expenses", "Cost of Goods Sold")

# Placeholder for "the table's date column" in FilterRule.columns.
DATE_COL = "@date"


@dataclass(frozen=True)
class FilterContext:
    table: Table
    date_column: Optional[str]
    today: date

    def column(self, name: str):
        if name == DATE_COL:
            name = self.date_column or ""
        return self.table.c.get(name)


@dataclass(frozen=True)
class FilterRule:
    name: str
    triggers: Tuple[str, ...]
    columns: Tuple[str, ...]
    build: Callable[[FilterContext], List[ColumnElement]]
    suppresses: Tuple[str, ...] = ()
    date_window: bool = False

    def matches(self, text: str) -> bool:
        return any(t in text for t in self.triggers)


@dataclass
class FilterResult:
    predicates: List[ColumnElement] = field(default_factory=list)
    fired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    has_date_window: bool = False


# ---------------------------------------------------------------------------
# Date windows
# ---------------------------------------------------------------------------
def month_start(d: date) -> date:
    return d.replace(day=1)


def previous_month_start(d: date) -> date:
    first = month_start(d)
    return month_start(first - timedelta(days=1))


def week_start(d: date) -> date:
    """Most recent Sunday (weeks start on Sunday)."""
    return d - timedelta(days=(d.weekday() + 1) % 7)


def year_to_date(ctx: FilterContext) -> List[ColumnElement]:
    return [ctx.column(DATE_COL) >= date(ctx.today.year, 1, 1)]


def _this_month(ctx: FilterContext) -> List[ColumnElement]:
    return [ctx.column(DATE_COL) >= month_start(ctx.today)]


def _last_month(ctx: FilterContext) -> List[ColumnElement]:
    col = ctx.column(DATE_COL)
    return [col >= previous_month_start(ctx.today), col < month_start(ctx.today)]


def _last_year(ctx: FilterContext) -> List[ColumnElement]:
    col = ctx.column(DATE_COL)
    return [col >= date(ctx.today.year - 1, 1, 1), col < date(ctx.today.year, 1, 1)]


def _this_week(ctx: FilterContext) -> List[ColumnElement]:
    return [ctx.column(DATE_COL) >= week_start(ctx.today)]


def _status(value: str) -> Callable[[FilterContext], List[ColumnElement]]:
    def build(ctx: FilterContext) -> List[ColumnElement]:
        return [ctx.column("status") == value]
    return build


def _overdue(ctx: FilterContext) -> List[ColumnElement]:
    return [ctx.column("open_balance") > 0, ctx.column("due_date") < ctx.today]


def _outstanding(ctx: FilterContext) -> List[ColumnElement]:
    return [ctx.column("open_balance") > 0]


FILTER_RULES: Tuple[FilterRule, ...] = (
    FilterRule(
        "income", ("income", "revenue"), ("account_type",),
        lambda ctx: [ctx.column("account_type").in_(INCOME_ACCOUNT_TYPES)],
    ),
    FilterRule(
        "expense", ("expense",), ("account_type",),
        lambda ctx: [ctx.column("account_type").in_(EXPENSE_ACCOUNT_TYPES)],
    ),
    FilterRule("this_year", ("this year",), (DATE_COL,), year_to_date, date_window=True),
    FilterRule("this_month", ("this month",), (DATE_COL,), _this_month, date_window=True),
    FilterRule("last_month", ("last month",), (DATE_COL,), _last_month, date_window=True),
    FilterRule("last_year", ("last year",), (DATE_COL,), _last_year, date_window=True),
    FilterRule("this_week", ("this week",), (DATE_COL,), _this_week, date_window=True),
    FilterRule("pending", ("pending",), ("status",), _status("pending")),
    FilterRule("approved", ("approved",), ("status",), _status("approved")),
    FilterRule("rejected", ("rejected",), ("status",), _status("rejected")),
    FilterRule(
        "overdue", ("overdue",), ("open_balance", "due_date"), _overdue,
        suppresses=("outstanding",),
    ),
    FilterRule("outstanding", ("outstanding", "owe", "receivable"), ("open_balance",), _outstanding),
)


def apply_filters(
    filters: Optional[str],
    table: Table,
    date_column: Optional[str],
    today: date,
) -> FilterResult:
    """Translate a free-text filter description into predicates for ``table``.

    A rule whose columns ``table`` lacks is skipped rather than producing a
    query that fails.
    """
    result = FilterResult()
    text = (filters or "").lower()
    if not text:
        return result

    ctx = FilterContext(table=table, date_column=date_column, today=today)
    suppressed: set = set()
    for rule in FILTER_RULES:
        if rule.name in suppressed or not rule.matches(text):
            continue
        if any(ctx.column(c) is None for c in rule.columns):
            result.skipped.append(rule.name)
            continue
        result.predicates.extend(rule.build(ctx))
        result.fired.append(rule.name)
        result.has_date_window = result.has_date_window or rule.date_window
        suppressed.update(rule.suppresses)
    return result


def classify_amount(filters: Optional[str]) -> Optional[str]:
    """``"income"`` (credit - debit), ``"expense"`` (debit - credit) or None."""
    text = (filters or "").lower()
    if "income" in text or "revenue" in text:
        return "income"
    if "expense" in text:
        return "expense"
    return None
