"""
Query executor: runs plan entries against the ledger and aggregates in memory.

Each entry becomes one SELECT (table + keyword-derived predicates); sums,
counts and groupings are computed here so the numbers the responder sees
come from application code, not from the language model.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from backend.services.filters import FilterContext, FilterResult, apply_filters, classify_amount, year_to_date
from backend.services.plan_models import (
    MONTH,
    UNKNOWN_GROUP,
    AggregationType,
    CountRow,
    EntryResult,
    GroupBy,
    GroupedRow,
    QueryPlan,
    QueryPlanEntry,
    ScalarRow,
)
from backend.services.runtime import log_event
from ledger.db_utils import FinanceDB, QueryExecutionError, QueryTimeoutError
from ledger.schema import date_column_for, get_table

logger = logging.getLogger(__name__)

DEFAULT_LIST_CAP = 50

_MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Group keys computed from several columns.
DERIVED_GROUP_KEYS: Dict[str, Callable[[Dict[str, Any]], Optional[str]]] = {
    "employee": lambda row: " ".join(
        p for p in (str(row.get("first_name") or "").strip(), str(row.get("last_name") or "").strip()) if p
    ) or None,
}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------
def to_number(value: Any) -> float:
    """Numeric coercion: missing, non-numeric and NaN values count as zero."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def row_amount(row: Dict[str, Any], classification: Optional[str]) -> float:
    if classification and ("credit" in row or "debit" in row):
        credit = to_number(row.get("credit"))
        debit = to_number(row.get("debit"))
        return credit - debit if classification == "income" else debit - credit
    if row.get("total_amount") is not None:
        return to_number(row.get("total_amount"))
    if "open_balance" in row:
        return to_number(row.get("open_balance"))
    return 0.0


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) >= 10:
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def month_label(value: Any) -> Optional[str]:
    """Calendar-month label such as ``"Jan 2025"``."""
    d = _as_date(value)
    if d is None:
        return None
    return f"{_MONTH_ABBR[d.month - 1]} {d.year}"


def month_sort_key(label: Optional[str]) -> Tuple[int, int, int]:
    """Chronological key for a month label; unparseable labels sort last."""
    parts = (label or "").split()
    if len(parts) == 2 and parts[0] in _MONTH_ABBR and parts[1].isdigit():
        return (0, int(parts[1]), _MONTH_ABBR.index(parts[0]) + 1)
    return (1, 0, 0)


def resolve_group_value(row: Dict[str, Any], key: str, date_column: Optional[str]) -> str:
    if key == MONTH:
        return month_label(row.get(date_column or "date")) or UNKNOWN_GROUP
    if key in DERIVED_GROUP_KEYS and key not in row:
        return DERIVED_GROUP_KEYS[key](row) or UNKNOWN_GROUP
    value = row.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return UNKNOWN_GROUP
    return str(value)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------
def sum_rows(rows: List[Dict[str, Any]], classification: Optional[str]) -> ScalarRow:
    total = 0.0
    for row in rows:
        total += row_amount(row, classification)
    return ScalarRow(total=total, count=len(rows))


def group_rows(
    rows: Iterable[Dict[str, Any]],
    group_by: GroupBy,
    classification: Optional[str],
    date_column: Optional[str],
) -> List[GroupedRow]:
    """Partition rows by the group key(s) and sum each partition.

    Every group is returned. Month groupings sort chronologically, all
    others by descending total.
    """
    totals: Dict[Tuple[str, ...], float] = {}
    for row in rows:
        composite = tuple(resolve_group_value(row, k, date_column) for k in group_by.keys)
        totals[composite] = totals.get(composite, 0.0) + row_amount(row, classification)

    grouped = [GroupedRow(keys=tuple(zip(group_by.keys, composite)), total=total) for composite, total in totals.items()]

    if group_by.includes_month:
        grouped.sort(key=lambda r: month_sort_key(r.key(MONTH)))
    else:
        grouped.sort(key=lambda r: r.total, reverse=True)
    return grouped


def build_predicates(entry: QueryPlanEntry, today: date) -> FilterResult:
    table = get_table(entry.table)
    if table is None:
        raise QueryExecutionError(f"Unknown table: {entry.table}")
    date_column = date_column_for(entry.table)
    result = apply_filters(entry.filters, table, date_column, today)

    # Month series default to the current year unless a window was requested.
    if (
        entry.type == AggregationType.SUM
        and entry.group_by.includes_month
        and not result.has_date_window
        and date_column is not None
    ):
        result.predicates.extend(year_to_date(FilterContext(table=table, date_column=date_column, today=today)))
        result.fired.append("default_year_window")
        result.has_date_window = True
    return result


async def execute_entry(
    entry: QueryPlanEntry,
    db: FinanceDB,
    *,
    today: date,
    list_cap: int = DEFAULT_LIST_CAP,
    timeout_s: float = 10.0,
) -> EntryResult:
    """Execute one plan entry.

    Raises:
        QueryExecutionError / QueryTimeoutError: propagated to the caller,
        which decides how to degrade.
    """
    filt = build_predicates(entry, today)
    cap = min(entry.limit or list_cap, list_cap) if entry.type == AggregationType.LIST else None
    rows = await db.fetch_rows_async(entry.table, filt.predicates, cap, timeout_s=timeout_s)

    log_event(
        logger,
        logging.INFO,
        "query_entry_fetched",
        alias=entry.alias,
        table=entry.table,
        type=entry.type.value,
        group_by=entry.group_by.to_json(),
        rules_fired=filt.fired,
        rules_skipped=filt.skipped,
        rows=len(rows),
    )

    if entry.type == AggregationType.LIST:
        return rows[:cap]
    if entry.type == AggregationType.COUNT:
        return [CountRow(count=len(rows))]

    if not rows:
        return [ScalarRow(total=0.0, count=0)]
    classification = classify_amount(entry.filters)
    if entry.group_by:
        return group_rows(rows, entry.group_by, classification, date_column_for(entry.table))
    return [sum_rows(rows, classification)]


async def _execute_isolated(
    entry: QueryPlanEntry,
    db: FinanceDB,
    *,
    today: date,
    list_cap: int,
    timeout_s: float,
) -> EntryResult:
    started = time.perf_counter()
    try:
        return await asyncio.wait_for(
            execute_entry(entry, db, today=today, list_cap=list_cap, timeout_s=timeout_s),
            timeout=timeout_s,
        )
    except (asyncio.TimeoutError, QueryTimeoutError):
        log_event(
            logger,
            logging.WARNING,
            "query_entry_timeout",
            alias=entry.alias,
            timeout_s=timeout_s,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
    except QueryExecutionError as exc:
        log_event(logger, logging.WARNING, "query_entry_failed", alias=entry.alias, error=str(exc))
    except Exception:
        logger.exception("query_entry_unexpected_error alias=%s", entry.alias)
    return []


async def execute_plan(
    plan: QueryPlan,
    db: FinanceDB,
    *,
    today: date,
    list_cap: int = DEFAULT_LIST_CAP,
    timeout_s: float = 10.0,
) -> Dict[str, EntryResult]:
    """Run every entry concurrently; a failed or slow entry yields an empty list."""
    results = await asyncio.gather(
        *(
            _execute_isolated(entry, db, today=today, list_cap=list_cap, timeout_s=timeout_s)
            for entry in plan.entries
        )
    )
    return {entry.alias: result for entry, result in zip(plan.entries, results)}
