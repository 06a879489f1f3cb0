"""
Fast path for high-frequency questions.

A small ordered rule table recognizes question shapes such as "revenue this
year" and answers them with one ungrouped sum, skipping the planner call.
First matching rule wins. Any breakdown request ("by month", "by customer")
disables the fast path so grouped questions always reach the planner.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional, Pattern, Tuple

from backend.services.plan_models import AggregationType, QueryPlanEntry, ScalarRow
from backend.services.query_executor import execute_entry
from backend.services.runtime import log_event
from ledger.db_utils import FinanceDB, QueryExecutionError, QueryTimeoutError

logger = logging.getLogger(__name__)

BREAKDOWN_PATTERN = re.compile(r"\bby\s+(month|customer|vendor|location|department|week)")


class FastPathTimeoutError(RuntimeError):
    """The direct aggregate exceeded its budget."""


@dataclass(frozen=True)
class FastPathRule:
    name: str
    alias: str
    table: str
    filters: str
    topic: Pattern[str]
    qualifier: Optional[Pattern[str]] = None
    exclude: Optional[Pattern[str]] = None

    def matches(self, q: str) -> bool:
        if not self.topic.search(q):
            return False
        if self.qualifier is not None and not self.qualifier.search(q):
            return False
        if self.exclude is not None and self.exclude.search(q):
            return False
        return True

    def entry(self) -> QueryPlanEntry:
        return QueryPlanEntry(table=self.table, type=AggregationType.SUM, alias=self.alias, filters=self.filters)


_YEAR = re.compile(r"year|ytd|annual")
_PER_ITEM = re.compile(r"by|each")

FAST_PATH_RULES: Tuple[FastPathRule, ...] = (
    FastPathRule(
        name="revenue_ytd",
        alias="revenue",
        table="journal_entry_lines",
        filters="income this year",
        topic=re.compile(r"revenue|income|sales"),
        qualifier=_YEAR,
    ),
    FastPathRule(
        name="expenses_ytd",
        alias="expenses",
        table="journal_entry_lines",
        filters="expense this year",
        topic=re.compile(r"expense|cost|spend"),
        qualifier=_YEAR,
    ),
    FastPathRule(
        name="ar_outstanding",
        alias="accounts_receivable",
        table="ar_aging_detail",
        filters="outstanding",
        topic=re.compile(r"receivable|customers? owe|outstanding.*customer|(?<!\w)ar(?!\w)"),
        exclude=_PER_ITEM,
    ),
    FastPathRule(
        name="ap_outstanding",
        alias="accounts_payable",
        table="ap_aging",
        filters="outstanding",
        topic=re.compile(r"payable|i owe|we owe|outstanding.*vendor|(?<!\w)ap(?!\w)|owe.*vendor"),
        exclude=_PER_ITEM,
    ),
)


def match_fast_path(question: str) -> Optional[FastPathRule]:
    """Return the first rule matching ``question``, or None."""
    q = (question or "").lower()
    if BREAKDOWN_PATTERN.search(q):
        log_event(logger, logging.INFO, "fast_path_skipped_breakdown")
        return None
    for rule in FAST_PATH_RULES:
        if rule.matches(q):
            log_event(logger, logging.INFO, "fast_path_hit", rule=rule.name)
            return rule
    return None


async def run_fast_path(rule: FastPathRule, db: FinanceDB, *, today: date, timeout_s: float = 8.0) -> float:
    """Direct aggregate for ``rule``.

    A database error yields 0.0 (logged) rather than an error reply.

    Raises:
        FastPathTimeoutError: the aggregate did not finish within ``timeout_s``.
    """
    try:
        rows = await asyncio.wait_for(
            execute_entry(rule.entry(), db, today=today, timeout_s=timeout_s),
            timeout=timeout_s,
        )
    except (asyncio.TimeoutError, QueryTimeoutError) as exc:
        raise FastPathTimeoutError(f"Fast path {rule.name} timed out after {timeout_s}s") from exc
    except QueryExecutionError as exc:
        log_event(logger, logging.WARNING, "fast_path_query_failed", rule=rule.name, error=str(exc))
        return 0.0

    row = rows[0] if rows else None
    return row.total if isinstance(row, ScalarRow) else 0.0
