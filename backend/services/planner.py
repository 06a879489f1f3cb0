"""
Query planner: asks the oracle for a bounded JSON query plan.

Stages:
1) Prompt with schema + few-shot examples
2) Extract the first balanced JSON object from the reply
3) Validate entries against the known tables and aggregation types
4) Fall back to a fixed unfiltered list plan on any malformed output

Oracle failures (timeout, transport) are not recovered here; they propagate.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Dict, Iterator, List, Optional

from backend.services.llm_client import OracleClient
from backend.services.plan_models import AggregationType, GroupBy, QueryPlan, QueryPlanEntry
from backend.services.pre_aggregator import COUNT_SUFFIX, TOTAL_SUFFIX
from backend.services.runtime import log_event
from backend.services.schema_catalog import describe_schema
from ledger.schema import DEFAULT_TABLE, get_table

logger = logging.getLogger(__name__)

FALLBACK_ALIAS = "results"
DEFAULT_FALLBACK_ROW_CAP = 20
_ALIAS_RE = re.compile(r"[^A-Za-z0-9_]+")


# ---------------------------
# Prompt constants
# ---------------------------

PLAN_PROMPT = """{schema}

Q: "{question}"

JSON plan:
{{"queries":[{{"table":"name","type":"sum|count|list","filters":"desc","groupBy":"col|month|['col1','col2']|null","alias":"name"}}]}}

Types: sum=totals, count=qty, list=items
GroupBy: single, "month", ["multi","level"], or null

Examples:
"revenue this year"→{{"queries":[{{"table":"journal_entry_lines","type":"sum","filters":"income this year","groupBy":null,"alias":"revenue"}}]}}
"revenue by month"→{{"queries":[{{"table":"journal_entry_lines","type":"sum","filters":"income this year","groupBy":"month","alias":"monthly_revenue"}}]}}
"revenue by customer by month"→{{"queries":[{{"table":"journal_entry_lines","type":"sum","filters":"income this year","groupBy":["customer","month"],"alias":"customer_monthly"}}]}}
"expenses by department"→{{"queries":[{{"table":"payments","type":"sum","filters":"this year","groupBy":"department","alias":"dept_expenses"}}]}}

JSON only:"""


def build_plan_prompt(question: str, today: Optional[date] = None) -> str:
    return PLAN_PROMPT.format(schema=describe_schema(today), question=question.replace('"', "'"))


def fallback_plan(row_cap: int = DEFAULT_FALLBACK_ROW_CAP) -> QueryPlan:
    """The same unfiltered list plan every time."""
    entry = QueryPlanEntry(
        table=DEFAULT_TABLE,
        type=AggregationType.LIST,
        alias=FALLBACK_ALIAS,
        filters=None,
        group_by=GroupBy(),
        limit=row_cap,
    )
    return QueryPlan(entries=[entry], fallback_used=True)


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def _balanced_spans(raw: str) -> Iterator[str]:
    """Yield balanced ``{...}`` spans in order of their opening brace.

    Braces inside JSON strings are ignored. A brace that never closes is
    skipped and scanning resumes at the next one.
    """
    start = raw.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(raw)):
            ch = raw[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield raw[start:i + 1]
                    break
        start = raw.find("{", start + 1)


def first_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span, ignoring braces inside JSON strings."""
    return next(_balanced_spans(_strip_fence(text)), None)


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    """First balanced span that decodes to a JSON object."""
    for span in _balanced_spans(_strip_fence(text)):
        try:
            obj = json.loads(span)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def _clean_alias(raw: Any, index: int, table: str, kind: AggregationType) -> str:
    alias = _ALIAS_RE.sub("_", str(raw or "").strip()).strip("_")
    if not alias:
        alias = f"{table}_{kind.value}_{index + 1}"
    if alias.endswith(TOTAL_SUFFIX) or alias.endswith(COUNT_SUFFIX):
        # Reserved for pre-aggregated side channels.
        alias = f"{alias}_rows"
    return alias


def _normalize_plan(obj: Dict[str, Any], list_cap: Optional[int]) -> List[QueryPlanEntry]:
    queries = obj.get("queries")
    if not isinstance(queries, list):
        return []

    entries: List[QueryPlanEntry] = []
    seen: set = set()
    for i, q in enumerate(queries):
        if not isinstance(q, dict):
            log_event(logger, logging.INFO, "plan_entry_invalid", index=i, reason="not_an_object")
            continue
        kind = AggregationType.parse(q.get("type"))
        table = get_table(str(q.get("table") or ""))
        if kind is None or table is None:
            log_event(
                logger,
                logging.INFO,
                "plan_entry_invalid",
                index=i,
                reason="unknown_type" if kind is None else "unknown_table",
                type=q.get("type"),
                table=q.get("table"),
            )
            continue

        alias = base = _clean_alias(q.get("alias"), i, table.name, kind)
        n = 2
        while alias in seen:
            alias = f"{base}_{n}"
            n += 1
        seen.add(alias)

        filters = q.get("filters")
        entries.append(
            QueryPlanEntry(
                table=table.name,
                type=kind,
                alias=alias,
                filters=str(filters) if isinstance(filters, (str, int, float)) else None,
                group_by=GroupBy.parse(q.get("groupBy")) if kind == AggregationType.SUM else GroupBy(),
                limit=list_cap if kind == AggregationType.LIST else None,
            )
        )
    return entries


def parse_plan(text: str, *, list_cap: Optional[int] = None, fallback_row_cap: int = DEFAULT_FALLBACK_ROW_CAP) -> QueryPlan:
    """Parse oracle output into a validated plan; never raises."""
    obj = _extract_json(text)
    entries = _normalize_plan(obj, list_cap) if obj is not None else []
    if not entries:
        log_event(
            logger,
            logging.WARNING,
            "plan_fallback",
            reason="unparseable" if obj is None else "no_valid_entries",
            raw_chars=len(text or ""),
        )
        return fallback_plan(fallback_row_cap)
    log_event(logger, logging.INFO, "plan_parsed", entries=[e.describe() for e in entries])
    return QueryPlan(entries=entries)


async def build_plan(
    question: str,
    oracle: OracleClient,
    *,
    today: Optional[date] = None,
    list_cap: Optional[int] = None,
    fallback_row_cap: int = DEFAULT_FALLBACK_ROW_CAP,
    timeout_s: Optional[float] = None,
) -> QueryPlan:
    prompt = build_plan_prompt(question, today)
    raw = await oracle.complete(prompt, timeout_s=timeout_s)
    return parse_plan(raw, list_cap=list_cap, fallback_row_cap=fallback_row_cap)
