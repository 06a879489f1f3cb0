"""Authoritative totals for the DataMap, computed before the responder runs."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from backend.services.plan_models import EntryResult, rows_to_payload
from backend.services.query_executor import to_number
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)

TOTAL_SUFFIX = "_total"
COUNT_SUFFIX = "_count"


def build_data_map(results: Mapping[str, EntryResult]) -> Dict[str, Any]:
    """Alias -> plain-dict rows, plus ``<alias>_total`` / ``<alias>_count`` side channels."""
    data_map: Dict[str, Any] = {}
    for alias, rows in results.items():
        data_map[alias] = rows_to_payload(rows)
    return attach_totals(data_map)


def attach_totals(data_map: Dict[str, Any]) -> Dict[str, Any]:
    """Add ``<alias>_total`` and ``<alias>_count`` for every alias whose rows all carry ``total``.

    The total is a left-to-right float sum over the rows; it is the number
    the answer must quote for that alias.
    """
    for alias in [k for k in data_map if not _is_side_channel(k, data_map)]:
        rows = data_map[alias]
        if not isinstance(rows, list) or not rows:
            continue
        if not all(isinstance(r, dict) and "total" in r for r in rows):
            continue
        total = 0.0
        for row in rows:
            total += to_number(row.get("total"))
        data_map[f"{alias}{TOTAL_SUFFIX}"] = total
        data_map[f"{alias}{COUNT_SUFFIX}"] = len(rows)
        log_event(logger, logging.INFO, "pre_aggregated_total", alias=alias, total=round(total, 2), rows=len(rows))
    return data_map


def _is_side_channel(key: str, data_map: Mapping[str, Any]) -> bool:
    for suffix in (TOTAL_SUFFIX, COUNT_SUFFIX):
        if key.endswith(suffix) and not isinstance(data_map.get(key), list):
            return True
    return False


def verified_totals(data_map: Mapping[str, Any]) -> Dict[str, float]:
    """``{alias: total}`` for every pre-aggregated alias."""
    out: Dict[str, float] = {}
    for key, value in data_map.items():
        if key.endswith(TOTAL_SUFFIX) and isinstance(value, (int, float)) and not isinstance(value, bool):
            out[key[: -len(TOTAL_SUFFIX)]] = float(value)
    return out
