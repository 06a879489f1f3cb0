"""
In-memory shapes for one request: query plan entries, group-by specs and result rows.

The oracle returns loosely-typed JSON; everything is normalized into these
types before the executor sees it.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

MONTH = "month"
UNKNOWN_GROUP = "Unknown"


class AggregationType(str, Enum):
    SUM = "sum"
    COUNT = "count"
    LIST = "list"

    @classmethod
    def parse(cls, value: Any) -> Optional["AggregationType"]:
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class GroupBy:
    """Group-by shape: none, a single column, ``month``, or an ordered multi-key list."""
    keys: Tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        if not self.keys:
            return "none"
        if len(self.keys) > 1:
            return "multi"
        return "month" if self.keys[0] == MONTH else "single"

    @property
    def includes_month(self) -> bool:
        return MONTH in self.keys

    def __bool__(self) -> bool:
        return bool(self.keys)

    @classmethod
    def parse(cls, raw: Any) -> "GroupBy":
        """Accepts None, "col", "month", ["col", "month"] or the string form "['col','month']"."""
        if raw is None:
            return cls()
        if isinstance(raw, str):
            text = raw.strip()
            if text.startswith("[") and text.endswith("]"):
                try:
                    return cls.parse(json.loads(text.replace("'", '"')))
                except ValueError:
                    return cls()
            if not text or text.lower() in {"null", "none"}:
                return cls()
            return cls((_normalize_key(text),))
        if isinstance(raw, (list, tuple)):
            keys = tuple(_normalize_key(k) for k in raw if isinstance(k, str) and k.strip())
            return cls(keys)
        return cls()

    def to_json(self) -> Union[None, str, List[str]]:
        if not self.keys:
            return None
        if len(self.keys) == 1:
            return self.keys[0]
        return list(self.keys)


def _normalize_key(key: str) -> str:
    key = key.strip()
    return MONTH if key.lower() == MONTH else key


@dataclass(frozen=True)
class QueryPlanEntry:
    table: str
    type: AggregationType
    alias: str
    filters: Optional[str] = None
    group_by: GroupBy = field(default_factory=GroupBy)
    limit: Optional[int] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "type": self.type.value,
            "filters": self.filters,
            "groupBy": self.group_by.to_json(),
            "alias": self.alias,
        }


@dataclass
class QueryPlan:
    entries: List[QueryPlanEntry]
    fallback_used: bool = False

    def __len__(self) -> int:
        return len(self.entries)


# ---------------------------------------------------------------------------
# Result rows
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ScalarRow:
    total: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "count": self.count}


@dataclass(frozen=True)
class GroupedRow:
    keys: Tuple[Tuple[str, str], ...]
    total: float

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.keys)
        out["total"] = self.total
        return out

    def key(self, name: str) -> Optional[str]:
        for k, v in self.keys:
            if k == name:
                return v
        return None


@dataclass(frozen=True)
class CountRow:
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count}


ResultRow = Union[ScalarRow, GroupedRow, CountRow]
EntryResult = List[Union[ResultRow, Dict[str, Any]]]


def rows_to_payload(rows: EntryResult) -> List[Dict[str, Any]]:
    """Plain-dict form used in the DataMap; raw ``list`` rows pass through."""
    return [r.to_dict() if hasattr(r, "to_dict") else dict(r) for r in rows]
