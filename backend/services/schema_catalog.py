"""Compact schema description embedded in the planner prompt."""
from datetime import date
from typing import Optional

from ledger.schema import DATE_COLUMNS, TABLES

# Business semantics the planner needs beyond column names.
TABLE_NOTES = {
    "journal_entry_lines": (
        "Revenue: account_type IN ('Income','Other Income') | "
        "Expenses: account_type IN ('Expenses','Cost of Goods Sold')"
    ),
    "ar_aging_detail": "Accounts receivable. Outstanding: open_balance > 0 | Overdue: due_date before today",
    "ap_aging": "Accounts payable. Outstanding: open_balance > 0 | Overdue: due_date before today",
    "payments": "Approved payroll history. employee = first_name + last_name",
    "payroll_submissions": "Payroll submissions. status: pending | approved | rejected | location = location name",
    "locations": "Location names for payroll_submissions.location_id",
}

SKIP_COLUMNS = {"id"}


def describe_schema(today: Optional[date] = None) -> str:
    today = today or date.today()
    lines = ["TABLES:"]
    for i, (name, table) in enumerate(TABLES.items(), start=1):
        cols = ", ".join(c.name for c in table.columns if c.name not in SKIP_COLUMNS)
        lines.append(f"{i}. {name}: {cols}")
        note = TABLE_NOTES.get(name)
        if note:
            lines.append(f"   {note}")
    date_cols = sorted({c for c in DATE_COLUMNS.values() if c})
    lines.append("")
    lines.append(
        f"GROUPING: date column ({'/'.join(date_cols)})→\"month\", any entity column→that entity. "
        'Can combine: ["customer","month"]'
    )
    lines.append(f"Current date: {today.isoformat()}")
    return "\n".join(lines)
