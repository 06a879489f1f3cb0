"""
SQLAlchemy Core definitions of the financial tables the engine reads.

The tables are owned by the bookkeeping sync jobs, not by this service;
these definitions only describe the columns the engine selects and filters on.
Reads select every declared column, so each one must exist on the hosted
table; a missing column fails every read on that table.
"""
from typing import Dict, Optional, Tuple

from sqlalchemy import Column, Date, DateTime, Float, Integer, MetaData, String, Table

metadata = MetaData()

journal_entry_lines = Table(
    "journal_entry_lines",
    metadata,
    Column("id", String, primary_key=True),
    Column("date", Date),
    Column("entry_number", String),
    Column("account", String),
    Column("account_type", String),
    Column("debit", Float),
    Column("credit", Float),
    Column("customer", String),
    Column("vendor", String),
    Column("memo", String),
)

ar_aging_detail = Table(
    "ar_aging_detail",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer", String),
    Column("number", String),
    Column("date", Date),
    Column("due_date", Date),
    Column("open_balance", Float),
    Column("memo", String),
)

ap_aging = Table(
    "ap_aging",
    metadata,
    Column("id", String, primary_key=True),
    Column("vendor", String),
    Column("number", String),
    Column("date", Date),
    Column("due_date", Date),
    Column("open_balance", Float),
    Column("memo", String),
)

payments = Table(
    "payments",
    metadata,
    Column("id", String, primary_key=True),
    Column("date", Date),
    Column("first_name", String),
    Column("last_name", String),
    Column("department", String),
    Column("location", String),
    Column("payroll_group", String),
    Column("hours", Float),
    Column("total_amount", Float),
)

payroll_submissions = Table(
    "payroll_submissions",
    metadata,
    Column("id", String, primary_key=True),
    Column("submission_number", Integer),
    Column("location_id", String),
    Column("pay_date", Date),
    Column("payroll_group", String),
    Column("total_amount", Float),
    Column("total_employees", Integer),
    Column("status", String),
    Column("submitted_at", DateTime),
)

locations = Table(
    "locations",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String),
)

TABLES: Dict[str, Table] = {
    t.name: t
    for t in (journal_entry_lines, ar_aging_detail, ap_aging, payments, payroll_submissions, locations)
}

# Column used for date-range filters and month grouping.
DATE_COLUMNS: Dict[str, Optional[str]] = {
    "journal_entry_lines": "date",
    "ar_aging_detail": "date",
    "ap_aging": "date",
    "payments": "date",
    "payroll_submissions": "pay_date",
    "locations": None,
}

# Display names resolved through a left join: (label, foreign key, lookup key, lookup value).
LOOKUP_COLUMNS: Dict[str, Tuple[Tuple[str, Column, Column, Column], ...]] = {
    "payroll_submissions": (
        ("location", payroll_submissions.c.location_id, locations.c.id, locations.c.name),
    ),
}

DEFAULT_TABLE = "journal_entry_lines"


def get_table(name: str) -> Optional[Table]:
    return TABLES.get((name or "").strip().lower())


def date_column_for(name: str) -> Optional[str]:
    return DATE_COLUMNS.get((name or "").strip().lower())
