import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.runnables import RunnableLambda
from sqlalchemy import create_engine

from backend.services.cfo_engine import FinanceQueryEngine
from backend.services.llm_client import OracleClient
from ledger.db_utils import FinanceDB, QueryExecutionError
from ledger.schema import TABLES, metadata

TODAY = date(2025, 6, 15)

# Credit - debit over Income / Other Income in 2025 is 120000.
JOURNAL_ROWS = [
    {"id": "j1", "date": date(2025, 1, 10), "account": "Sales", "account_type": "Income", "credit": 30000.0, "debit": 0.0, "customer": "Acme"},
    {"id": "j2", "date": date(2025, 2, 12), "account": "Sales", "account_type": "Income", "credit": 50000.0, "debit": 0.0, "customer": "Beta"},
    {"id": "j3", "date": date(2025, 3, 5), "account": "Consulting", "account_type": "Other Income", "credit": 45000.0, "debit": 5000.0, "customer": "Acme"},
    {"id": "j4", "date": date(2025, 1, 20), "account": "Rent", "account_type": "Expenses", "credit": 0.0, "debit": 12000.0, "vendor": "Office Co"},
    {"id": "j5", "date": date(2025, 4, 2), "account": "Parts", "account_type": "Cost of Goods Sold", "credit": 0.0, "debit": 8000.0, "vendor": "Parts Inc"},
    {"id": "j6", "date": date(2024, 11, 30), "account": "Sales", "account_type": "Income", "credit": 99999.0, "debit": 0.0, "customer": "Acme"},
    {"id": "j7", "date": date(2025, 2, 1), "account": "Checking", "account_type": "Bank", "credit": 0.0, "debit": 1000.0},
] + [
    {"id": f"bank-{i}", "date": date(2023, 5, 1), "account": "Checking", "account_type": "Bank", "credit": 0.0, "debit": 10.0}
    for i in range(60)
]

AR_ROWS = [
    {"id": "a1", "customer": "Acme", "number": "INV-1", "date": date(2025, 4, 1), "due_date": date(2025, 5, 1), "open_balance": 5000.0},
    {"id": "a2", "customer": "Beta", "number": "INV-2", "date": date(2025, 6, 1), "due_date": date(2025, 7, 1), "open_balance": 2500.0},
    {"id": "a3", "customer": "Gamma", "number": "INV-3", "date": date(2024, 12, 1), "due_date": date(2025, 1, 1), "open_balance": 0.0},
]

AP_ROWS = [
    {"id": "p1", "vendor": "Office Co", "number": "BILL-1", "date": date(2025, 6, 1), "due_date": date(2025, 6, 30), "open_balance": 1200.0},
    {"id": "p2", "vendor": "Parts Inc", "number": "BILL-2", "date": date(2025, 5, 1), "due_date": date(2025, 6, 1), "open_balance": 800.0},
]

PAYMENT_ROWS = [
    {"id": "pay1", "date": date(2025, 3, 1), "first_name": "Jane", "last_name": "Doe", "department": "Engineering", "total_amount": 4000.0},
    {"id": "pay2", "date": date(2025, 3, 1), "first_name": "John", "last_name": "Roe", "department": "Sales", "total_amount": 3000.0},
    {"id": "pay3", "date": date(2025, 4, 1), "first_name": "Jane", "last_name": "Doe", "department": "Engineering", "total_amount": 4000.0},
    {"id": "pay4", "date": date(2024, 12, 15), "first_name": "Ann", "last_name": "Lee", "department": "Sales", "total_amount": 2500.0},
]

SUBMISSION_ROWS = [
    {"id": "s1", "submission_number": 1, "location_id": "loc1", "pay_date": date(2025, 6, 13), "total_amount": 9000.0, "total_employees": 3, "status": "pending", "submitted_at": datetime(2025, 6, 12, 9, 0)},
    {"id": "s2", "submission_number": 2, "location_id": "loc1", "pay_date": date(2025, 6, 6), "total_amount": 8500.0, "total_employees": 3, "status": "pending", "submitted_at": datetime(2025, 6, 5, 9, 0)},
    {"id": "s3", "submission_number": 3, "location_id": "loc1", "pay_date": date(2025, 5, 30), "total_amount": 8700.0, "total_employees": 3, "status": "approved", "submitted_at": datetime(2025, 5, 29, 9, 0)},
]

SEED = {
    "journal_entry_lines": JOURNAL_ROWS,
    "ar_aging_detail": AR_ROWS,
    "ap_aging": AP_ROWS,
    "payments": PAYMENT_ROWS,
    "payroll_submissions": SUBMISSION_ROWS,
    "locations": [{"id": "loc1", "name": "Downtown"}],
}


def _complete(table_name: str, row: Dict[str, Any]) -> Dict[str, Any]:
    return {c.name: row.get(c.name) for c in TABLES[table_name].columns}


@pytest.fixture
def ledger_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    metadata.create_all(engine)
    with engine.begin() as conn:
        for name, rows in SEED.items():
            conn.execute(TABLES[name].insert(), [_complete(name, r) for r in rows])
    yield engine
    engine.dispose()


@pytest.fixture
def finance_db(ledger_engine):
    return FinanceDB(ledger_engine)


class FailingTablesDB(FinanceDB):
    """FinanceDB whose reads on the given tables raise a database error."""

    def __init__(self, engine, failing_tables):
        super().__init__(engine)
        self.failing_tables = set(failing_tables)

    def fetch_rows(self, table_name, predicates=(), limit=None):
        if table_name in self.failing_tables:
            raise QueryExecutionError(f"Database error on {table_name}")
        return super().fetch_rows(table_name, predicates, limit)


class ScriptedOracle:
    """Async stand-in for the language model: canned replies, recorded prompts."""

    def __init__(self, *responses: str, delay_s: float = 0.0, error: Optional[Exception] = None):
        self.responses = list(responses) or [""]
        self.delay_s = delay_s
        self.error = error
        self.prompts: List[str] = []

    async def respond(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        idx = min(len(self.prompts), len(self.responses)) - 1
        return self.responses[idx]

    def client(self, name: str = "oracle", timeout_s: float = 8.0) -> OracleClient:
        return OracleClient(RunnableLambda(self.respond), timeout_s=timeout_s, name=name)


def make_engine(db, planner: ScriptedOracle, responder: ScriptedOracle, **overrides) -> FinanceQueryEngine:
    kwargs = dict(
        request_timeout_s=5.0,
        llm_timeout_s=2.0,
        query_timeout_s=2.0,
        fast_path_timeout_s=2.0,
        clock=lambda: TODAY,
    )
    kwargs.update(overrides)
    return FinanceQueryEngine(db, planner.client("planner", kwargs["llm_timeout_s"]), responder.client("responder", kwargs["llm_timeout_s"]), **kwargs)
