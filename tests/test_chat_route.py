import pytest
from conftest import ScriptedOracle, make_engine
from fastapi.testclient import TestClient

from backend.main import app
from backend.routes.deps import get_query_engine
from backend.services.cfo_engine import GENERIC_ERROR_MESSAGE, TIMEOUT_MESSAGE

client = TestClient(app)

MONTHLY_PLAN = (
    '{"queries":[{"table":"journal_entry_lines","type":"sum","filters":"income this year",'
    '"groupBy":"month","alias":"monthly_revenue"}]}'
)


@pytest.fixture
def use_engine():
    def _install(engine):
        app.dependency_overrides[get_query_engine] = lambda: engine
        return engine

    yield _install
    app.dependency_overrides.clear()


def test_health():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"json": {}},
        {"json": {"message": ""}},
        {"json": {"message": "   "}},
        {"json": {"message": 42}},
        {"json": ["revenue"]},
        {"content": b"not json", "headers": {"content-type": "application/json"}},
    ],
)
def test_message_required(kwargs, finance_db, use_engine):
    use_engine(make_engine(finance_db, ScriptedOracle(), ScriptedOracle()))
    resp = client.post("/api/ai-cfo/chat", **kwargs)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Message required"}


def test_fast_path_answer(finance_db, use_engine):
    use_engine(make_engine(finance_db, ScriptedOracle(), ScriptedOracle("Revenue this year is $120,000.00.")))
    resp = client.post("/api/ai-cfo/chat", json={"message": "revenue this year", "userId": "u-1", "context": {"page": "dashboard"}})
    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "Revenue this year is $120,000.00."
    assert body["context"]["quick_match"] is True
    assert "error" not in body["context"]


def test_planned_answer_reports_query_count(finance_db, use_engine):
    use_engine(make_engine(finance_db, ScriptedOracle(MONTHLY_PLAN), ScriptedOracle("Revenue grew 66.7% from Jan to Feb.")))
    resp = client.post("/api/ai-cfo/chat", json={"message": "revenue by month"})
    assert resp.status_code == 200
    context = resp.json()["context"]
    assert context["queries"] == 1
    assert isinstance(context["duration_ms"], int)
    assert "quick_match" not in context


def test_timeout_status(finance_db, use_engine):
    planner = ScriptedOracle(MONTHLY_PLAN, delay_s=1.0)
    use_engine(make_engine(finance_db, planner, ScriptedOracle(), request_timeout_s=0.2, llm_timeout_s=5.0))
    resp = client.post("/api/ai-cfo/chat", json={"message": "revenue by month"})
    assert resp.status_code == 504
    assert resp.json() == {"response": TIMEOUT_MESSAGE, "context": {"error": "timeout"}}


def test_oracle_failure_status(finance_db, use_engine):
    planner = ScriptedOracle(error=RuntimeError("quota exceeded"))
    use_engine(make_engine(finance_db, planner, ScriptedOracle()))
    resp = client.post("/api/ai-cfo/chat", json={"message": "revenue by month"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["response"] == GENERIC_ERROR_MESSAGE
    assert "planner failed" in body["context"]["error"]


def test_request_id_is_echoed(finance_db, use_engine):
    use_engine(make_engine(finance_db, ScriptedOracle(), ScriptedOracle("ok")))
    resp = client.post("/api/ai-cfo/chat", json={"message": "expenses ytd"}, headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


def test_engine_missing_is_unavailable():
    resp = client.post("/api/ai-cfo/chat", json={"message": "revenue this year"})
    assert resp.status_code == 503
