import math
import random

from backend.services.plan_models import CountRow, GroupedRow, ScalarRow
from backend.services.pre_aggregator import attach_totals, build_data_map, verified_totals


def test_grouped_total_equals_sum_of_rows():
    rng = random.Random(7)
    rows = [GroupedRow(keys=(("customer", f"c{i}"),), total=round(rng.uniform(-500, 5000), 2)) for i in range(40)]
    data_map = build_data_map({"by_customer": rows})
    expected = sum(r.total for r in rows)
    assert math.isclose(data_map["by_customer_total"], expected, abs_tol=1e-6)
    assert data_map["by_customer_count"] == 40


def test_scalar_rows_get_totals():
    data_map = build_data_map({"revenue": [ScalarRow(total=120000.0, count=3)]})
    assert data_map["revenue"] == [{"total": 120000.0, "count": 3}]
    assert data_map["revenue_total"] == 120000.0
    assert data_map["revenue_count"] == 1


def test_rows_without_total_are_left_alone():
    data_map = build_data_map(
        {
            "pending": [CountRow(count=2)],
            "results": [{"id": "j1", "credit": 10.0}],
            "empty": [],
        }
    )
    assert set(data_map) == {"pending", "results", "empty"}


def test_mixed_rows_are_not_totalled():
    data_map = attach_totals({"mixed": [{"total": 1.0}, {"amount": 2.0}]})
    assert "mixed_total" not in data_map


def test_non_numeric_totals_count_as_zero():
    data_map = attach_totals({"x": [{"total": "12.5"}, {"total": None}, {"total": "n/a"}]})
    assert data_map["x_total"] == 12.5
    assert data_map["x_count"] == 3


def test_verified_totals():
    data_map = build_data_map(
        {
            "revenue": [ScalarRow(total=100.0, count=1)],
            "monthly": [GroupedRow(keys=(("month", "Jan 2025"),), total=40.0), GroupedRow(keys=(("month", "Feb 2025"),), total=60.0)],
        }
    )
    assert verified_totals(data_map) == {"revenue": 100.0, "monthly": 100.0}
