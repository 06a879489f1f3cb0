from datetime import date

from backend.services.filters import (
    FILTER_RULES,
    apply_filters,
    classify_amount,
    previous_month_start,
    week_start,
)
from ledger.schema import ap_aging, ar_aging_detail, journal_entry_lines, payroll_submissions

TODAY = date(2025, 6, 15)


def test_rule_table_order_is_stable():
    assert [r.name for r in FILTER_RULES] == [
        "income",
        "expense",
        "this_year",
        "this_month",
        "last_month",
        "last_year",
        "this_week",
        "pending",
        "approved",
        "rejected",
        "overdue",
        "outstanding",
    ]


def test_income_this_year_fires_two_rules():
    result = apply_filters("Income this year", journal_entry_lines, "date", TODAY)
    assert result.fired == ["income", "this_year"]
    assert len(result.predicates) == 2
    assert result.has_date_window


def test_overdue_suppresses_outstanding():
    result = apply_filters("overdue outstanding balances", ar_aging_detail, "date", TODAY)
    assert result.fired == ["overdue"]
    assert len(result.predicates) == 2


def test_owe_and_receivable_mean_outstanding():
    assert apply_filters("what customers owe", ar_aging_detail, "date", TODAY).fired == ["outstanding"]
    assert apply_filters("receivable", ap_aging, "date", TODAY).fired == ["outstanding"]


def test_rules_for_missing_columns_are_skipped():
    result = apply_filters("pending outstanding", journal_entry_lines, "date", TODAY)
    assert result.fired == []
    assert result.skipped == ["pending", "outstanding"]
    assert result.predicates == []


def test_status_rules_apply_to_submissions():
    result = apply_filters("rejected this week", payroll_submissions, "pay_date", TODAY)
    assert result.fired == ["this_week", "rejected"]


def test_unrecognized_phrases_add_nothing():
    result = apply_filters("top customers in the northeast region", journal_entry_lines, "date", TODAY)
    assert result.predicates == []
    assert result.fired == []
    assert not result.has_date_window


def test_empty_filters():
    assert apply_filters(None, journal_entry_lines, "date", TODAY).predicates == []
    assert apply_filters("", journal_entry_lines, "date", TODAY).predicates == []


def test_date_window_helpers():
    assert week_start(date(2025, 6, 15)) == date(2025, 6, 15)  # Sunday
    assert week_start(date(2025, 6, 18)) == date(2025, 6, 15)
    assert week_start(date(2025, 6, 21)) == date(2025, 6, 15)
    assert previous_month_start(date(2025, 1, 10)) == date(2024, 12, 1)
    assert previous_month_start(date(2025, 3, 31)) == date(2025, 2, 1)


def test_classify_amount():
    assert classify_amount("income this year") == "income"
    assert classify_amount("Revenue") == "income"
    assert classify_amount("expense last month") == "expense"
    assert classify_amount("outstanding") is None
    assert classify_amount(None) is None
