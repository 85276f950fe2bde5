"""
test_opportunity_metrics.py — Tests for services/opportunity_metrics.py

Called by: pytest
Depends on: fieldsync.services.opportunity_metrics
"""

from datetime import date

import pytest

from fieldsync.services.opportunity_metrics import bucket_metrics, funnel_metrics
from fieldsync.services.opportunity_service import OpportunityData


def _opp(key, status, **kw):
    return OpportunityData(opportunity_key=key, status=status, **kw)


@pytest.fixture()
def opps():
    return [
        _opp("a", "won", won_value=1000.0, total_quoted_value=1000.0, quote_count=1,
             max_quote_value=1000.0, days_to_quote=0, speed_to_quote_bucket="Same day",
             days_to_decision=4, days_to_schedule=2, days_to_close=1, total_cycle_days=7,
             first_sent_date=date(2024, 1, 5), revenue_bucket="$1K-$2K",
             quote_count_bucket="1 quote", salesperson="Ben"),
        _opp("b", "won", won_value=2000.0, total_quoted_value=2000.0, quote_count=1,
             max_quote_value=2000.0, days_to_quote=3, speed_to_quote_bucket="1-3 days",
             days_to_decision=6, first_sent_date=date(2024, 2, 5), revenue_bucket="$2K-$5K",
             quote_count_bucket="1 quote", salesperson="Ana"),
        _opp("c", "lost", total_quoted_value=3000.0, quote_count=2, max_quote_value=2000.0,
             days_to_quote=10, speed_to_quote_bucket="8+ days", days_to_decision=30,
             first_sent_date=date(2024, 3, 5), revenue_bucket="$2K-$5K",
             quote_count_bucket="2 quotes", salesperson="Ana"),
        _opp("d", "pending", quote_count=0),
    ]


def test_funnel_rates(opps):
    m = funnel_metrics(opps)

    assert (m["total_opportunities"], m["won_opportunities"],
            m["lost_opportunities"], m["pending_opportunities"]) == (4, 2, 1, 1)
    assert m["win_rate"] == 50.0
    assert m["closed_win_rate"] == 66.7


def test_funnel_values_are_normalized(opps):
    m = funnel_metrics(opps)

    # won: 1000 + 2000; lost: 3000 / 2 quotes; pending: nothing quoted
    assert m["total_value"] == 4500.0
    assert m["won_value"] == 3000.0
    assert m["value_win_rate"] == 66.7
    assert m["avg_quote_value"] == round(5000.0 / 3)


def test_cycle_averages_only_count_won(opps):
    m = funnel_metrics(opps)

    assert m["avg_days_to_decision"] == 5.0   # lost opp's 30 days ignored
    assert m["avg_days_to_schedule"] == 2.0   # nulls ignored
    assert m["avg_total_cycle_days"] == 7.0
    assert m["avg_days_to_quote"] == round(13 / 3, 1)
    assert m["same_day_quote_pct"] == 33.3


def test_empty_input_gives_zero_rates_and_null_averages():
    m = funnel_metrics([])
    assert m["total_opportunities"] == 0
    assert m["win_rate"] == 0.0
    assert m["value_win_rate"] == 0.0
    assert m["avg_days_to_decision"] is None
    assert m["avg_quote_value"] is None


def test_date_filter_uses_first_sent_date(opps):
    m = funnel_metrics(opps, start=date(2024, 2, 1), end=date(2024, 2, 28))
    assert m["total_opportunities"] == 1
    assert m["won_opportunities"] == 1


def test_bucket_metrics_follow_natural_order(opps):
    rows = bucket_metrics(opps, "speed_to_quote_bucket")
    assert [r["bucket"] for r in rows] == ["Same day", "1-3 days", "8+ days"]
    assert rows[0]["win_rate"] == 100.0


def test_bucket_metrics_group_rates(opps):
    rows = {r["bucket"]: r for r in bucket_metrics(opps, "revenue_bucket")}
    assert rows["$2K-$5K"]["total_opportunities"] == 2
    assert rows["$2K-$5K"]["closed_win_rate"] == 50.0


def test_salesperson_buckets_are_alphabetical(opps):
    rows = bucket_metrics(opps, "salesperson")
    assert [r["bucket"] for r in rows] == ["Ana", "Ben"]


def test_unknown_bucket_attribute():
    with pytest.raises(ValueError):
        bucket_metrics([], "client_name")
