"""
opportunity_metrics.py — Funnel and bucket analytics over opportunities

Business Rules:
- Rates are percentages rounded to 1 decimal; 0 when the denominator is 0
- win_rate = won / total; closed_win_rate = won / (won + lost)
- total_value is normalized: won_value when won, else the average quote
  (total_quoted_value / quote_count)
- Decision / schedule / close / cycle averages only count won opportunities
- Averages ignore NULLs and are None when nothing is left
- The optional date filter applies to first_sent_date (inclusive)

Called by: routers/sync.py, cli.py
Depends on: services/opportunity_service.py (bucket orders)
"""

from datetime import date

from .opportunity_service import (
    QUOTE_COUNT_BUCKETS,
    REVENUE_BUCKETS,
    SPEED_BUCKETS,
    STATUS_LOST,
    STATUS_WON,
)

BUCKET_ORDERS = {
    "speed_to_quote_bucket": SPEED_BUCKETS,
    "revenue_bucket": REVENUE_BUCKETS,
    "quote_count_bucket": QUOTE_COUNT_BUCKETS,
    "salesperson": None,  # alphabetical
}


def _pct(num: float, den: float) -> float:
    return round(100.0 * num / den, 1) if den else 0.0


def _avg(values, digits: int = 1) -> float | None:
    values = [v for v in values if v is not None]
    if not values:
        return None
    return round(sum(values) / len(values), digits)


def _normalized_value(o) -> float:
    if o.status == STATUS_WON:
        return o.won_value or 0.0
    if o.total_quoted_value is None or not o.quote_count:
        return 0.0
    return o.total_quoted_value / o.quote_count


def filter_by_sent_date(opps, start: date | None = None, end: date | None = None) -> list:
    if start is None and end is None:
        return list(opps)
    out = []
    for o in opps:
        d = o.first_sent_date
        if d is None:
            continue
        if start is not None and d < start:
            continue
        if end is not None and d > end:
            continue
        out.append(o)
    return out


def _summarize(opps: list) -> dict:
    won = [o for o in opps if o.status == STATUS_WON]
    lost = sum(1 for o in opps if o.status == STATUS_LOST)
    total_value = sum(_normalized_value(o) for o in opps)
    won_value = sum(o.won_value or 0.0 for o in won)
    return {
        "total_opportunities": len(opps),
        "won_opportunities": len(won),
        "lost_opportunities": lost,
        "pending_opportunities": len(opps) - len(won) - lost,
        "win_rate": _pct(len(won), len(opps)),
        "closed_win_rate": _pct(len(won), len(won) + lost),
        "total_value": round(total_value, 2),
        "won_value": round(won_value, 2),
        "value_win_rate": _pct(won_value, total_value),
        "avg_days_to_decision": _avg(o.days_to_decision for o in won),
    }


def funnel_metrics(opps, start: date | None = None, end: date | None = None) -> dict:
    """Headline funnel numbers for the (optionally date-filtered) opportunities."""
    opps = filter_by_sent_date(opps, start, end)
    won = [o for o in opps if o.status == STATUS_WON]
    quoted = [o for o in opps if o.days_to_quote is not None]
    same_day = sum(1 for o in quoted if o.speed_to_quote_bucket == "Same day")
    return {
        **_summarize(opps),
        "avg_quote_value": _avg((o.max_quote_value for o in opps), digits=0),
        "avg_days_to_quote": _avg(o.days_to_quote for o in opps),
        "avg_days_to_schedule": _avg(o.days_to_schedule for o in won),
        "avg_days_to_close": _avg(o.days_to_close for o in won),
        "avg_total_cycle_days": _avg(o.total_cycle_days for o in won),
        "same_day_quote_pct": _pct(same_day, len(quoted)),
    }


def bucket_metrics(opps, attribute: str, start: date | None = None, end: date | None = None) -> list[dict]:
    """Funnel summary per bucket value, in the bucket's natural order.

    Opportunities with no value for `attribute` are left out.
    """
    if attribute not in BUCKET_ORDERS:
        raise ValueError(f"Unknown bucket attribute: {attribute}")
    grouped: dict[str, list] = {}
    for o in filter_by_sent_date(opps, start, end):
        value = getattr(o, attribute)
        if value:
            grouped.setdefault(value, []).append(o)

    order = BUCKET_ORDERS[attribute]
    if order is None:
        labels = sorted(grouped)
    else:
        labels = [b for b in order if b in grouped]
    return [{"bucket": label, **_summarize(grouped[label])} for label in labels]
