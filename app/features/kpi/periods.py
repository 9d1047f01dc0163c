"""Comparison period arithmetic: deltas, percent change and trend."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from decimal import Decimal

from app.features.kpi.schemas import ComparisonResult, DateRange, MetricRecord, PeriodRequest

PERCENT_QUANTUM = Decimal("0.01")


def compare(current: MetricRecord, previous: MetricRecord | None) -> ComparisonResult:
    """Derive per-metric deltas between two metric records.

    For each metric present in both records:

    - ``delta_absolute = current - previous``
    - ``delta_percent = delta_absolute / |previous| * 100``, None when
      previous is 0 or None

    Both deltas are None when the current value is None. Metrics missing
    from ``previous`` get None deltas; a missing ``previous`` record yields
    a current-only result. Never raises.
    """
    if previous is None:
        return ComparisonResult(current=dict(current.metrics))

    delta_absolute: dict[str, Decimal | None] = {}
    delta_percent: dict[str, Decimal | None] = {}

    for key, metric in current.metrics.items():
        prev_metric = previous.get(key)
        cur_value = metric.value
        prev_value = prev_metric.value if prev_metric is not None else None

        if cur_value is None or prev_value is None:
            delta_absolute[key] = None
            delta_percent[key] = None
            continue

        delta = cur_value - prev_value
        delta_absolute[key] = delta
        if prev_value == 0:
            delta_percent[key] = None
        else:
            delta_percent[key] = (delta / abs(prev_value) * 100).quantize(PERCENT_QUANTUM)

    return ComparisonResult(
        current=dict(current.metrics),
        previous=dict(previous.metrics),
        delta_absolute=delta_absolute,
        delta_percent=delta_percent,
    )


def shift_years(day: date, years: int) -> date:
    """Shift a date by whole years; Feb 29 maps to Feb 28 in common years."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


def _is_month_end(day: date) -> bool:
    return (day + timedelta(days=1)).day == 1


def _month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def previous_year(window: DateRange) -> DateRange:
    """Same window one year back.

    A window ending on a month's last day keeps ending on that month's
    last day, so Feb 2025 compares with the whole of Feb 2024 (29 days).
    """
    end = shift_years(window.end, -1)
    if _is_month_end(window.end):
        end = _month_end(end)
    return DateRange(start=shift_years(window.start, -1), end=end)


def default_comparison_period(period: PeriodRequest) -> PeriodRequest:
    """Fill in the comparison window when absent: same window, one year back."""
    if period.comparison is not None:
        return period
    comparison = previous_year(period.current)
    return period.model_copy(
        update={"comparison_start": comparison.start, "comparison_end": comparison.end}
    )


def comparison_windows(period: PeriodRequest) -> tuple[DateRange, DateRange]:
    """Current and comparison windows, defaulting the latter to N-1."""
    return period.current, period.comparison or previous_year(period.current)
