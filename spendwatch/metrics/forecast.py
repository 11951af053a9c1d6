"""Next-period cost forecasting.

Four independent methods predict the total spend of the period after the
current one:

- linear_extrapolation: mean of the days with data in the current period,
  times the number of days in the next period.
- moving_average_7day: mean of the last 7 observed days.
- exponential_smoothing: smoothed daily value with alpha = 0.3.
- historical_trend: growth across up to 6 monthly totals.

The comprehensive forecast runs all four, averages them into a consensus and
recommends the one with the best confidence-weighted sample size. Methods that
lack enough data return the linear extrapolation result unchanged.

The pure functions take the series directly; forecast_method() and
comprehensive_forecast() read the series from the ledger.
"""

import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum

from spendwatch.core.errors import ValidationError
from spendwatch.ledger.periods import days_in_period, next_period, period_of, utc_now
from spendwatch.metrics.queries import DailyTotal, MonthlyTotal, daily_trend, monthly_trend

SMOOTHING_ALPHA = Decimal("0.3")
MOVING_AVERAGE_WINDOW = 7
MIN_SMOOTHING_POINTS = 5
MIN_HISTORY_MONTHS = 3
HISTORY_MONTHS = 6

_DAILY_TREND_PCT = Decimal("10")
_MONTHLY_GROWTH = Decimal("0.05")
_APPROX_DAYS_PER_MONTH = 30


class Confidence(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class Trend(StrEnum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ForecastMethod(StrEnum):
    LINEAR = "linear_extrapolation"
    MOVING_AVERAGE = "moving_average_7day"
    EXPONENTIAL = "exponential_smoothing"
    HISTORICAL = "historical_trend"


@dataclass(frozen=True)
class ForecastResult:
    """A single method's prediction for the target period."""

    method: ForecastMethod
    target_period: str
    predicted_amount: Decimal
    confidence: Confidence
    trend: Trend
    daily_average: Decimal
    data_points: int

    @property
    def score(self) -> int:
        """Confidence weight times sample size, used to pick a recommendation."""
        return self.confidence.weight * self.data_points


@dataclass(frozen=True)
class ComprehensiveForecast:
    forecasts: list[ForecastResult]
    consensus: Decimal
    recommended: ForecastResult


def _mean(values: list[Decimal]) -> Decimal:
    return sum(values, Decimal("0")) / len(values)


def _tiered_confidence(points: int) -> Confidence:
    if points >= 20:
        return Confidence.HIGH
    if points >= 10:
        return Confidence.MEDIUM
    return Confidence.LOW


def daily_series_trend(values: list[Decimal]) -> Trend:
    """Compare the mean of the second half of a series against the first.

    The first half holds floor(n/2) points. A change above 10% is increasing,
    below -10% decreasing. Fewer than 2 points is stable.
    """
    if len(values) < 2:
        return Trend.STABLE
    middle = len(values) // 2
    first_avg = _mean(values[:middle])
    second_avg = _mean(values[middle:])
    change = (second_avg - first_avg) / (first_avg or Decimal("1")) * 100
    if change > _DAILY_TREND_PCT:
        return Trend.INCREASING
    if change < -_DAILY_TREND_PCT:
        return Trend.DECREASING
    return Trend.STABLE


def linear_extrapolation(daily: list[DailyTotal], target_period: str) -> ForecastResult:
    """Average daily spend so far times the length of the target period."""
    if not daily:
        return ForecastResult(
            method=ForecastMethod.LINEAR,
            target_period=target_period,
            predicted_amount=Decimal("0"),
            confidence=Confidence.LOW,
            trend=Trend.STABLE,
            daily_average=Decimal("0"),
            data_points=0,
        )
    values = [d.total for d in daily]
    average = _mean(values)
    return ForecastResult(
        method=ForecastMethod.LINEAR,
        target_period=target_period,
        predicted_amount=average * days_in_period(target_period),
        confidence=_tiered_confidence(len(values)),
        trend=daily_series_trend(values),
        daily_average=average,
        data_points=len(values),
    )


def moving_average(daily: list[DailyTotal], target_period: str) -> ForecastResult:
    """Mean of the trailing 7 observed days times the length of the target period."""
    if len(daily) < MOVING_AVERAGE_WINDOW:
        return linear_extrapolation(daily, target_period)
    window = [d.total for d in daily[-MOVING_AVERAGE_WINDOW:]]
    average = _mean(window)
    return ForecastResult(
        method=ForecastMethod.MOVING_AVERAGE,
        target_period=target_period,
        predicted_amount=average * days_in_period(target_period),
        confidence=Confidence.HIGH if len(daily) >= 20 else Confidence.MEDIUM,
        trend=daily_series_trend(window),
        daily_average=average,
        data_points=len(daily),
    )


def exponential_smoothing(daily: list[DailyTotal], target_period: str) -> ForecastResult:
    """Exponentially smoothed daily spend, seeded with the first day."""
    if len(daily) < MIN_SMOOTHING_POINTS:
        return linear_extrapolation(daily, target_period)
    values = [d.total for d in daily]
    smoothed = values[0]
    for value in values[1:]:
        smoothed = SMOOTHING_ALPHA * value + (1 - SMOOTHING_ALPHA) * smoothed
    return ForecastResult(
        method=ForecastMethod.EXPONENTIAL,
        target_period=target_period,
        predicted_amount=smoothed * days_in_period(target_period),
        confidence=_tiered_confidence(len(values)),
        trend=daily_series_trend(values),
        daily_average=smoothed,
        data_points=len(values),
    )


def historical_trend(
    monthly: list[MonthlyTotal], daily: list[DailyTotal], target_period: str
) -> ForecastResult:
    """Project the latest monthly total forward by the average growth rate.

    Needs at least 3 monthly totals, otherwise falls back to linear
    extrapolation over ``daily``.
    """
    if len(monthly) < MIN_HISTORY_MONTHS:
        return linear_extrapolation(daily, target_period)
    totals = [m.total for m in monthly]
    first, last = totals[0], totals[-1]
    growth = (last - first) / first if first > 0 else Decimal("0")
    predicted = last * (1 + growth / len(totals))

    if growth > _MONTHLY_GROWTH:
        trend = Trend.INCREASING
    elif growth < -_MONTHLY_GROWTH:
        trend = Trend.DECREASING
    else:
        trend = Trend.STABLE

    if len(totals) >= 6:
        confidence = Confidence.HIGH
    elif len(totals) >= 4:
        confidence = Confidence.MEDIUM
    else:
        confidence = Confidence.LOW

    return ForecastResult(
        method=ForecastMethod.HISTORICAL,
        target_period=target_period,
        predicted_amount=predicted,
        confidence=confidence,
        trend=trend,
        daily_average=_mean(totals) / _APPROX_DAYS_PER_MONTH,
        data_points=len(totals),
    )


def combine(forecasts: list[ForecastResult]) -> ComprehensiveForecast:
    """Build the consensus and pick the recommended forecast.

    The recommendation must strictly beat the current best score, so ties
    keep the earliest forecast in the list.
    """
    consensus = _mean([f.predicted_amount for f in forecasts])
    recommended = forecasts[0]
    for candidate in forecasts[1:]:
        if candidate.score > recommended.score:
            recommended = candidate
    return ComprehensiveForecast(forecasts=forecasts, consensus=consensus, recommended=recommended)


def _load_series(
    conn: sqlite3.Connection, subject_id: str, today: date
) -> tuple[list[DailyTotal], list[MonthlyTotal], str]:
    daily = daily_trend(conn, subject_id, today.replace(day=1), today)
    monthly = monthly_trend(conn, subject_id, HISTORY_MONTHS, today)
    return daily, monthly, next_period(period_of(today))


def parse_method(name: str) -> ForecastMethod:
    """Look up a method by name.

    Raises:
        ValidationError: If the name is not a known method.
    """
    try:
        return ForecastMethod(name)
    except ValueError as e:
        valid = ", ".join(m.value for m in ForecastMethod)
        raise ValidationError("method", f"unknown method {name!r}, expected one of: {valid}") from e


def forecast_method(
    conn: sqlite3.Connection, subject_id: str, method: str, today: date | None = None
) -> ForecastResult:
    """Run one forecasting method for a subject."""
    selected = parse_method(method)
    daily, monthly, target = _load_series(conn, subject_id, today or utc_now().date())
    match selected:
        case ForecastMethod.LINEAR:
            return linear_extrapolation(daily, target)
        case ForecastMethod.MOVING_AVERAGE:
            return moving_average(daily, target)
        case ForecastMethod.EXPONENTIAL:
            return exponential_smoothing(daily, target)
        case ForecastMethod.HISTORICAL:
            return historical_trend(monthly, daily, target)


def comprehensive_forecast(
    conn: sqlite3.Connection, subject_id: str, today: date | None = None
) -> ComprehensiveForecast:
    """Run all four methods for a subject and combine them."""
    daily, monthly, target = _load_series(conn, subject_id, today or utc_now().date())
    return combine(
        [
            linear_extrapolation(daily, target),
            moving_average(daily, target),
            exponential_smoothing(daily, target),
            historical_trend(monthly, daily, target),
        ]
    )
