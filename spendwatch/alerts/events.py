"""Alert event types and their structured detail payloads.

Each kind of alert carries its own frozen detail dataclass. The detail is
stored as JSON with a ``variant`` tag and read back with parse_detail().
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any


class AlertKind(StrEnum):
    THRESHOLD = "threshold"
    OVER_BUDGET = "over_budget"
    DAILY_SUMMARY = "daily_summary"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DeliveryState(StrEnum):
    """Lifecycle of a stored alert. A pending row is the dedup claim."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class ThresholdDetail:
    percentage_used: float
    threshold_pct: float
    remaining: str
    days_left: int


@dataclass(frozen=True)
class OverBudgetDetail:
    percentage_used: float
    overage: str
    days_left: int


@dataclass(frozen=True)
class DailySummaryDetail:
    day: str
    day_total: str
    period_total: str
    top_services: tuple[tuple[str, str], ...] = ()


AlertDetail = ThresholdDetail | OverBudgetDetail | DailySummaryDetail


def serialize_detail(detail: AlertDetail) -> str:
    """Encode a detail payload as tagged JSON."""
    match detail:
        case ThresholdDetail():
            variant = "threshold"
        case OverBudgetDetail():
            variant = "over_budget"
        case DailySummaryDetail():
            variant = "daily_summary"
        case _:
            raise TypeError(f"Unknown alert detail type: {type(detail).__name__}")
    return json.dumps({"variant": variant, **asdict(detail)})


def parse_detail(raw: str | None) -> AlertDetail | None:
    """Decode tagged JSON back into a detail payload (None for empty/unknown)."""
    if not raw:
        return None
    data: dict[str, Any] = json.loads(raw)
    match data.pop("variant", None):
        case "threshold":
            return ThresholdDetail(**data)
        case "over_budget":
            return OverBudgetDetail(**data)
        case "daily_summary":
            services = tuple(tuple(pair) for pair in data.pop("top_services", []))
            return DailySummaryDetail(top_services=services, **data)
        case _:
            return None


@dataclass(frozen=True)
class AlertEvent:
    """A stored alert, including pending claims and failed deliveries."""

    id: int
    subject_id: str
    policy_id: int
    kind: AlertKind
    severity: Severity
    percentage_used: float | None
    amount_spent: Decimal | None
    limit: Decimal | None
    message: str | None
    detail: AlertDetail | None
    state: DeliveryState
    delivery_succeeded: bool
    delivered_at: datetime | None
    created_at: datetime
