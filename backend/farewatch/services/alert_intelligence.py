"""
Alert intelligence: urgency, duplicate suppression, content and timing.

Everything here is a pure function of its inputs (including ``now``), so
the same break always produces the same tier, content and delivery time.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from farewatch.config import get_settings
from farewatch.models import Alert

logger = logging.getLogger(__name__)
settings = get_settings()

URGENT_THRESHOLD = 15.0
SIGNIFICANT_THRESHOLD = 8.0
MINOR_THRESHOLD = 3.0
URGENT_BOOKING_WINDOW_DAYS = 30

URGENT = "urgent"
SIGNIFICANT = "significant"
MINOR = "minor"
NONE = "none"


@dataclass
class AlertContent:
    urgency: str
    title: str
    body: Dict[str, Any]
    call_to_action: Dict[str, Any]
    context: Dict[str, Any]
    booking_recommendation: Dict[str, Any]
    confidence: float

    @property
    def summary(self) -> str:
        return self.title

    def message(self) -> str:
        """Plain-text rendering for push channels."""
        lines = [
            f"{self.body['route']}: ${self.body['current_price']:.0f} (target ${self.body['original_price']:.0f})",
            f"Save ${self.body['savings']['amount']:.0f} ({self.body['savings']['percentage']}%)",
        ]
        if self.body.get("departure_date"):
            lines.append(f"Departs {self.body['departure_date']}")
        lines.append(self.body["confidence"])
        if self.body.get("urgency_message"):
            lines.append(self.body["urgency_message"])
        return "\n".join(lines)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IntelligenceDecision:
    urgency: str
    should_send: bool
    content: Optional[AlertContent] = None
    deliver_at: Optional[datetime] = None
    drop_percentage: float = 0.0
    suppressed_reasons: List[str] = field(default_factory=list)


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def drop_percentage(target_price: float, current_price: float, history: Optional[List[float]] = None) -> float:
    """
    Percentage the price sits below the target.

    With at least two historical prices and a price below their mean, the
    drop is measured against the mean as well and the smaller of the two is
    used. A price at or above the mean is classified on the target alone.
    """
    if not target_price or target_price <= 0 or current_price is None:
        return 0.0
    drop = (target_price - current_price) / target_price * 100
    if history and len(history) >= 2:
        mean = sum(history) / len(history)
        if mean > 0:
            mean_drop = (mean - current_price) / mean * 100
            if mean_drop > 0:
                drop = min(drop, mean_drop)
    return round(drop, 2)


def is_urgent_booking_window(departure_date: Optional[date], today: date) -> bool:
    if departure_date is None:
        return False
    return (departure_date - today).days <= URGENT_BOOKING_WINDOW_DAYS


def classify_urgency(drop: float, departure_date: Optional[date] = None, today: Optional[date] = None) -> str:
    today = today or date.today()
    if is_urgent_booking_window(departure_date, today) and drop >= URGENT_THRESHOLD:
        return URGENT
    if drop >= URGENT_THRESHOLD:
        return URGENT
    if drop >= SIGNIFICANT_THRESHOLD:
        return SIGNIFICANT
    if drop >= MINOR_THRESHOLD:
        return MINOR
    return NONE


def notifications_in_last_hour(alert: Alert, now: datetime) -> int:
    """Triggers handed to delivery in the trailing hour, plus untracked notifications."""
    cutoff = now - timedelta(hours=1)
    fired = 0
    for trigger in alert.triggers or []:
        dispatched_at = _parse_timestamp(trigger.get("dispatched_at"))
        if dispatched_at and dispatched_at > cutoff:
            fired += 1
    for entry in alert.notification_history or []:
        if entry.get("trigger_id"):
            continue
        timestamp = _parse_timestamp(entry.get("timestamp"))
        if timestamp and timestamp > cutoff:
            fired += 1
    return fired


def recently_notified_route(alert: Alert, route: str, now: datetime, hours: Optional[int] = None) -> bool:
    cutoff = now - timedelta(hours=hours or settings.same_route_cooldown_hours)
    for entry in alert.notification_history or []:
        timestamp = _parse_timestamp(entry.get("timestamp"))
        if not timestamp or timestamp <= cutoff:
            continue
        if entry.get("success") is True and route in (entry.get("content") or ""):
            return True
    return False


def duplicate_reasons(alert: Alert, now: datetime) -> List[str]:
    reasons = []
    fired = notifications_in_last_hour(alert, now)
    if fired >= settings.max_notifications_per_hour:
        reasons.append(f"Notification limit reached ({fired} in the last hour)")
    if recently_notified_route(alert, alert.route_description, now):
        reasons.append(f"Already notified about {alert.route_description} recently")
    return reasons


def price_trend_label(history: Optional[List[float]]) -> str:
    if not history or len(history) < 3:
        return "insufficient_data"
    recent = history[-7:]
    movement = sum((b > a) - (b < a) for a, b in zip(recent, recent[1:]))
    if movement < 0:
        return "declining"
    if movement > 0:
        return "rising"
    return "stable"


def booking_window_label(departure_date: Optional[date], today: date) -> Optional[str]:
    if departure_date is None:
        return None
    days = (departure_date - today).days
    if days <= 7:
        return "last_minute"
    if days <= 30:
        return "short_term"
    if days <= 90:
        return "medium_term"
    return "long_term"


def seasonal_label(departure_date: Optional[date]) -> Dict[str, Any]:
    if departure_date is None:
        return {}
    month = departure_date.month
    if month in (12, 1, 2):
        return {"season": "winter", "factor": "high_demand"}
    if month in (6, 7, 8):
        return {"season": "summer", "factor": "peak_travel"}
    if month in (3, 4, 5):
        return {"season": "spring", "factor": "moderate_demand"}
    return {"season": "fall", "factor": "moderate_demand"}


URGENCY_COPY = {
    URGENT: {
        "title": "URGENT: {route} - Save ${amount:.0f} ({percentage}% off)",
        "body": {
            "urgency_message": "This is a significant price drop! Book quickly as this price may not last long.",
            "time_sensitivity": "Price typically increases closer to departure",
            "recommendation": "Consider booking immediately",
        },
        "call_to_action": {
            "primary": "Book Now - Limited Time",
            "secondary": "View Details",
            "urgency": "This deal may not last long!",
        },
        "booking_recommendation": {
            "action": "book_immediately",
            "reason": "Significant price drop with limited time",
            "confidence": "high",
            "alternatives": ["Check multiple booking sites", "Consider flexible dates"],
        },
    },
    SIGNIFICANT: {
        "title": "Great Deal: {route} - Save ${amount:.0f}",
        "body": {
            "urgency_message": "This is a good deal worth considering.",
            "time_sensitivity": "Price may continue to fluctuate",
            "recommendation": "Review and book within 24 hours",
        },
        "call_to_action": {
            "primary": "Check This Deal",
            "secondary": "Set New Alert",
            "urgency": "Good savings opportunity",
        },
        "booking_recommendation": {
            "action": "book_soon",
            "reason": "Good deal worth considering",
            "confidence": "medium",
            "alternatives": ["Wait for better deal", "Set up additional alerts"],
        },
    },
    MINOR: {
        "title": "Price Drop: {route} - Save ${amount:.0f}",
        "body": {
            "urgency_message": "Small price drop detected.",
            "time_sensitivity": "Price may continue to drop",
            "recommendation": "Monitor for better deals",
        },
        "call_to_action": {
            "primary": "View Price History",
            "secondary": "Adjust Alert Settings",
            "urgency": "Monitor for better deals",
        },
        "booking_recommendation": {
            "action": "monitor",
            "reason": "Small drop, may continue declining",
            "confidence": "low",
            "alternatives": ["Adjust alert settings", "Wait for better deal"],
        },
    },
    NONE: {
        "title": "Price Update: {route}",
        "body": {},
        "call_to_action": {
            "primary": "View Details",
            "secondary": "Manage Alerts",
            "urgency": None,
        },
        "booking_recommendation": {
            "action": "no_action",
            "reason": "Price drop not significant enough",
            "confidence": "very_low",
            "alternatives": ["Adjust alert thresholds", "Monitor price trends"],
        },
    },
}


def generate_content(
    urgency: str,
    route: str,
    target_price: float,
    current_price: float,
    confidence: float,
    departure_date: Optional[date] = None,
    history: Optional[List[float]] = None,
    seasonal_factor: Optional[float] = None,
    today: Optional[date] = None,
) -> AlertContent:
    today = today or date.today()
    copy = URGENCY_COPY[urgency]
    amount = round(target_price - current_price, 2)
    percentage = round(amount / target_price * 100, 2) if target_price else 0.0

    body = {
        "route": route,
        "original_price": target_price,
        "current_price": current_price,
        "savings": {"amount": amount, "percentage": percentage},
        "departure_date": departure_date.strftime("%B %d, %Y") if departure_date else None,
        "confidence": f"{round(confidence * 100)}% confidence",
    }
    body.update(copy["body"])

    context = {
        "price_trend": price_trend_label(history),
        "historical_low": min(history) if history else None,
        "booking_window": booking_window_label(departure_date, today),
        "seasonal_factors": seasonal_label(departure_date),
        "seasonal_factor": seasonal_factor,
    }

    return AlertContent(
        urgency=urgency,
        title=copy["title"].format(route=route, amount=amount, percentage=percentage),
        body=body,
        call_to_action=dict(copy["call_to_action"]),
        context=context,
        booking_recommendation=dict(copy["booking_recommendation"]),
        confidence=confidence,
    )


def _to_local(now: datetime, tz_name: str) -> datetime:
    return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))


def _to_utc_naive(local: datetime) -> datetime:
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def _next_weekday_morning(local: datetime, hour: int) -> datetime:
    candidate = (local + timedelta(days=1)).replace(hour=hour, minute=0, second=0, microsecond=0)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def optimal_delivery_time(urgency: str, now: Optional[datetime] = None, tz_name: Optional[str] = None) -> Optional[datetime]:
    """
    When to deliver, as naive UTC. ``now`` is naive UTC; quiet hours and
    business hours are evaluated in ``tz_name``.
    """
    now = now or datetime.utcnow()
    local = _to_local(now, tz_name or settings.timezone)
    hour = local.hour

    if urgency == URGENT:
        return now

    if urgency == SIGNIFICANT:
        if hour >= 22:
            morning = (local + timedelta(days=1)).replace(hour=8, minute=0, second=0, microsecond=0)
            return _to_utc_naive(morning)
        if hour < 6:
            return _to_utc_naive(local.replace(hour=8, minute=0, second=0, microsecond=0))
        return now + timedelta(minutes=15)

    if urgency == MINOR:
        if 9 <= hour < 17:
            return now + timedelta(hours=1)
        if hour < 9 and local.weekday() < 5:
            return _to_utc_naive(local.replace(hour=9, minute=0, second=0, microsecond=0))
        return _to_utc_naive(_next_weekday_morning(local, 9))

    return None


class AlertIntelligence:
    """Decides whether and how an accepted break is delivered."""

    def evaluate(
        self,
        alert: Alert,
        current_price: float,
        confidence: float,
        history: Optional[List[float]] = None,
        seasonal_factor: Optional[float] = None,
        now: Optional[datetime] = None,
        tz_name: Optional[str] = None,
    ) -> IntelligenceDecision:
        now = now or datetime.utcnow()
        today = _to_local(now, tz_name or settings.timezone).date()

        if not current_price or current_price <= 0:
            return IntelligenceDecision(urgency=NONE, should_send=False, suppressed_reasons=["Invalid price"])

        drop = drop_percentage(alert.target_price, current_price, history)
        urgency = classify_urgency(drop, alert.departure_date, today=today)
        content = generate_content(
            urgency,
            route=alert.route_description,
            target_price=alert.target_price,
            current_price=current_price,
            confidence=confidence,
            departure_date=alert.departure_date,
            history=history,
            seasonal_factor=seasonal_factor,
            today=today,
        )
        decision = IntelligenceDecision(urgency=urgency, should_send=False, content=content, drop_percentage=drop)

        if urgency == NONE:
            decision.suppressed_reasons.append(f"Drop of {drop}% is below notification threshold")
            return decision

        decision.suppressed_reasons.extend(duplicate_reasons(alert, now))
        if decision.suppressed_reasons:
            logger.info(f"Alert {alert.id} suppressed: {'; '.join(decision.suppressed_reasons)}")
            return decision

        decision.should_send = True
        decision.deliver_at = optimal_delivery_time(urgency, now=now, tz_name=tz_name)
        return decision
