"""
Longer-horizon quality scoring for alerts.

The score is a weighted blend of price accuracy, notification success,
engagement, data freshness and short-term delivery trend. Scores are
recomputed on a schedule (see ``farewatch.scheduler``) or on demand.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farewatch.config import get_settings
from farewatch.models import Alert, AlertStatus
from farewatch.utils import clamp_unit

logger = logging.getLogger(__name__)
settings = get_settings()

WEIGHTS = {
    "price_accuracy": 0.30,
    "notification_success": 0.25,
    "engagement": 0.20,
    "data_freshness": 0.15,
    "trend": 0.10,
}

RECENT_NOTIFICATION_WINDOW = 10


def price_accuracy_score(current_price: Optional[float], target_price: Optional[float]) -> float:
    if not current_price or not target_price:
        return 0.5
    ratio = current_price / target_price
    if ratio <= 0.5:
        return 1.0
    if ratio <= 0.7:
        return 0.8
    if ratio <= 0.9:
        return 0.6
    if ratio <= 1.1:
        return 0.4
    return 0.2


def notification_success_rate(history: Optional[List[Dict[str, Any]]]) -> float:
    if not history:
        return 0.5
    successes = sum(1 for entry in history if entry.get("success") is True)
    return successes / len(history)


def engagement_score(alert: Alert, now: datetime) -> float:
    score = 0.0
    if alert.status == AlertStatus.TRIGGERED:
        score += 0.3
    if alert.last_checked_at and alert.last_checked_at > now - timedelta(weeks=1):
        score += 0.3
    if alert.quality_score is not None and alert.quality_score > 0.7:
        score += 0.4
    return score


def data_freshness_score(last_checked_at: Optional[datetime], now: datetime) -> float:
    if last_checked_at is None:
        return 0.0
    hours = (now - last_checked_at).total_seconds() / 3600
    if hours <= 1:
        return 1.0
    if hours <= 6:
        return 0.8
    if hours <= 24:
        return 0.6
    if hours <= 72:
        return 0.4
    return 0.2


def trend_score(history: Optional[List[Dict[str, Any]]]) -> float:
    """Compare the last ten deliveries with the overall success rate."""
    if not history:
        return 0.5
    recent = notification_success_rate(history[-RECENT_NOTIFICATION_WINDOW:])
    overall = notification_success_rate(history)
    if recent > overall:
        return 0.8
    if recent == overall:
        return 0.6
    return 0.4


def quality_level(score: float) -> str:
    if score >= 0.9:
        return "excellent"
    if score >= 0.8:
        return "very_good"
    if score >= 0.7:
        return "good"
    if score >= 0.6:
        return "fair"
    if score >= 0.5:
        return "poor"
    return "very_poor"


@dataclass
class QualityAnalysis:
    overall_score: float
    components: Dict[str, Dict[str, float]]
    recommendations: List[Dict[str, str]] = field(default_factory=list)

    @property
    def level(self) -> str:
        return quality_level(self.overall_score)


@dataclass
class QualityUpdate:
    alert_id: int
    old_score: float
    new_score: float

    @property
    def change(self) -> float:
        return self.new_score - self.old_score

    @property
    def improved(self) -> bool:
        return self.change > settings.quality_change_threshold


@dataclass
class BatchQualityResult:
    updated: int = 0
    improvements: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class AlertQualityScorer:
    def __init__(self, notifier=None):
        self.notifier = notifier

    def component_scores(self, alert: Alert, now: Optional[datetime] = None) -> Dict[str, float]:
        now = now or datetime.utcnow()
        history = alert.notification_history or []
        return {
            "price_accuracy": price_accuracy_score(alert.current_price, alert.target_price),
            "notification_success": notification_success_rate(history),
            "engagement": engagement_score(alert, now),
            "data_freshness": data_freshness_score(alert.last_checked_at, now),
            "trend": trend_score(history),
        }

    def calculate(self, alert: Alert, now: Optional[datetime] = None) -> float:
        components = self.component_scores(alert, now)
        weighted = sum(components[name] * weight for name, weight in WEIGHTS.items())
        return round(clamp_unit(weighted, f"quality score for alert {alert.id}"), 3)

    def analyze(self, alert: Alert, now: Optional[datetime] = None) -> QualityAnalysis:
        components = self.component_scores(alert, now)
        recommendations = []

        if components["price_accuracy"] < 0.7:
            recommendations.append({
                "category": "price_accuracy",
                "priority": "high",
                "message": "Consider adjusting price target or checking data sources",
                "action": "review_price_settings",
            })
        if components["notification_success"] < 0.8:
            recommendations.append({
                "category": "notifications",
                "priority": "medium",
                "message": "Check notification settings and delivery channels",
                "action": "review_notification_settings",
            })
        if components["engagement"] < 0.6:
            recommendations.append({
                "category": "engagement",
                "priority": "medium",
                "message": "Alert may not be relevant - consider updating criteria",
                "action": "review_alert_criteria",
            })
        if components["data_freshness"] < 0.5:
            recommendations.append({
                "category": "data_freshness",
                "priority": "high",
                "message": "Alert data is stale - check monitoring frequency",
                "action": "increase_monitoring_frequency",
            })

        return QualityAnalysis(
            overall_score=self.calculate(alert, now),
            components={
                name: {"score": score, "weight": WEIGHTS[name]}
                for name, score in components.items()
            },
            recommendations=recommendations,
        )

    def update(self, alert: Alert, now: Optional[datetime] = None) -> QualityUpdate:
        """Recompute and store the score on the alert (caller commits)."""
        old_score = alert.quality_score or 0.0
        new_score = self.calculate(alert, now)
        alert.quality_score = new_score

        result = QualityUpdate(alert_id=alert.id, old_score=old_score, new_score=new_score)
        if abs(result.change) > settings.quality_change_threshold:
            logger.info(f"Alert {alert.id} quality score changed from {old_score} to {new_score}")
        return result

    async def notify_improvement(self, alert: Alert, update: QualityUpdate) -> bool:
        if self.notifier is None:
            return False
        level = quality_level(update.new_score).replace("_", " ")
        return await self.notifier.send_system_alert(
            title="Alert Quality Improved",
            message=(
                f"Your alert for {alert.route_description} has improved to {level} quality "
                f"({update.old_score:.2f} -> {update.new_score:.2f})"
            ),
            priority="low",
            alert_type="info",
        )

    async def batch_update(
        self,
        db: Session,
        alert_ids: Optional[List[int]] = None,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> BatchQualityResult:
        """Re-score alerts in id-ordered chunks, committing once per chunk."""
        now = now or datetime.utcnow()
        batch_size = batch_size or settings.quality_batch_size
        result = BatchQualityResult()
        last_id = 0

        while True:
            query = db.query(Alert).filter(Alert.id > last_id)
            if alert_ids is not None:
                query = query.filter(Alert.id.in_(alert_ids))
            chunk = query.order_by(Alert.id).limit(batch_size).all()
            if not chunk:
                break
            last_id = chunk[-1].id
            chunk_ids = [alert.id for alert in chunk]

            improved = []
            updated = 0
            for alert in chunk:
                try:
                    update = self.update(alert, now)
                except Exception as e:
                    result.errors.append({"alert_id": alert.id, "error": str(e)})
                    logger.error(f"Failed to score alert {alert.id}: {e}")
                    continue
                updated += 1
                if update.improved:
                    improved.append((alert, update))

            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to store quality scores for alerts up to {last_id}: {e}")
                result.errors.extend({"alert_id": alert_id, "error": str(e)} for alert_id in chunk_ids)
                continue

            result.updated += updated
            for alert, update in improved:
                result.improvements += 1
                await self.notify_improvement(alert, update)

        logger.info(
            f"Quality update completed: {result.updated} updated, "
            f"{result.improvements} improved, {len(result.errors)} errors"
        )
        return result
