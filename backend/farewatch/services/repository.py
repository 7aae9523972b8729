"""
Persistence for the monitoring pipeline.

Wraps a SQLAlchemy session with the reads and writes the orchestrator
needs: due filters, observation storage and cleanup, alert records, and
the history counts consumed by the spam checks.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from farewatch.config import get_settings
from farewatch.models import (
    Alert,
    AlertStatus,
    PriceObservation,
    SearchFilter,
    ValidationStatus,
)
from farewatch.models.price_observation import observation_quality_score
from farewatch.schemas import Quote
from farewatch.services.spam_prevention import ProviderStats

logger = logging.getLogger(__name__)
settings = get_settings()


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def _count_triggers_since(alerts: Iterable[Alert], since: datetime) -> int:
    count = 0
    for alert in alerts:
        for entry in alert.triggers or []:
            timestamp = _parse_timestamp(entry.get("timestamp"))
            if timestamp and timestamp >= since:
                count += 1
    return count


class MonitoringRepository:
    def __init__(self, db: Session):
        self.db = db

    # Filters

    def get_filter(self, filter_id: int) -> Optional[SearchFilter]:
        return self.db.query(SearchFilter).filter(SearchFilter.id == filter_id).first()

    def due_filters(self, now: datetime, urgent_only: bool = False) -> List[SearchFilter]:
        query = self.db.query(SearchFilter).filter(
            SearchFilter.is_active == True,
            (SearchFilter.next_check_at == None) | (SearchFilter.next_check_at <= now),
        )
        filters = query.all()
        if urgent_only:
            filters = [f for f in filters if f.is_urgent(today=now.date())]
        return filters

    def is_active(self, filter_id: int) -> bool:
        is_active = self.db.query(SearchFilter.is_active).filter(SearchFilter.id == filter_id).scalar()
        return bool(is_active)

    # Observations

    def store_observations(
        self,
        search_filter: SearchFilter,
        quotes: List[Quote],
        suspicious: Iterable[int] = (),
    ) -> List[PriceObservation]:
        """Append one observation per quote; indexes in ``suspicious`` are stored flagged."""
        suspicious = set(suspicious)
        observations = []
        for index, quote in enumerate(quotes):
            status = ValidationStatus.SUSPICIOUS if index in suspicious else ValidationStatus.VALID
            observation = PriceObservation(
                filter_id=search_filter.id,
                route=search_filter.route_description,
                departure_date=quote.departure_date or search_filter.earliest_departure,
                provider=quote.provider,
                price=quote.price,
                currency=quote.currency,
                cabin_class=quote.cabin_class,
                airline=quote.airline,
                flight_number=quote.flight_number,
                stops=quote.stops,
                observed_at=quote.observed_at,
                validation_status=status,
                data_quality_score=observation_quality_score(status, quote.observed_at),
                raw_data=quote.audit_dict(),
            )
            self.db.add(observation)
            observations.append(observation)
        return observations

    def cleanup_old_observations(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        days = days or settings.observation_retention_days
        cutoff = (now or datetime.utcnow()) - timedelta(days=days)
        deleted = self.db.query(PriceObservation).filter(
            PriceObservation.observed_at < cutoff
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Deleted {deleted} observations older than {days} days")
        return deleted

    # Alerts

    def get_or_create_alert(self, search_filter: SearchFilter) -> Alert:
        """The filter's alert, with route, departure and target copied from the current criteria."""
        alert = self.db.query(Alert).filter(Alert.filter_id == search_filter.id).first()
        if alert is not None:
            synced = {
                "route_description": search_filter.route_description,
                "departure_date": search_filter.earliest_departure,
                "target_price": search_filter.target_price,
            }
            for name, value in synced.items():
                if getattr(alert, name) != value:
                    setattr(alert, name, value)
        else:
            alert = Alert(
                filter_id=search_filter.id,
                route_description=search_filter.route_description,
                departure_date=search_filter.earliest_departure,
                target_price=search_filter.target_price,
                status=AlertStatus.ACTIVE,
                triggers=[],
                notification_history=[],
            )
            self.db.add(alert)
            self.db.flush()
        return alert

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        return self.db.query(Alert).filter(Alert.id == alert_id).first()

    def expire_past_alerts(self, today: Optional[date] = None) -> int:
        """Expire alerts whose filter has no departure date left in the future."""
        today = today or date.today()
        expired = 0
        alerts = self.db.query(Alert).filter(Alert.status != AlertStatus.EXPIRED).all()
        for alert in alerts:
            dates = alert.search_filter.departure_dates_list if alert.search_filter else []
            if dates and dates[-1] < today:
                alert.status = AlertStatus.EXPIRED
                expired += 1
        self.db.commit()
        if expired:
            logger.info(f"Expired {expired} alerts with past departure dates")
        return expired

    # History counts used by the spam checks

    def filter_trigger_count(self, filter_id: int, since: datetime) -> int:
        alerts = self.db.query(Alert).filter(Alert.filter_id == filter_id).all()
        return _count_triggers_since(alerts, since)

    def route_trigger_count(self, route: str, since: datetime) -> int:
        alerts = self.db.query(Alert).filter(
            Alert.route_description == route,
            Alert.last_triggered_at >= since,
        ).all()
        return _count_triggers_since(alerts, since)

    def provider_stats(self, provider: str, since: datetime) -> ProviderStats:
        rows = self.db.query(
            PriceObservation.validation_status,
            func.count(PriceObservation.id),
        ).filter(
            PriceObservation.provider == provider,
            PriceObservation.observed_at >= since,
        ).group_by(PriceObservation.validation_status).all()

        counts = {status: count for status, count in rows}
        return ProviderStats(
            provider=provider,
            total=sum(counts.values()),
            valid=counts.get(ValidationStatus.VALID, 0),
        )

    def low_quality_alert_count(self, route: str, since: datetime, below: float) -> int:
        return self.db.query(func.count(Alert.id)).filter(
            Alert.route_description == route,
            Alert.last_triggered_at >= since,
            Alert.quality_score < below,
        ).scalar() or 0

    # Monitoring stats

    def active_filter_count(self) -> int:
        return self.db.query(func.count(SearchFilter.id)).filter(SearchFilter.is_active == True).scalar() or 0

    def triggered_alert_count(self) -> int:
        return self.db.query(func.count(Alert.id)).filter(Alert.status == AlertStatus.TRIGGERED).scalar() or 0

    def checks_since(self, since: datetime) -> int:
        return self.db.query(func.count(SearchFilter.id)).filter(
            SearchFilter.last_checked_at >= since
        ).scalar() or 0

    def observation_count_since(self, since: datetime) -> int:
        return self.db.query(func.count(PriceObservation.id)).filter(
            PriceObservation.observed_at >= since
        ).scalar() or 0

    def last_check_time(self) -> Optional[datetime]:
        return self.db.query(func.max(SearchFilter.last_checked_at)).scalar()

    def alert_count(self) -> int:
        return self.db.query(func.count(Alert.id)).scalar() or 0

    def low_quality_alert_total(self, below: float = 0.3) -> int:
        return self.db.query(func.count(Alert.id)).filter(Alert.quality_score < below).scalar() or 0

    def average_quality_score(self) -> Optional[float]:
        return self.db.query(func.avg(Alert.quality_score)).scalar()
