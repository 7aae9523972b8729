"""
Monitoring orchestrator and adaptive scheduler.

Each tick selects due filters by priority, checks them with bounded
concurrency, persists observations and alert records, hands accepted
breaks to the delivery channel without waiting for it, and reschedules
every filter it touched.

All database work for one filter happens in a single synchronous block
after the quote fetch, so a shared session is never left with another
filter's uncommitted changes across an ``await``.
"""

import asyncio
import enum
import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farewatch.config import get_settings
from farewatch.models import Alert, AlertStatus, CabinClass, MaxStops, MonitorFrequency, SearchFilter
from farewatch.schemas import Quote
from farewatch.services.alert_intelligence import AlertContent, AlertIntelligence
from farewatch.services.cache import StatsCache
from farewatch.services.notification import DeliveryChannel, DeliveryOutcome
from farewatch.services.price_break_detector import DetectionResult, PriceBreakDetector
from farewatch.services.quote_source import ERROR, FetchCriteria, ProviderError, QuoteSource
from farewatch.services.repository import MonitoringRepository
from farewatch.services.route_statistics import RouteStatistics, RouteStatisticsEngine
from farewatch.services.spam_prevention import SpamPreventionPipeline

logger = logging.getLogger(__name__)
settings = get_settings()

BASE_INTERVALS = {
    MonitorFrequency.REAL_TIME: timedelta(minutes=30),
    MonitorFrequency.HOURLY: timedelta(hours=1),
    MonitorFrequency.DAILY: timedelta(hours=24),
    MonitorFrequency.WEEKLY: timedelta(days=7),
}
DEFAULT_INTERVAL = timedelta(hours=6)
URGENT_INTERVAL_CAP = timedelta(hours=1)
BREAK_INTERVAL_CAP = timedelta(hours=2)


class FilterNotFoundError(LookupError):
    pass


class FilterCheckState(str, enum.Enum):
    IDLE = "idle"
    DUE = "due"
    CHECKING = "checking"
    TRIGGERED = "triggered"


@dataclass
class FilterCheckResult:
    filter_id: int
    state: FilterCheckState = FilterCheckState.DUE
    quotes_fetched: int = 0
    provider_errors: List[ProviderError] = field(default_factory=list)
    detection: Optional[DetectionResult] = None
    break_detected: bool = False
    dispatched: bool = False
    suppressed_reasons: List[str] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    next_check_at: Optional[datetime] = None
    discarded: bool = False
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class TickResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[FilterCheckResult] = field(default_factory=list)

    @property
    def checked(self) -> int:
        return sum(1 for r in self.results if not (r.discarded or r.skipped))

    @property
    def breaks(self) -> int:
        return sum(1 for r in self.results if r.break_detected)

    @property
    def dispatched(self) -> int:
        return sum(1 for r in self.results if r.dispatched)

    @property
    def failures(self) -> Dict[int, str]:
        return {r.filter_id: r.error for r in self.results if r.error}

    @property
    def success(self) -> bool:
        return not self.failures


@dataclass
class PendingDelivery:
    filter_id: int
    alert_id: int
    trigger_id: str
    urgency: str
    content: AlertContent
    deliver_at: Optional[datetime]


class KeyedLock:
    """One asyncio lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, key) -> asyncio.Lock:
        return self._locks[key]


def calculate_priority_score(search_filter: SearchFilter, today: Optional[date] = None) -> float:
    """Higher for urgent, narrow and high-value filters."""
    score = 0.0
    if search_filter.is_urgent(today=today):
        score += 50

    if search_filter.airline_preferences:
        score += 5
    if search_filter.max_stops not in (None, MaxStops.ANY):
        score += 5
    if search_filter.cabin_class not in (None, CabinClass.ANY, CabinClass.ECONOMY):
        score += 5
    if 0 < len(search_filter.departure_dates_list) <= 2:
        score += 5

    score += min((search_filter.target_price or 0) / 100, 30)
    return round(score, 2)


def next_check_interval(
    search_filter: SearchFilter,
    break_detected: bool = False,
    today: Optional[date] = None,
    rng: Optional[random.Random] = None,
) -> timedelta:
    """
    Base interval from the monitor frequency, tightened for urgent filters
    and fresh breaks, then jittered upwards by 10-30%.

    Caps are applied before jitter against ``cap / (1 + jitter_max)`` so the
    jittered interval still never exceeds the cap.
    """
    rng = rng or random
    interval = BASE_INTERVALS.get(search_filter.monitor_frequency, DEFAULT_INTERVAL)

    caps = []
    if search_filter.is_urgent(today=today):
        caps.append(URGENT_INTERVAL_CAP)
    if break_detected:
        caps.append(BREAK_INTERVAL_CAP)
    if caps:
        interval = min(interval, min(caps) / (1 + settings.jitter_max))

    return interval * (1 + rng.uniform(settings.jitter_min, settings.jitter_max))


def is_calendar_year(price: float) -> bool:
    # Scrapers occasionally pick up the year instead of the fare
    return float(price).is_integer() and 1900 <= price <= 2100


class MonitoringOrchestrator:
    def __init__(
        self,
        db: Session,
        quote_source: QuoteSource,
        delivery: Optional[DeliveryChannel] = None,
        executor=None,
        stats_cache: Optional[StatsCache] = None,
        max_concurrency: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.quote_source = quote_source
        self.delivery = delivery
        self.executor = executor
        self.repository = MonitoringRepository(db)
        self.statistics = RouteStatisticsEngine(db, cache=stats_cache)
        self.spam = SpamPreventionPipeline(history=self.repository)
        self.detector = PriceBreakDetector(self.spam)
        self.intelligence = AlertIntelligence()
        self.locks = locks or KeyedLock()
        self.max_concurrency = max_concurrency or settings.max_concurrent_checks
        self.rng = rng or random.Random()
        self._pending_deliveries: set = set()

    # Ticks

    async def run_tick(self, now: Optional[datetime] = None, urgent_only: bool = False) -> TickResult:
        now = now or datetime.utcnow()
        tick = TickResult(started_at=now)

        due = self.repository.due_filters(now, urgent_only=urgent_only)
        for search_filter in due:
            search_filter.priority_score = calculate_priority_score(search_filter, today=now.date())
        self.db.commit()

        ordered = sorted(due, key=lambda f: f.priority_score, reverse=True)
        filter_ids = [f.id for f in ordered]
        logger.info(f"Starting {'urgent ' if urgent_only else ''}monitoring tick for {len(filter_ids)} filters")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def worker(filter_id: int) -> FilterCheckResult:
            async with semaphore:
                try:
                    return await self._check(filter_id, now=now, force=False)
                except Exception as e:
                    self.db.rollback()
                    logger.exception(f"Unexpected error checking filter {filter_id}")
                    return FilterCheckResult(filter_id=filter_id, error=f"Unexpected error: {e}")

        tick.results = list(await asyncio.gather(*(worker(fid) for fid in filter_ids)))
        tick.finished_at = datetime.utcnow()

        logger.info(
            f"Monitoring tick complete: {tick.checked} checked, {tick.breaks} breaks, "
            f"{tick.dispatched} dispatched, {len(tick.failures)} failures"
        )
        return tick

    async def run_urgent_tick(self, now: Optional[datetime] = None) -> TickResult:
        return await self.run_tick(now=now, urgent_only=True)

    async def check_filter(
        self, filter_id: int, now: Optional[datetime] = None, force: bool = True
    ) -> FilterCheckResult:
        """Check one filter now. With ``force=False`` a filter that is not yet due is skipped."""
        if self.repository.get_filter(filter_id) is None:
            raise FilterNotFoundError(f"Search filter {filter_id} not found")
        return await self._check(filter_id, now=now, force=force)

    # Single filter

    async def _check(self, filter_id: int, now: Optional[datetime] = None, force: bool = False) -> FilterCheckResult:
        result = FilterCheckResult(filter_id=filter_id)

        async with self.locks.lock(filter_id):
            try:
                search_filter = self.repository.get_filter(filter_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                result.error = f"Failed to load filter: {e}"
                logger.error(f"Failed to load filter {filter_id}: {e}")
                return result

            if search_filter is None or not search_filter.is_active:
                result.discarded = True
                return result

            check_time = now or datetime.utcnow()
            if not force and search_filter.next_check_at and search_filter.next_check_at > check_time:
                # Already checked by an overlapping run
                result.skipped = True
                result.state = FilterCheckState.IDLE
                return result

            errors = search_filter.validation_errors()
            if errors:
                result.validation_errors = errors
                logger.warning(f"Filter {filter_id} has invalid criteria: {'; '.join(errors)}")
                self._reschedule_after_failure(
                    search_filter, result, check_time, timedelta(hours=settings.no_data_retry_hours)
                )
                return result

            result.state = FilterCheckState.CHECKING
            criteria = FetchCriteria.from_filter(search_filter)
            try:
                quotes, provider_errors = await self.quote_source.fetch_quotes(criteria)
            except Exception as e:
                logger.error(f"Quote fetch failed for filter {filter_id}: {e}")
                quotes, provider_errors = [], [ProviderError("quote_source", ERROR, str(e))]
            result.quotes_fetched = len(quotes)
            result.provider_errors = provider_errors

            check_time = now or datetime.utcnow()
            pending = None
            try:
                if not self.repository.is_active(filter_id):
                    logger.info(f"Filter {filter_id} deactivated during fetch; discarding results")
                    result.discarded = True
                    return result
                self.db.refresh(search_filter)
                pending = self._process(search_filter, quotes, result, check_time)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                result.error = f"Persistence error: {e}"
                result.break_detected = False
                logger.error(f"Persistence error for filter {filter_id}: {e}")
                self._reschedule_after_failure(
                    search_filter, result, check_time, timedelta(minutes=settings.persistence_retry_minutes)
                )
                return result
            except Exception as e:
                self.db.rollback()
                result.error = f"Processing error: {e}"
                result.break_detected = False
                logger.exception(f"Error processing filter {filter_id}")
                self._reschedule_after_failure(
                    search_filter, result, check_time, timedelta(minutes=settings.persistence_retry_minutes)
                )
                return result

        if pending is not None:
            self._dispatch(pending)
            result.dispatched = True
        if self.executor is not None and result.next_check_at is not None:
            self.executor.schedule(filter_id, result.next_check_at)
        return result

    def _process(
        self,
        search_filter: SearchFilter,
        quotes: List[Quote],
        result: FilterCheckResult,
        now: datetime,
    ) -> Optional[PendingDelivery]:
        route = search_filter.route_description
        search_filter.last_checked_at = now
        alert = self.repository.get_or_create_alert(search_filter)
        alert.last_checked_at = now
        search_filter.priority_score = calculate_priority_score(search_filter, today=now.date())

        if not quotes:
            logger.info(f"No usable quotes for filter {search_filter.id}; retrying later")
            self._schedule(search_filter, result, now + timedelta(hours=settings.no_data_retry_hours), now)
            result.state = FilterCheckState.IDLE
            return None

        stats = self.statistics.get_statistics(
            route, departure_date=search_filter.earliest_departure, now=now
        )

        suspicious = [i for i, quote in enumerate(quotes) if self._is_anomalous(quote, search_filter, stats, now)]
        self.repository.store_observations(search_filter, quotes, suspicious)
        self.statistics.invalidate(route)

        detection = self.detector.detect(search_filter, quotes, stats, now=now)
        result.detection = detection
        best = detection.best

        pending = None
        if best is not None:
            result.break_detected = True
            result.state = FilterCheckState.TRIGGERED
            pending = self._record_break(search_filter, alert, best, stats, result, now)
        else:
            result.state = FilterCheckState.IDLE
            lowest = min(quote.price for quote in quotes)
            alert.current_price = lowest
            if alert.status == AlertStatus.TRIGGERED and lowest >= alert.target_price:
                alert.status = AlertStatus.ACTIVE

        interval = next_check_interval(
            search_filter, break_detected=result.break_detected, today=now.date(), rng=self.rng
        )
        self._schedule(search_filter, result, now + interval, now)
        return pending

    def _record_break(self, search_filter, alert: Alert, best, stats: RouteStatistics, result, now) -> Optional[PendingDelivery]:
        entry = alert.append_trigger(
            price=best.price,
            provider=best.quote.provider,
            confidence=best.confidence,
            reasons=best.detection_reasons,
            drop_amount=best.drop_amount,
            drop_percentage=best.drop_percentage,
            quote=best.quote.audit_dict(),
            statistics=best.statistics or stats.snapshot(),
            timestamp=now,
        )
        alert.status = AlertStatus.TRIGGERED
        alert.current_price = best.price
        alert.target_price = search_filter.target_price
        alert.price_drop_amount = best.drop_amount
        alert.price_drop_percentage = best.drop_percentage
        alert.last_triggered_at = now

        decision = self.intelligence.evaluate(
            alert,
            current_price=best.price,
            confidence=best.confidence,
            history=stats.recent_prices,
            seasonal_factor=stats.seasonal_factor,
            now=now,
            tz_name=search_filter.timezone,
        )
        result.suppressed_reasons = decision.suppressed_reasons
        if not decision.should_send:
            return None

        if not alert.mark_trigger_dispatched(entry["id"], decision.urgency, decision.deliver_at):
            return None

        self.db.flush()
        return PendingDelivery(
            filter_id=search_filter.id,
            alert_id=alert.id,
            trigger_id=entry["id"],
            urgency=decision.urgency,
            content=decision.content,
            deliver_at=decision.deliver_at,
        )

    def _is_anomalous(self, quote: Quote, search_filter: SearchFilter, stats: RouteStatistics, now: datetime) -> bool:
        if is_calendar_year(quote.price):
            return True
        return self.spam.check_price_realism(quote, search_filter, stats, now).flagged

    def _schedule(self, search_filter: SearchFilter, result: FilterCheckResult, next_check_at: datetime, now: datetime):
        if next_check_at <= now:
            next_check_at = now + timedelta(minutes=1)
        search_filter.next_check_at = next_check_at
        result.next_check_at = next_check_at

    def _reschedule_after_failure(self, search_filter, result: FilterCheckResult, now: datetime, interval: timedelta):
        try:
            search_filter.last_checked_at = now
            self._schedule(search_filter, result, now + interval, now)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not reschedule filter {result.filter_id}: {e}")
        result.state = FilterCheckState.IDLE

    # Delivery

    def _dispatch(self, pending: PendingDelivery) -> None:
        if self.delivery is None:
            logger.warning(f"No delivery channel configured; alert {pending.alert_id} not sent")
            return
        task = asyncio.create_task(self._deliver(pending))
        self._pending_deliveries.add(task)
        task.add_done_callback(self._pending_deliveries.discard)

    async def _deliver(self, pending: PendingDelivery) -> None:
        alert = self.repository.get_alert(pending.alert_id)
        try:
            outcomes = await self.delivery.deliver(alert, pending.urgency, pending.content, pending.deliver_at)
        except Exception as e:
            logger.error(f"Delivery failed for alert {pending.alert_id}: {e}")
            outcomes = [DeliveryOutcome(
                channel=type(self.delivery).__name__,
                success=False,
                content=pending.content.summary,
                error=str(e),
            )]

        async with self.locks.lock(pending.filter_id):
            try:
                alert = self.repository.get_alert(pending.alert_id)
                if alert is None:
                    return
                for outcome in outcomes:
                    alert.record_notification(
                        channel=outcome.channel,
                        content=outcome.content,
                        success=outcome.success,
                        trigger_id=pending.trigger_id,
                        timestamp=outcome.timestamp,
                        error=outcome.error,
                    )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Could not record delivery outcome for alert {pending.alert_id}: {e}")

    async def drain_deliveries(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending_deliveries:
            await asyncio.gather(*list(self._pending_deliveries), return_exceptions=True)

    # Stats

    def monitoring_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        hour_ago = now - timedelta(hours=1)
        last_check = self.repository.last_check_time()
        average_quality = self.repository.average_quality_score()
        return {
            "active_filters": self.repository.active_filter_count(),
            "total_alerts": self.repository.alert_count(),
            "triggered_alerts": self.repository.triggered_alert_count(),
            "filters_checked_last_hour": self.repository.checks_since(hour_ago),
            "recent_price_checks": self.repository.observation_count_since(hour_ago),
            "last_check_at": last_check.isoformat() if last_check else None,
            "average_quality_score": round(average_quality, 3) if average_quality is not None else None,
            "pending_deliveries": len(self._pending_deliveries),
            "rate_limits": self.quote_source.rate_limiter.status(),
            "system_health": self.system_health(now),
        }

    def system_health(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        last_check = self.repository.last_check_time()
        if last_check is None or last_check < now - timedelta(hours=1):
            return "unhealthy"

        total = self.repository.alert_count()
        low_quality = self.repository.low_quality_alert_total(below=0.5)
        error_rate = low_quality / total if total else 0.0
        if error_rate > 0.5:
            return "unhealthy"
        if error_rate > 0.2:
            return "degraded"
        return "healthy"
