"""
Price-break detection.

For each candidate quote the detector checks the filter's criteria and
basic bounds, runs the spam pipeline, scores confidence against the
route's historical context and decides whether the quote is a
meaningful break. Every candidate's outcome is kept, not only the winner.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from farewatch.config import get_settings
from farewatch.models import CabinClass, MaxStops, SearchFilter
from farewatch.schemas import Quote
from farewatch.services.route_statistics import RouteStatistics, seasonal_price_floor
from farewatch.services.spam_prevention import SpamPreventionPipeline, SpamVerdict
from farewatch.utils import clamp_unit

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class BreakResult:
    quote: Quote
    is_price_break: bool = False
    false_positive_prevented: bool = False
    confidence: float = 0.0
    drop_amount: float = 0.0
    drop_percentage: float = 0.0
    vs_mean_percentage: float = 0.0
    vs_median_percentage: float = 0.0
    detection_reasons: List[str] = field(default_factory=list)
    rejection_reasons: List[str] = field(default_factory=list)
    spam: Optional[SpamVerdict] = None
    statistics: Optional[Dict[str, Any]] = None

    @property
    def price(self) -> float:
        return self.quote.price

    def as_dict(self) -> Dict[str, Any]:
        return {
            "price": self.quote.price,
            "provider": self.quote.provider,
            "is_price_break": self.is_price_break,
            "false_positive_prevented": self.false_positive_prevented,
            "confidence": round(self.confidence, 4),
            "drop_amount": round(self.drop_amount, 2),
            "drop_percentage": self.drop_percentage,
            "detection_reasons": list(self.detection_reasons),
            "rejection_reasons": list(self.rejection_reasons),
            "spam": self.spam.as_dict() if self.spam else None,
        }


@dataclass
class DetectionResult:
    results: List[BreakResult] = field(default_factory=list)
    detections: int = 0
    false_positives_prevented: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def breaks(self) -> List[BreakResult]:
        return [r for r in self.results if r.is_price_break]

    @property
    def best(self) -> Optional[BreakResult]:
        breaks = self.breaks
        return breaks[0] if breaks else None

    @property
    def success(self) -> bool:
        return not self.errors


def percentage_below(reference: float, price: float) -> float:
    if not reference or reference <= 0:
        return 0.0
    return round((reference - price) / reference * 100, 2)


def matches_filter_criteria(search_filter: SearchFilter, quote: Quote) -> List[str]:
    """Return the criteria the quote violates (empty if it matches)."""
    violations = []

    cabin = search_filter.cabin_class
    if cabin and cabin != CabinClass.ANY and quote.cabin_class:
        if quote.cabin_class != cabin.value:
            violations.append(f"Cabin class {quote.cabin_class} does not match {cabin.value}")

    max_stops = search_filter.max_stops
    if max_stops == MaxStops.NONSTOP and quote.stops > 0:
        violations.append(f"{quote.stops} stop(s) exceeds nonstop preference")
    elif max_stops == MaxStops.ONE_STOP and quote.stops > 1:
        violations.append(f"{quote.stops} stops exceeds one-stop preference")

    preferred = search_filter.airline_preferences or []
    if preferred and quote.airline and quote.airline not in preferred:
        violations.append(f"Airline {quote.airline} not in preferences")

    return violations


def calculate_confidence(
    price: float,
    drop_percentage: float,
    stats: RouteStatistics,
    spam_penalty: float = 0.0,
) -> float:
    """
    Confidence that a drop is real, in [0, 1].

    Starts at 0.5 and moves with drop size, discount to the historical
    mean, volatility, sample size and trend. The result is scaled by the
    route's data quality and reduced by the spam penalty.
    """
    score = 0.5
    score += min(max(drop_percentage, 0.0) / 100.0, 0.3)

    if stats.mean > 0 and price < stats.mean:
        score += min((stats.mean - price) / stats.mean, 0.2)

    if stats.volatility < 20:
        score += 0.1
    elif stats.volatility > 50:
        score -= 0.2

    if stats.count >= settings.ample_history_count:
        score += 0.1
    elif stats.count < settings.min_history_for_analysis:
        score -= 0.3

    # Buying into a rising market
    if stats.trend_direction == "increasing":
        score += 0.1

    score *= stats.data_quality_score
    score -= spam_penalty
    return clamp_unit(score, "confidence")


class PriceBreakDetector:
    def __init__(self, spam_pipeline: Optional[SpamPreventionPipeline] = None):
        self.spam_pipeline = spam_pipeline or SpamPreventionPipeline()

    def detect(
        self,
        search_filter: SearchFilter,
        quotes: List[Quote],
        stats: RouteStatistics,
        now: Optional[datetime] = None,
    ) -> DetectionResult:
        now = now or datetime.utcnow()
        result = DetectionResult()

        for quote in quotes:
            try:
                analysis = self.analyze_quote(search_filter, quote, stats, now=now)
            except Exception as e:
                result.errors.append(f"Error analyzing ${quote.price}: {e}")
                logger.error(f"Price break detection error for filter {search_filter.id}: {e}")
                continue

            result.results.append(analysis)
            if analysis.is_price_break:
                result.detections += 1
            elif analysis.false_positive_prevented:
                result.false_positives_prevented += 1

        result.results.sort(key=lambda r: (not r.is_price_break, -r.confidence))

        if result.detections:
            best = result.best
            logger.info(
                f"Filter {search_filter.id}: {result.detections} break(s), best ${best.price:.2f} "
                f"({best.drop_percentage}% drop, confidence {best.confidence:.2f})"
            )
        return result

    def analyze_quote(
        self,
        search_filter: SearchFilter,
        quote: Quote,
        stats: RouteStatistics,
        now: Optional[datetime] = None,
    ) -> BreakResult:
        result = BreakResult(quote=quote, statistics=stats.snapshot())
        price = quote.price

        if price < settings.price_floor:
            result.rejection_reasons.append("Price below minimum threshold")
            return result
        if price > settings.price_ceiling:
            result.rejection_reasons.append("Price above maximum threshold")
            return result

        violations = matches_filter_criteria(search_filter, quote)
        if violations:
            result.rejection_reasons.extend(violations)
            return result

        verdict = self.spam_pipeline.evaluate(quote, search_filter, stats, now=now)
        result.spam = verdict
        if verdict.is_spam:
            result.false_positive_prevented = True
            result.rejection_reasons.extend(verdict.reasons)
            return result

        target = search_filter.target_price
        result.drop_amount = target - price
        result.drop_percentage = percentage_below(target, price)
        result.vs_mean_percentage = percentage_below(stats.mean, price)
        result.vs_median_percentage = percentage_below(stats.median, price)
        result.confidence = calculate_confidence(
            price, result.drop_percentage, stats, spam_penalty=verdict.confidence_penalty
        )

        if result.drop_percentage >= 10:
            result.detection_reasons.append(f"Significant price drop ({result.drop_percentage}%)")
        if result.vs_mean_percentage >= 15:
            result.detection_reasons.append(f"Well below historical average ({result.vs_mean_percentage}%)")
        if stats.min_price and price <= stats.min_price * 1.1:
            result.detection_reasons.append("Near historical minimum")

        result.rejection_reasons.extend(self._break_blockers(search_filter, result, stats))
        result.is_price_break = not result.rejection_reasons
        return result

    def _break_blockers(self, search_filter: SearchFilter, result: BreakResult, stats: RouteStatistics) -> List[str]:
        blockers = []

        min_drop = search_filter.min_drop_percentage
        if min_drop is None:
            min_drop = settings.min_drop_percentage
        min_confidence = search_filter.min_confidence
        if min_confidence is None:
            min_confidence = settings.min_confidence

        if result.drop_percentage <= 0:
            blockers.append("Price is not below target")
            return blockers
        if result.drop_percentage < min_drop:
            blockers.append(f"Drop {result.drop_percentage}% below minimum {min_drop}%")
        if result.confidence < min_confidence:
            blockers.append(f"Confidence {result.confidence:.2f} below minimum {min_confidence}")
        if stats.data_quality_score < settings.min_data_quality:
            blockers.append(f"Data quality {stats.data_quality_score:.2f} too low")
        if result.drop_percentage > settings.max_drop_percentage:
            blockers.append(f"Implausible drop ({result.drop_percentage}%)")
        if stats.recent_drops > settings.max_recent_drops:
            blockers.append(f"Too many recent drops ({stats.recent_drops})")

        floor = seasonal_price_floor(stats)
        if floor is not None and result.quote.price < floor:
            blockers.append(f"Below seasonal price floor (${floor:.2f})")

        return blockers
