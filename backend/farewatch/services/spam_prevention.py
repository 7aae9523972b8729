"""
Spam and anomaly prevention for incoming quotes.

Eight independent heuristics run in a fixed order against a quote, its
filter and the route statistics snapshot. Each check returns a
``CheckResult``; flagged checks contribute their penalty to a single
confidence penalty (capped at 1.0) and their reasons to the verdict.

A check that fails internally is logged and skipped. It is never
counted as a flag.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from farewatch.config import get_settings
from farewatch.models import SearchFilter
from farewatch.schemas import Quote
from farewatch.services.route_statistics import RouteStatistics

logger = logging.getLogger(__name__)
settings = get_settings()

COMMON_PRICE_POINTS = [299, 399, 499, 599, 699, 799, 899, 999, 1299, 1499, 1999]
PSYCHOLOGICAL_PRICE_POINTS = [99, 199, 299, 399, 499, 599, 699, 799, 899, 999]
LOW_QUALITY_ALERT_SCORE = 0.3
LOW_QUALITY_ALERT_LIMIT = 3
MAX_PENALTY = 1.0


@dataclass
class CheckResult:
    name: str
    flagged: bool = False
    reasons: List[str] = field(default_factory=list)
    penalty: float = 0.0

    def flag(self, reason: str, penalty: float) -> None:
        self.flagged = True
        self.reasons.append(reason)
        self.penalty += penalty


@dataclass
class SpamVerdict:
    is_spam: bool
    confidence_penalty: float
    reasons: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)
    skipped_checks: List[str] = field(default_factory=list)

    @property
    def flagged_checks(self) -> List[str]:
        return [c.name for c in self.checks if c.flagged]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "is_spam": self.is_spam,
            "confidence_penalty": round(self.confidence_penalty, 4),
            "reasons": list(self.reasons),
            "flagged_checks": self.flagged_checks,
            "skipped_checks": list(self.skipped_checks),
        }


@dataclass
class ProviderStats:
    provider: str
    total: int = 0
    valid: int = 0

    @property
    def reliability_score(self) -> float:
        return self.valid / self.total if self.total else 0.5

    @property
    def error_rate(self) -> float:
        return (self.total - self.valid) / self.total if self.total else 0.0


def is_alternating(prices: List[float]) -> bool:
    """Strict high/low alternation starting with a fall."""
    if len(prices) < 4:
        return False
    for i in range(len(prices) - 1):
        if i % 2 == 0 and not prices[i] > prices[i + 1]:
            return False
        if i % 2 == 1 and not prices[i] < prices[i + 1]:
            return False
    return True


def is_stair_step(prices: List[float]) -> bool:
    """Strictly monotonic in either direction."""
    if len(prices) < 3:
        return False
    pairs = list(zip(prices, prices[1:]))
    return all(a < b for a, b in pairs) or all(a > b for a, b in pairs)


def is_multiple_pattern(prices: List[float]) -> bool:
    """Every price divides, or is divided by, the first one."""
    if len(prices) < 3:
        return False
    base = prices[0]
    if base <= 0:
        return False
    for price in prices[1:]:
        if price <= 0:
            return False
        if price % base != 0 and base % price != 0:
            return False
    return True


def is_half_of_common_price(price: float) -> bool:
    # 299 doubles to 598, one dollar from the 599 price point
    return any(abs(price * 2 - point) <= 1 for point in COMMON_PRICE_POINTS)


class SpamPreventionPipeline:
    """
    Runs the ordered heuristics.

    ``history`` supplies counts that need storage (recent triggers, provider
    stats, low-quality alerts). Without it the frequency, provider-history
    and fatigue checks only use what is in the quote itself.
    """

    def __init__(self, history=None):
        self.history = history
        self.checks: List[Callable[..., CheckResult]] = [
            self.check_price_realism,
            self.check_volatility,
            self.check_frequency_limits,
            self.check_pattern_anomalies,
            self.check_data_completeness,
            self.check_seasonal_appropriateness,
            self.check_provider_reliability,
            self.check_alert_fatigue,
        ]

    def evaluate(
        self,
        quote: Quote,
        search_filter: SearchFilter,
        stats: RouteStatistics,
        now: Optional[datetime] = None,
    ) -> SpamVerdict:
        now = now or datetime.utcnow()
        results: List[CheckResult] = []
        skipped: List[str] = []

        for check in self.checks:
            try:
                results.append(check(quote, search_filter, stats, now))
            except Exception as e:
                skipped.append(check.__name__)
                logger.error(f"Spam check {check.__name__} failed for filter {search_filter.id}: {e}")

        reasons: List[str] = []
        penalty = 0.0
        for result in results:
            if result.flagged:
                reasons.extend(result.reasons)
                penalty += result.penalty

        verdict = SpamVerdict(
            is_spam=bool(reasons),
            confidence_penalty=min(penalty, MAX_PENALTY),
            reasons=reasons,
            checks=results,
            skipped_checks=skipped,
        )
        if verdict.is_spam:
            logger.info(
                f"Quote ${quote.price:.2f} from {quote.provider} flagged for filter {search_filter.id}: "
                f"{', '.join(reasons)}"
            )
        return verdict

    def check_price_realism(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("price_realism")
        price = quote.price

        if price < settings.spam_min_price:
            result.flag(f"Price suspiciously low (${price:.2f})", 0.3)
        if price > settings.spam_max_price:
            result.flag(f"Price suspiciously high (${price:.2f})", 0.2)
        if stats.min_price and price < stats.min_price * 0.3:
            result.flag("Price far below historical minimum", 0.4)
        if price % 100 == 0 and price < 1000:
            result.flag("Suspicious round number price", 0.1)
        if is_half_of_common_price(price):
            result.flag("Price appears to be half of common price point", 0.2)
        return result

    def check_volatility(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("volatility")

        if stats.volatility > settings.hard_volatility_threshold:
            result.flag(f"Extremely high price volatility ({stats.volatility}%)", 0.3)
        elif stats.volatility > settings.soft_volatility_threshold:
            result.flag(f"High price volatility ({stats.volatility}%)", 0.1)

        if len(stats.recent_prices) >= 3:
            trailing = stats.recent_prices[-3:]
            recent_avg = sum(trailing) / 3
            if recent_avg > 0:
                change = abs((recent_avg - quote.price) / recent_avg * 100)
                if change > 50:
                    result.flag(f"Sudden large price change ({round(change)}%)", 0.4)
                elif change > 30:
                    result.flag(f"Significant price change ({round(change)}%)", 0.2)
        return result

    def check_frequency_limits(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("frequency_limits")
        if self.history is None:
            return result

        filter_triggers = self.history.filter_trigger_count(search_filter.id, since=now - timedelta(hours=24))
        if filter_triggers >= settings.filter_triggers_hard_limit:
            result.flag(f"Too many recent alerts ({filter_triggers} in 24h)", 0.5)
        elif filter_triggers >= settings.filter_triggers_soft_limit:
            result.flag(f"Multiple recent alerts ({filter_triggers} in 24h)", 0.2)

        route_triggers = self.history.route_trigger_count(
            search_filter.route_description, since=now - timedelta(hours=1)
        )
        if route_triggers >= settings.route_triggers_hourly_limit:
            result.flag(f"Too many alerts for this route ({route_triggers} in 1h)", 0.3)
        return result

    def check_pattern_anomalies(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("pattern_anomalies")

        if len(stats.recent_prices) >= 5:
            last_five = stats.recent_prices[-5:]
            if is_alternating(last_five):
                result.flag("Suspicious alternating price pattern", 0.3)
            if is_stair_step(last_five):
                result.flag("Suspicious stair-step price pattern", 0.2)
            if is_multiple_pattern(last_five):
                result.flag("Suspicious multiple price pattern", 0.2)

        if quote.price in PSYCHOLOGICAL_PRICE_POINTS:
            result.flag("Price at psychological price point (may be fake)", 0.1)
        return result

    def check_data_completeness(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("data_completeness")

        if not quote.airline:
            result.flag("Missing airline information", 0.2)
        if not quote.flight_number:
            result.flag("Missing flight number", 0.1)
        if not quote.departure_time:
            result.flag("Missing departure time", 0.1)
        if not quote.price_format_valid:
            result.flag("Invalid price format", 0.3)
        if stats.data_quality_score < settings.min_data_quality:
            result.flag(f"Low data quality score ({round(stats.data_quality_score * 100)}%)", 0.2)
        if stats.count < settings.min_history_for_analysis:
            result.flag(
                f"Insufficient historical data ({stats.count} < {settings.min_history_for_analysis})", 0.1
            )
        return result

    def check_seasonal_appropriateness(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("seasonal_appropriateness")
        seasonal = stats.seasonal
        if seasonal is None or stats.mean <= 0:
            return result

        if seasonal.demand_high and quote.price < stats.mean * 0.7:
            result.flag("Price too low for high-demand season", 0.3)
        if quote.price < stats.mean * seasonal.price_factor * 0.5:
            result.flag("Price doesn't match seasonal patterns", 0.2)
        return result

    def check_provider_reliability(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("provider_reliability")
        provider = quote.provider

        if self.history is not None:
            provider_stats = self.history.provider_stats(provider, since=now - timedelta(days=30))
            if provider_stats.total >= settings.min_provider_observations:
                if provider_stats.reliability_score < 0.6:
                    result.flag(
                        f"Low provider reliability ({round(provider_stats.reliability_score * 100)}%)", 0.3
                    )
                if provider_stats.error_rate > 0.2:
                    result.flag(f"High provider error rate ({round(provider_stats.error_rate * 100)}%)", 0.2)

        if provider in settings.unreliable_providers:
            result.flag("Known unreliable provider", 0.5)
        return result

    def check_alert_fatigue(self, quote, search_filter, stats, now) -> CheckResult:
        result = CheckResult("alert_fatigue")
        if self.history is None:
            return result

        low_quality = self.history.low_quality_alert_count(
            search_filter.route_description,
            since=now - timedelta(days=7),
            below=LOW_QUALITY_ALERT_SCORE,
        )
        if low_quality >= LOW_QUALITY_ALERT_LIMIT:
            result.flag("Multiple low-quality alerts for this route recently", 0.2)
        return result
