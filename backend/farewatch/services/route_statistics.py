import logging
import math
import statistics
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from farewatch.config import get_settings
from farewatch.models import PriceObservation, ValidationStatus
from farewatch.services.cache import InMemoryStatsCache, StatsCache

logger = logging.getLogger(__name__)
settings = get_settings()

LOW_CONFIDENCE_SAMPLE_SIZE = 2


@dataclass
class SeasonalContext:
    season: str
    price_factor: float
    demand_high: bool


@dataclass
class RouteStatistics:
    route: str
    recent_prices: List[float] = field(default_factory=list)
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    volatility: float = 0.0  # coefficient of variation, percent
    trend_direction: str = "stable"
    trend_slope: float = 0.0
    recent_drops: int = 0
    data_quality_score: float = 0.5
    low_confidence: bool = True
    computed_at: Optional[datetime] = None
    seasonal: Optional[SeasonalContext] = None

    @property
    def seasonal_factor(self) -> float:
        return self.seasonal.price_factor if self.seasonal else 1.0

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat() if self.computed_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteStatistics":
        data = dict(data)
        computed_at = data.get("computed_at")
        if isinstance(computed_at, str):
            data["computed_at"] = datetime.fromisoformat(computed_at)
        seasonal = data.get("seasonal")
        if isinstance(seasonal, dict):
            data["seasonal"] = SeasonalContext(**seasonal)
        return cls(**data)

    def snapshot(self) -> Dict[str, Any]:
        """Audit view of the snapshot that justified a decision."""
        return {
            "route": self.route,
            "count": self.count,
            "mean": round(self.mean, 2),
            "median": round(self.median, 2),
            "min_price": self.min_price,
            "max_price": self.max_price,
            "volatility": self.volatility,
            "trend_direction": self.trend_direction,
            "recent_drops": self.recent_drops,
            "data_quality_score": round(self.data_quality_score, 4),
            "low_confidence": self.low_confidence,
            "seasonal_factor": self.seasonal_factor,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }


def calculate_volatility(prices: List[float]) -> float:
    """Population standard deviation over mean, as a percentage."""
    if len(prices) < 2:
        return 0.0
    mean = statistics.mean(prices)
    if mean <= 0:
        return 0.0
    return round(statistics.pstdev(prices) / mean * 100, 2)


def calculate_trend(prices: List[float], threshold: float = 0.1) -> Tuple[str, float]:
    """
    Least-squares slope of price against observation index.

    Returns (direction, slope) where direction is increasing, decreasing or
    stable. Fewer than 3 points is always stable with zero slope.
    """
    n = len(prices)
    if n < 3:
        return "stable", 0.0

    sum_x = sum(range(n))
    sum_y = sum(prices)
    sum_xy = sum(i * p for i, p in enumerate(prices))
    sum_x2 = sum(i * i for i in range(n))

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return "stable", 0.0

    slope = (n * sum_xy - sum_x * sum_y) / denominator

    if slope > threshold:
        return "increasing", slope
    elif slope < -threshold:
        return "decreasing", slope
    return "stable", slope


def count_recent_drops(prices: List[float], window: Optional[int] = None) -> int:
    """Count strictly-decreasing adjacent pairs within the trailing window."""
    if window:
        prices = prices[-window:]
    if len(prices) < 2:
        return 0
    return sum(1 for previous, current in zip(prices, prices[1:]) if current < previous)


def calculate_data_quality_score(
    observations: Iterable[Tuple[ValidationStatus, datetime]],
    now: Optional[datetime] = None,
    recent_days: int = 7,
) -> float:
    """Blend the valid fraction (0.7) with the fraction observed recently (0.3)."""
    observations = list(observations)
    if not observations:
        return 0.5

    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=recent_days)
    total = len(observations)
    valid = sum(1 for status, _ in observations if status == ValidationStatus.VALID)
    recent = sum(1 for _, observed_at in observations if observed_at and observed_at >= cutoff)

    score = (valid / total) * 0.7 + (recent / total) * 0.3
    return min(score, 1.0)


def seasonal_context(departure_date: Optional[date]) -> Optional[SeasonalContext]:
    if not departure_date:
        return None

    month = departure_date.month
    if month in (12, 1, 2):
        return SeasonalContext(season="winter", price_factor=1.2, demand_high=True)
    if month in (6, 7, 8):
        return SeasonalContext(season="summer", price_factor=1.3, demand_high=True)
    if month in (3, 4, 5):
        return SeasonalContext(season="spring", price_factor=0.9, demand_high=False)
    return SeasonalContext(season="fall", price_factor=0.8, demand_high=False)


def seasonal_price_floor(stats: RouteStatistics) -> Optional[float]:
    """
    Lowest believable price for the season.

    Half the seasonally-adjusted mean, raised to 70% of the mean in
    high-demand seasons. None when there is no seasonal or historical context.
    """
    if stats.seasonal is None or stats.mean <= 0:
        return None
    floors = [stats.mean * stats.seasonal.price_factor * 0.5]
    if stats.seasonal.demand_high:
        floors.append(stats.mean * 0.7)
    return max(floors)


def build_statistics(
    route: str,
    observations: List[Tuple[float, ValidationStatus, datetime]],
    now: Optional[datetime] = None,
    recent_drop_window: Optional[int] = None,
    trend_threshold: Optional[float] = None,
) -> RouteStatistics:
    """Pure computation of a snapshot from (price, status, observed_at) rows ordered by time."""
    now = now or datetime.utcnow()
    prices = [
        price for price, status, _ in observations
        if status == ValidationStatus.VALID and math.isfinite(price)
    ]
    quality = calculate_data_quality_score(
        ((status, observed_at) for _, status, observed_at in observations),
        now=now,
        recent_days=settings.stats_recent_window_days,
    )

    if len(prices) < LOW_CONFIDENCE_SAMPLE_SIZE:
        return RouteStatistics(
            route=route,
            recent_prices=prices,
            count=len(prices),
            mean=prices[0] if prices else 0.0,
            median=prices[0] if prices else 0.0,
            min_price=prices[0] if prices else None,
            max_price=prices[0] if prices else None,
            data_quality_score=quality,
            low_confidence=True,
            computed_at=now,
        )

    direction, slope = calculate_trend(
        prices,
        threshold=settings.trend_slope_threshold if trend_threshold is None else trend_threshold,
    )

    return RouteStatistics(
        route=route,
        recent_prices=prices,
        count=len(prices),
        mean=statistics.mean(prices),
        median=statistics.median(prices),
        min_price=min(prices),
        max_price=max(prices),
        volatility=calculate_volatility(prices),
        trend_direction=direction,
        trend_slope=slope,
        recent_drops=count_recent_drops(
            prices,
            window=settings.recent_drop_window if recent_drop_window is None else recent_drop_window,
        ),
        data_quality_score=quality,
        low_confidence=False,
        computed_at=now,
    )


class RouteStatisticsEngine:
    """Derives and caches per-route historical context from stored observations."""

    def __init__(
        self,
        db: Session,
        cache: Optional[StatsCache] = None,
        lookback_days: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else InMemoryStatsCache()
        self.lookback_days = lookback_days or settings.stats_lookback_days
        self.ttl_seconds = ttl_seconds or settings.stats_cache_ttl_seconds

    def _cache_key(self, route: str) -> str:
        return f"{route}:{self.lookback_days}d"

    def get_observations(self, route: str, now: Optional[datetime] = None) -> List[Tuple[float, ValidationStatus, datetime]]:
        now = now or datetime.utcnow()
        rows = self.db.query(
            PriceObservation.price,
            PriceObservation.validation_status,
            PriceObservation.observed_at,
        ).filter(
            PriceObservation.route == route,
            PriceObservation.observed_at >= now - timedelta(days=self.lookback_days),
        ).order_by(PriceObservation.observed_at, PriceObservation.id).all()

        return [(float(price), status, observed_at) for price, status, observed_at in rows]

    def get_statistics(
        self,
        route: str,
        departure_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> RouteStatistics:
        key = self._cache_key(route)
        cached = self.cache.get(key)

        if cached is not None:
            stats = RouteStatistics.from_dict(cached)
        else:
            stats = build_statistics(route, self.get_observations(route, now=now), now=now)
            self.cache.set(key, stats.as_dict(), self.ttl_seconds)
            logger.debug(
                f"Computed statistics for {route}: n={stats.count}, "
                f"mean={stats.mean:.2f}, volatility={stats.volatility}%"
            )

        return replace(stats, seasonal=seasonal_context(departure_date))

    def invalidate(self, route: str) -> None:
        self.cache.invalidate(self._cache_key(route))
