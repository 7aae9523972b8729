import asyncio
import httpx
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from farewatch.config import get_settings
from farewatch.models import SearchFilter
from farewatch.schemas import Quote
from farewatch.services.quote_validation import normalize_quotes
from farewatch.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)
settings = get_settings()

TIMEOUT = "timeout"
RATE_LIMITED = "rate_limited"
ERROR = "error"
UNAVAILABLE = "unavailable"


@dataclass
class FetchCriteria:
    origins: List[str]
    destinations: List[str]
    departure_dates: List[date]
    return_dates: List[date] = field(default_factory=list)
    adults: int = 1
    children: int = 0
    infants: int = 0
    cabin_class: str = "economy"
    stops_filter: str = "any"
    airline_preferences: List[str] = field(default_factory=list)
    currency: str = "USD"

    @classmethod
    def from_filter(cls, search_filter: SearchFilter) -> "FetchCriteria":
        return cls(
            origins=list(search_filter.origin_airports or []),
            destinations=list(search_filter.destination_airports or []),
            departure_dates=search_filter.departure_dates_list,
            return_dates=search_filter.return_dates_list,
            adults=search_filter.adults,
            children=search_filter.children,
            infants=search_filter.infants,
            cabin_class=search_filter.cabin_class.value,
            stops_filter=search_filter.max_stops.value,
            airline_preferences=list(search_filter.airline_preferences or []),
        )

    @property
    def route(self) -> str:
        return f"{','.join(self.origins)}-{','.join(self.destinations)}"


@dataclass
class ProviderError:
    provider: str
    kind: str
    message: str


@dataclass
class ProviderFetch:
    provider: str
    raw_quotes: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[ProviderError] = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.error is None and bool(self.raw_quotes)


class QuoteProvider(ABC):
    name: str = "base"
    priority: int = 100
    max_retries: int = settings.fetch_max_retries
    retry_delay: float = settings.fetch_retry_delay
    timeout: float = settings.fetch_timeout_seconds

    @abstractmethod
    async def fetch_raw(self, criteria: FetchCriteria) -> List[Dict[str, Any]]:
        """Return raw quote dicts; raise on failure."""
        pass

    def is_available(self) -> bool:
        return True

    async def _acquire(self, rate_limiter: Optional[RateLimiter]) -> bool:
        if rate_limiter is None:
            return True
        if rate_limiter.try_acquire(self.name):
            return True
        wait = rate_limiter.wait_time(self.name)
        if wait > settings.rate_limit_max_wait_seconds:
            return False
        logger.info(f"{self.name}: rate limited, waiting {wait:.1f}s")
        await asyncio.sleep(wait)
        return rate_limiter.try_acquire(self.name)

    async def fetch_with_retry(
        self,
        criteria: FetchCriteria,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> ProviderFetch:
        if not self.is_available():
            return ProviderFetch(
                provider=self.name,
                error=ProviderError(self.name, UNAVAILABLE, "Provider not configured"),
                attempts=0,
            )

        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.retry_delay * (2 ** (attempt - 1)) + random.uniform(0, 1)
                logger.info(f"{self.name}: Retry {attempt}/{self.max_retries} after {delay:.1f}s")
                await asyncio.sleep(delay)

            if not await self._acquire(rate_limiter):
                # Another provider can serve this pass
                return ProviderFetch(
                    provider=self.name,
                    error=ProviderError(self.name, RATE_LIMITED, "Rate limit exceeded"),
                    attempts=attempt,
                )

            try:
                raw = await asyncio.wait_for(self.fetch_raw(criteria), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = ProviderError(self.name, TIMEOUT, f"No response within {self.timeout}s")
                continue
            except httpx.HTTPStatusError as e:
                kind = RATE_LIMITED if e.response.status_code == 429 else ERROR
                last_error = ProviderError(self.name, kind, f"HTTP {e.response.status_code}")
                continue
            except Exception as e:
                last_error = ProviderError(self.name, ERROR, str(e))
                continue

            if raw:
                return ProviderFetch(provider=self.name, raw_quotes=raw, attempts=attempt + 1)
            last_error = ProviderError(self.name, ERROR, "No prices in response")

        logger.warning(f"{self.name}: giving up after {self.max_retries + 1} attempts: {last_error.message}")
        return ProviderFetch(provider=self.name, error=last_error, attempts=self.max_retries + 1)


class HttpQuoteProvider(QuoteProvider):
    """
    Provider behind an HTTP endpoint that already speaks the normalized
    quote shape: ``GET {base_url}/quotes`` returning ``{"quotes": [...]}``.
    """

    def __init__(self, name: str, base_url: str, api_key: Optional[str] = None, priority: int = 100):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.priority = priority

    def is_available(self) -> bool:
        return bool(self.base_url)

    async def fetch_raw(self, criteria: FetchCriteria) -> List[Dict[str, Any]]:
        params = {
            "origin": ",".join(criteria.origins),
            "destination": ",".join(criteria.destinations),
            "departure_dates": ",".join(d.isoformat() for d in criteria.departure_dates),
            "adults": criteria.adults,
            "children": criteria.children,
            "infants": criteria.infants,
            "cabin_class": criteria.cabin_class,
            "stops": criteria.stops_filter,
            "currency": criteria.currency,
        }
        if criteria.return_dates:
            params["return_dates"] = ",".join(d.isoformat() for d in criteria.return_dates)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/quotes", params=params, headers=headers)
            response.raise_for_status()
            data = response.json()

        quotes = data.get("quotes", []) if isinstance(data, dict) else []
        for quote in quotes:
            if isinstance(quote, dict):
                quote.setdefault("provider", self.name)
        return quotes


class FetchStrategy(ABC):
    name: str = "base"

    @abstractmethod
    async def run(
        self,
        providers: List[QuoteProvider],
        criteria: FetchCriteria,
        rate_limiter: Optional[RateLimiter],
    ) -> List[ProviderFetch]:
        pass


class CascadeStrategy(FetchStrategy):
    """Try providers in order until one returns quotes."""
    name = "cascade"

    async def run(self, providers, criteria, rate_limiter):
        fetches = []
        for provider in providers:
            logger.info(f"Trying {provider.name} for {criteria.route}")
            fetch = await provider.fetch_with_retry(criteria, rate_limiter)
            fetches.append(fetch)
            if fetch.success:
                break
        return fetches


class ParallelStrategy(FetchStrategy):
    """Ask every provider at once and merge the results."""
    name = "parallel"

    async def run(self, providers, criteria, rate_limiter):
        return list(await asyncio.gather(
            *(provider.fetch_with_retry(criteria, rate_limiter) for provider in providers)
        ))


class PriorityStrategy(FetchStrategy):
    """Walk providers by priority, stopping once enough quotes are collected."""
    name = "priority"

    def __init__(self, min_quotes: int = 5):
        self.min_quotes = min_quotes

    async def run(self, providers, criteria, rate_limiter):
        fetches = []
        collected = 0
        for provider in sorted(providers, key=lambda p: p.priority):
            fetch = await provider.fetch_with_retry(criteria, rate_limiter)
            fetches.append(fetch)
            collected += len(fetch.raw_quotes)
            if collected >= self.min_quotes:
                break
        return fetches


STRATEGIES = {
    "cascade": CascadeStrategy,
    "parallel": ParallelStrategy,
    "priority": PriorityStrategy,
}


def build_strategy(name: Optional[str] = None) -> FetchStrategy:
    name = name or settings.quote_strategy
    if name not in STRATEGIES:
        raise ValueError(f"Unknown quote strategy: {name}")
    return STRATEGIES[name]()


class QuoteSource:
    """
    Fetches quotes for a filter across providers.

    Partial provider failure still returns the quotes that did arrive;
    failures come back as ``ProviderError`` values, never exceptions.
    """

    def __init__(
        self,
        providers: List[QuoteProvider],
        strategy: Optional[FetchStrategy] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.providers = providers
        self.strategy = strategy or build_strategy()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.last_rejections: List[str] = []

    def get_available_sources(self) -> List[str]:
        return [p.name for p in self.providers if p.is_available()]

    def get_status(self) -> dict:
        return {
            "strategy": self.strategy.name,
            "sources": {
                p.name: {"available": p.is_available(), "priority": p.priority}
                for p in self.providers
            },
            "total_available": len(self.get_available_sources()),
            "rate_limits": self.rate_limiter.status(),
        }

    async def fetch_quotes(self, criteria: FetchCriteria) -> Tuple[List[Quote], List[ProviderError]]:
        available = [p for p in self.providers if p.is_available()]
        errors = [
            ProviderError(p.name, UNAVAILABLE, "Provider not configured")
            for p in self.providers if not p.is_available()
        ]
        if not available:
            logger.warning(f"No quote providers available for {criteria.route}")
            return [], errors

        fetches = await self.strategy.run(available, criteria, self.rate_limiter)

        quotes: List[Quote] = []
        self.last_rejections = []
        for fetch in fetches:
            if fetch.error:
                errors.append(fetch.error)
            if fetch.raw_quotes:
                accepted, rejected = normalize_quotes(fetch.raw_quotes, default_provider=fetch.provider)
                quotes.extend(accepted)
                self.last_rejections.extend(rejected)

        logger.info(
            f"Fetched {len(quotes)} quotes for {criteria.route} "
            f"({len(errors)} provider errors, {len(self.last_rejections)} rejected)"
        )
        return quotes, errors
