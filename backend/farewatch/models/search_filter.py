from datetime import date, datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from farewatch.database import Base
import enum


class CabinClass(str, enum.Enum):
    ANY = "any"
    ECONOMY = "economy"
    PREMIUM_ECONOMY = "premium_economy"
    BUSINESS = "business"
    FIRST = "first"


class MaxStops(str, enum.Enum):
    ANY = "any"
    NONSTOP = "nonstop"
    ONE_STOP = "one_stop"
    TWO_PLUS = "two_plus"


class MonitorFrequency(str, enum.Enum):
    REAL_TIME = "real_time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


URGENT_DEPARTURE_DAYS = 30
MAX_PASSENGERS = 9


def _parse_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


class SearchFilter(Base):
    """
    A user's standing monitoring request.

    Filters are soft-deactivated (``is_active=False``) rather than deleted
    while an alert still references them. Scheduling fields
    (``last_checked_at``, ``next_check_at``, ``priority_score``) are owned
    by the monitoring service; everything else is user criteria.
    """
    __tablename__ = "search_filters"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    name = Column(String(100), nullable=True)

    # Route (IATA codes)
    origin_airports = Column(JSON, default=list, nullable=False)
    destination_airports = Column(JSON, default=list, nullable=False)

    # ISO date strings
    departure_dates = Column(JSON, default=list, nullable=False)
    return_dates = Column(JSON, default=list, nullable=False)

    # Passengers
    adults = Column(Integer, default=1, nullable=False)
    children = Column(Integer, default=0, nullable=False)
    infants = Column(Integer, default=0, nullable=False)

    # Preferences
    cabin_class = Column(SQLEnum(CabinClass), default=CabinClass.ECONOMY, nullable=False)
    max_stops = Column(SQLEnum(MaxStops), default=MaxStops.ANY, nullable=False)
    airline_preferences = Column(JSON, default=list, nullable=False)

    # Price parameters
    min_price = Column(Float, default=0.0, nullable=False)
    max_price = Column(Float, default=10000.0, nullable=False)
    target_price = Column(Float, nullable=False)

    # Alert settings (None = use configured default)
    monitor_frequency = Column(SQLEnum(MonitorFrequency), default=MonitorFrequency.DAILY, nullable=False)
    min_drop_percentage = Column(Float, nullable=True)
    min_confidence = Column(Float, nullable=True)
    urgent = Column(Boolean, default=False, nullable=False)
    timezone = Column(String(50), nullable=True)

    # Scheduling
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_checked_at = Column(DateTime, nullable=True)
    next_check_at = Column(DateTime, nullable=True, index=True)
    priority_score = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    alert = relationship(
        "Alert",
        back_populates="search_filter",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def departure_dates_list(self) -> List[date]:
        parsed = [_parse_date(d) for d in (self.departure_dates or [])]
        return sorted(d for d in parsed if d is not None)

    @property
    def return_dates_list(self) -> List[date]:
        parsed = [_parse_date(d) for d in (self.return_dates or [])]
        return sorted(d for d in parsed if d is not None)

    @property
    def earliest_departure(self) -> Optional[date]:
        dates = self.departure_dates_list
        return dates[0] if dates else None

    @property
    def route_description(self) -> str:
        origins = ",".join(self.origin_airports or [])
        destinations = ",".join(self.destination_airports or [])
        return f"{origins}-{destinations}"

    @property
    def passenger_count(self) -> int:
        return (self.adults or 0) + (self.children or 0) + (self.infants or 0)

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return f"{self.route_description} (target ${self.target_price:.0f})"

    def is_urgent(self, today: Optional[date] = None) -> bool:
        """Explicitly flagged, or the earliest departure is within 30 days."""
        if self.urgent:
            return True
        earliest = self.earliest_departure
        if earliest is None:
            return False
        today = today or date.today()
        return (earliest - today).days <= URGENT_DEPARTURE_DAYS

    def validation_errors(self) -> List[str]:
        errors = []
        if not self.origin_airports:
            errors.append("At least one origin airport is required")
        if not self.destination_airports:
            errors.append("At least one destination airport is required")
        if not self.departure_dates_list:
            errors.append("At least one departure date is required")
        if (self.adults or 0) < 1:
            errors.append("Must have at least one adult")
        if self.passenger_count > MAX_PASSENGERS:
            errors.append(f"Cannot exceed {MAX_PASSENGERS} passengers")
        if self.target_price is None or self.target_price <= 0:
            errors.append("Target price must be positive")
        if self.min_price is not None and self.max_price is not None:
            if self.min_price >= self.max_price:
                errors.append("Minimum price must be less than maximum price")
            elif self.target_price is not None and not (self.min_price <= self.target_price <= self.max_price):
                errors.append("Target price must be within min/max range")
        if self.timezone:
            try:
                ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                errors.append(f"Unknown timezone: {self.timezone}")
        return errors

    def deactivate(self) -> None:
        self.is_active = False

    def activate(self) -> None:
        self.is_active = True

    def __repr__(self) -> str:
        return f"<SearchFilter {self.id}: {self.display_name}>"
