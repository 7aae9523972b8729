from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, Integer, String, Date, DateTime, Float, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import validates
from farewatch.database import Base
import enum


class ValidationStatus(str, enum.Enum):
    VALID = "valid"
    SUSPICIOUS = "suspicious"
    INVALID = "invalid"


class ImmutableObservationError(Exception):
    """Raised when code tries to rewrite a stored observation."""


# Columns that may change after the row has been written
_MUTABLE_COLUMNS = {"validation_status", "data_quality_score"}


class PriceObservation(Base):
    """
    Append-only record of a validated quote.

    Rows are never updated in place except to move ``validation_status``
    (and the quality score derived from it) after later anomaly detection.
    Rows older than the retention window are deleted by the cleanup job.
    """
    __tablename__ = "price_observations"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    filter_id = Column(Integer, ForeignKey("search_filters.id", ondelete="SET NULL"), nullable=True, index=True)

    route = Column(String(100), nullable=False, index=True)
    departure_date = Column(Date, nullable=True)
    provider = Column(String(50), nullable=False, index=True)

    price = Column(Float, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    cabin_class = Column(String(20), nullable=True)
    airline = Column(String(100), nullable=True)
    flight_number = Column(String(20), nullable=True)
    stops = Column(Integer, default=0)

    observed_at = Column(DateTime, nullable=False, index=True)

    validation_status = Column(SQLEnum(ValidationStatus), default=ValidationStatus.VALID, nullable=False)
    data_quality_score = Column(Float, default=1.0, nullable=False)

    raw_data = Column(JSON, nullable=True)

    @validates(
        "route", "departure_date", "provider", "price", "currency", "cabin_class",
        "airline", "flight_number", "stops", "observed_at", "raw_data",
    )
    def _guard_immutable(self, key, value):
        if self.id is not None:
            raise ImmutableObservationError(f"PriceObservation.{key} is immutable once written")
        return value

    def mark_suspicious(self) -> None:
        self.validation_status = ValidationStatus.SUSPICIOUS
        self.data_quality_score = observation_quality_score(self.validation_status, self.observed_at)

    def mark_invalid(self) -> None:
        self.validation_status = ValidationStatus.INVALID
        self.data_quality_score = observation_quality_score(self.validation_status, self.observed_at)

    def mark_valid(self) -> None:
        self.validation_status = ValidationStatus.VALID
        self.data_quality_score = observation_quality_score(self.validation_status, self.observed_at)

    def __repr__(self) -> str:
        return f"<PriceObservation {self.id}: {self.route} ${self.price} via {self.provider} ({self.validation_status.value})>"


def observation_quality_score(
    status: ValidationStatus,
    observed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> float:
    """Score a single observation: penalise suspicious status and age, bounded to [0.1, 1.0]."""
    score = 1.0
    if status == ValidationStatus.SUSPICIOUS:
        score -= 0.3
    elif status == ValidationStatus.INVALID:
        score -= 0.6

    if observed_at is not None:
        now = now or datetime.utcnow()
        age = now - observed_at
        if age > timedelta(days=1):
            score -= 0.1
        elif age > timedelta(hours=1):
            score -= 0.05

    return min(1.0, max(0.1, score))
