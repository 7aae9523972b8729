# SQLAlchemy models
from farewatch.models.search_filter import SearchFilter, CabinClass, MaxStops, MonitorFrequency
from farewatch.models.price_observation import PriceObservation, ValidationStatus, ImmutableObservationError
from farewatch.models.alert import Alert, AlertStatus

__all__ = [
    "SearchFilter",
    "PriceObservation",
    "Alert",
    # Enums
    "CabinClass",
    "MaxStops",
    "MonitorFrequency",
    "ValidationStatus",
    "AlertStatus",
    "ImmutableObservationError",
]
