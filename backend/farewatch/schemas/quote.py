from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Any, Dict, Optional


class Quote(BaseModel):
    """Normalized price observation crossing into the detection pipeline."""
    model_config = ConfigDict(allow_inf_nan=False)

    price: float
    currency: str = "USD"
    provider: str = "unknown"
    airline: Optional[str] = None
    flight_number: Optional[str] = None
    stops: int = 0
    cabin_class: Optional[str] = None
    departure_date: Optional[date] = None
    departure_time: Optional[str] = None
    arrival_time: Optional[str] = None
    booking_url: Optional[str] = None
    observed_at: datetime = Field(default_factory=datetime.utcnow)

    # False when the provider sent the price as a string we had to coerce
    price_format_valid: bool = True

    raw_data: Optional[Dict[str, Any]] = None

    def audit_dict(self) -> Dict[str, Any]:
        """Compact, JSON-safe view stored alongside trigger records."""
        return self.model_dump(mode="json", exclude={"raw_data"})
