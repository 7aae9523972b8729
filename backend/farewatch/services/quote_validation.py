"""
Validation boundary for provider quotes.

Raw provider payloads are dicts with loosely-typed fields. Everything that
reaches the detector must be a ``Quote``; anything that cannot become one is
rejected here with a reason string instead of an exception.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from farewatch.schemas.quote import Quote

logger = logging.getLogger(__name__)

PRICE_KEYS = ("price", "amount")

CABIN_ALIASES = {
    "premium-economy": "premium_economy",
    "premium economy": "premium_economy",
    "premium": "premium_economy",
    "coach": "economy",
}


@dataclass
class QuoteValidation:
    quote: Optional[Quote] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.quote is not None


def _extract_price(raw: Dict[str, Any]) -> Tuple[Optional[float], bool, Optional[str]]:
    """Return (price, was_numeric, rejection_reason)."""
    value = None
    for key in PRICE_KEYS:
        if raw.get(key) is not None:
            value = raw[key]
            break

    if value is None:
        return None, False, "No valid price found"

    if isinstance(value, bool):
        return None, False, "Invalid price format"

    if isinstance(value, (int, float, Decimal)):
        price, numeric = float(value), True
    elif isinstance(value, str):
        cleaned = value.strip().replace("$", "").replace(",", "")
        try:
            price, numeric = float(Decimal(cleaned)), False
        except (InvalidOperation, ValueError):
            return None, False, f"Invalid price format ({value!r})"
    else:
        return None, False, "Invalid price format"

    # json.loads and Decimal both accept NaN and Infinity
    if not math.isfinite(price):
        return None, False, f"Price must be a finite number (got {value!r})"
    return price, numeric, None


def _normalize_cabin(value: Any) -> Optional[str]:
    if not value:
        return None
    cabin = str(value).strip().lower()
    return CABIN_ALIASES.get(cabin, cabin.replace("-", "_").replace(" ", "_"))


def _normalize_stops(value: Any) -> Optional[int]:
    if value is None or value == "":
        return 0
    try:
        stops = int(value)
    except (TypeError, ValueError):
        return None
    return stops if stops >= 0 else None


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_quote(raw: Any, default_provider: Optional[str] = None) -> QuoteValidation:
    """Turn a raw provider dict into a ``Quote`` or a list of rejection reasons."""
    if isinstance(raw, Quote):
        return QuoteValidation(quote=raw)

    if not isinstance(raw, dict) or not raw:
        return QuoteValidation(reasons=["No price data provided"])

    price, numeric, reason = _extract_price(raw)
    if reason:
        return QuoteValidation(reasons=[reason])

    if price <= 0:
        return QuoteValidation(reasons=[f"Price must be positive (got {price})"])

    stops = _normalize_stops(raw.get("stops"))
    if stops is None:
        return QuoteValidation(reasons=[f"Invalid stops value ({raw.get('stops')!r})"])

    departure_date = raw.get("departure_date")
    if isinstance(departure_date, datetime):
        departure_date = departure_date.date()
    elif departure_date and not isinstance(departure_date, date):
        try:
            departure_date = date.fromisoformat(str(departure_date)[:10])
        except ValueError:
            return QuoteValidation(reasons=[f"Invalid departure date ({departure_date!r})"])

    payload = {
        "price": round(price, 2),
        "currency": (raw.get("currency") or "USD").upper(),
        "provider": _blank_to_none(raw.get("provider")) or default_provider or "unknown",
        "airline": _blank_to_none(raw.get("airline")),
        "flight_number": _blank_to_none(raw.get("flight_number")),
        "stops": stops,
        "cabin_class": _normalize_cabin(raw.get("cabin_class")),
        "departure_date": departure_date or None,
        "departure_time": _blank_to_none(raw.get("departure_time")),
        "arrival_time": _blank_to_none(raw.get("arrival_time")),
        "booking_url": _blank_to_none(raw.get("booking_url")),
        "price_format_valid": numeric,
        "raw_data": raw,
    }
    observed_at = raw.get("observed_at") or raw.get("data_timestamp")
    if observed_at:
        payload["observed_at"] = observed_at

    try:
        return QuoteValidation(quote=Quote(**payload))
    except ValidationError as e:
        logger.debug(f"Quote rejected at validation boundary: {e}")
        return QuoteValidation(reasons=[f"Malformed quote: {e.errors()[0]['msg']}"])


def normalize_quotes(raw_quotes: List[Any], default_provider: Optional[str] = None) -> Tuple[List[Quote], List[str]]:
    """Normalize a batch; returns accepted quotes and rejection reasons."""
    quotes = []
    rejections = []
    for raw in raw_quotes:
        result = normalize_quote(raw, default_provider=default_provider)
        if result.is_valid:
            quotes.append(result.quote)
        else:
            rejections.extend(result.reasons)
    if rejections:
        logger.info(f"Validation boundary rejected {len(rejections)} of {len(raw_quotes)} quotes")
    return quotes, rejections
