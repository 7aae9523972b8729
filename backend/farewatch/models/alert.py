from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import Column, Integer, String, Date, DateTime, Float, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from farewatch.database import Base
import enum


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXPIRED = "expired"


class Alert(Base):
    """
    The single decision record for a search filter.

    ``triggers`` and ``notification_history`` are append-only JSON logs.
    JSON columns are not mutation-tracked, so every append re-assigns the list.
    ``version`` is the optimistic-lock counter; a concurrent writer that loaded
    an older version gets ``StaleDataError`` on flush.
    """
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    filter_id = Column(
        Integer,
        ForeignKey("search_filters.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    route_description = Column(String(100), nullable=False)
    departure_date = Column(Date, nullable=True)

    target_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)
    price_drop_amount = Column(Float, nullable=True)
    price_drop_percentage = Column(Float, nullable=True)
    quality_score = Column(Float, nullable=True)

    status = Column(SQLEnum(AlertStatus), default=AlertStatus.ACTIVE, nullable=False, index=True)

    triggers = Column(JSON, default=list, nullable=False)
    notification_history = Column(JSON, default=list, nullable=False)

    last_checked_at = Column(DateTime, nullable=True)
    last_triggered_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    search_filter = relationship("SearchFilter", back_populates="alert")

    __mapper_args__ = {"version_id_col": version}

    def append_trigger(
        self,
        price: float,
        provider: str,
        confidence: float,
        reasons: List[str],
        drop_amount: float,
        drop_percentage: float,
        quote: Dict[str, Any],
        statistics: Dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        entry = {
            "id": uuid.uuid4().hex,
            "timestamp": (timestamp or datetime.utcnow()).isoformat(),
            "price": price,
            "provider": provider,
            "confidence": confidence,
            "reasons": list(reasons),
            "drop_amount": drop_amount,
            "drop_percentage": drop_percentage,
            "quote": quote,
            "statistics": statistics,
            "dispatched_at": None,
            "urgency": None,
        }
        self.triggers = list(self.triggers or []) + [entry]
        return entry

    def mark_trigger_dispatched(self, trigger_id: str, urgency: str, deliver_at: Optional[datetime]) -> bool:
        """Stamp a trigger as handed to delivery. Returns False if it already was."""
        updated = []
        stamped = False
        for entry in self.triggers or []:
            if entry.get("id") == trigger_id:
                if entry.get("dispatched_at"):
                    return False
                entry = dict(entry)
                entry["dispatched_at"] = datetime.utcnow().isoformat()
                entry["urgency"] = urgency
                entry["deliver_at"] = deliver_at.isoformat() if deliver_at else None
                stamped = True
            updated.append(entry)
        if stamped:
            self.triggers = updated
        return stamped

    def record_notification(
        self,
        channel: str,
        content: str,
        success: bool,
        trigger_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry = {
            "channel": channel,
            "content": content,
            "success": success,
            "trigger_id": trigger_id,
            "timestamp": (timestamp or datetime.utcnow()).isoformat(),
        }
        if error:
            entry["error"] = error
        self.notification_history = list(self.notification_history or []) + [entry]
        return entry

    @property
    def latest_trigger(self) -> Optional[Dict[str, Any]]:
        return self.triggers[-1] if self.triggers else None

    def __repr__(self) -> str:
        return f"<Alert {self.id}: filter {self.filter_id} {self.status.value}>"
