from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional, List, Dict
import uuid
import logging
import httpx
from farewatch.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    """Result of handing one alert to one channel."""
    channel: str
    success: bool
    content: str
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Notification:
    """Notification record."""
    id: str
    title: str
    message: str
    priority: str
    timestamp: datetime
    type: str  # "alert" or "system"
    tags: List[str]
    sent_to_ntfy: bool = False
    deliver_at: Optional[datetime] = None


class NotificationHistory:
    """In-memory notification history for status display."""

    def __init__(self, max_notifications: int = 100):
        self._notifications: List[Notification] = []
        self._max_notifications = max_notifications

    def add(self, notification: Notification):
        self._notifications.append(notification)
        if len(self._notifications) > self._max_notifications:
            self._notifications.pop(0)

    def get_recent(self, limit: int = 50) -> List[Dict]:
        recent = self._notifications[-limit:] if limit else self._notifications
        return [asdict(n) for n in reversed(recent)]

    def clear(self):
        self._notifications.clear()


class DeliveryChannel(ABC):
    """Receives accepted alerts and reports per-channel outcomes."""

    @abstractmethod
    async def deliver(self, alert, urgency: str, content, deliver_at: Optional[datetime]) -> List[DeliveryOutcome]:
        pass


class NtfyNotifier(DeliveryChannel):
    """
    Push delivery via ntfy.

    Alerts with a future delivery time are scheduled server-side with
    ntfy's ``At`` header. Transport failures are reported as unsuccessful
    outcomes, never raised.
    """

    channel = "ntfy"

    # Priority mapping to ntfy priorities (1=min, 5=max)
    PRIORITY_MAP = {
        "min": "1",
        "low": "2",
        "default": "3",
        "high": "4",
        "urgent": "5",
    }

    URGENCY_PRIORITY = {
        "urgent": "urgent",
        "significant": "high",
        "minor": "default",
    }

    URGENCY_TAGS = {
        "urgent": ["airplane", "rotating_light"],
        "significant": ["airplane", "tada"],
        "minor": ["airplane", "moneybag"],
    }

    def __init__(
        self,
        ntfy_url: Optional[str] = None,
        ntfy_topic: Optional[str] = None,
    ):
        self.ntfy_url = ntfy_url or settings.ntfy_url
        self.ntfy_topic = ntfy_topic or settings.ntfy_topic
        self.history = NotificationHistory()
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def close(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _send_to_ntfy(
        self,
        title: str,
        message: str,
        priority: str = "default",
        tags: Optional[List[str]] = None,
        click_url: Optional[str] = None,
        deliver_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Send notification to ntfy server. Returns an error string, or None on success."""
        try:
            client = await self._get_client()
            url = f"{self.ntfy_url}/{self.ntfy_topic}"

            headers = {
                "Title": title,
                "Priority": self.PRIORITY_MAP.get(priority, "3"),
            }

            if tags:
                headers["Tags"] = ",".join(tags)

            if click_url:
                headers["Click"] = click_url

            if deliver_at and deliver_at > datetime.utcnow():
                headers["At"] = str(int(deliver_at.replace(tzinfo=timezone.utc).timestamp()))

            response = await client.post(
                url,
                content=message.encode("utf-8"),
                headers=headers,
            )

            if response.status_code == 200:
                logger.info(f"Notification sent: {title}")
                return None
            else:
                logger.error(f"ntfy returned {response.status_code}: {response.text}")
                return f"ntfy returned {response.status_code}"

        except httpx.ConnectError as e:
            logger.warning(f"Could not connect to ntfy server at {self.ntfy_url}: {e}")
            return f"Connection failed: {e}"
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
            return str(e)

    async def deliver(self, alert, urgency: str, content, deliver_at: Optional[datetime]) -> List[DeliveryOutcome]:
        """Send an alert's content; one outcome for the ntfy channel."""
        priority = self.URGENCY_PRIORITY.get(urgency, "default")
        tags = self.URGENCY_TAGS.get(urgency, ["airplane"])

        error = await self._send_to_ntfy(
            title=content.title,
            message=content.message(),
            priority=priority,
            tags=tags,
            click_url=f"{settings.base_url}/alerts/{alert.id}",
            deliver_at=deliver_at,
        )

        self.history.add(Notification(
            id=str(uuid.uuid4()),
            title=content.title,
            message=content.message(),
            priority=priority,
            timestamp=datetime.now(timezone.utc),
            type="alert",
            tags=tags,
            sent_to_ntfy=error is None,
            deliver_at=deliver_at,
        ))

        return [DeliveryOutcome(channel=self.channel, success=error is None, content=content.summary, error=error)]

    async def send_system_alert(
        self,
        title: str,
        message: str,
        priority: str = "default",
        alert_type: str = "info",  # info, warning, error
    ) -> bool:
        """Send system alert (quality changes, stale monitoring, etc.)."""
        tag_map = {
            "info": ["information_source"],
            "warning": ["warning"],
            "error": ["rotating_light", "x"],
        }
        tags = tag_map.get(alert_type, ["bell"])

        error = await self._send_to_ntfy(
            title=title,
            message=message,
            priority=priority,
            tags=tags,
            click_url=f"{settings.base_url}/status",
        )

        self.history.add(Notification(
            id=str(uuid.uuid4()),
            title=title,
            message=message,
            priority=priority,
            timestamp=datetime.now(timezone.utc),
            type="system",
            tags=tags,
            sent_to_ntfy=error is None,
        ))

        return error is None

    def get_notifications(self, limit: int = 50) -> List[Dict]:
        """Get recent notifications."""
        return self.history.get_recent(limit)

    def clear_notifications(self):
        """Clear notification history."""
        self.history.clear()


_global_notifier: Optional[NtfyNotifier] = None


def get_global_notifier() -> NtfyNotifier:
    global _global_notifier
    if _global_notifier is None:
        _global_notifier = NtfyNotifier()
    return _global_notifier


async def shutdown_notifier():
    """Close the global notifier's HTTP client."""
    global _global_notifier
    if _global_notifier is not None:
        await _global_notifier.close()
        _global_notifier = None
