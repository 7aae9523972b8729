"""Tests for ntfy delivery."""
import pytest
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx

from farewatch.services.alert_intelligence import SIGNIFICANT, URGENT, generate_content
from farewatch.services.notification import NtfyNotifier


def _content(urgency=SIGNIFICANT):
    return generate_content(urgency, "JFK-LAX", 500.0, 420.0, 0.82, departure_date=date(2026, 4, 20),
                            today=date(2026, 3, 2))


def _alert():
    alert = MagicMock()
    alert.id = 7
    return alert


def _notifier_with_response(status_code=200, text="ok"):
    notifier = NtfyNotifier(ntfy_url="http://ntfy.test", ntfy_topic="fares")
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    client = AsyncMock()
    client.post = AsyncMock(return_value=response)
    notifier._get_client = AsyncMock(return_value=client)
    return notifier, client


class TestDeliver:
    @pytest.mark.asyncio
    async def test_successful_delivery(self):
        notifier, client = _notifier_with_response()

        outcomes = await notifier.deliver(_alert(), SIGNIFICANT, _content(), None)

        assert len(outcomes) == 1
        assert outcomes[0].channel == "ntfy"
        assert outcomes[0].success is True
        assert "JFK-LAX" in outcomes[0].content
        url = client.post.call_args.args[0]
        headers = client.post.call_args.kwargs["headers"]
        assert url == "http://ntfy.test/fares"
        assert headers["Title"] == "Great Deal: JFK-LAX - Save $80"
        assert headers["Priority"] == "4"
        assert headers["Click"].endswith("/alerts/7")
        assert "At" not in headers

    @pytest.mark.asyncio
    async def test_urgent_priority(self):
        notifier, client = _notifier_with_response()
        await notifier.deliver(_alert(), URGENT, _content(URGENT), None)
        assert client.post.call_args.kwargs["headers"]["Priority"] == "5"

    @pytest.mark.asyncio
    async def test_future_delivery_uses_at_header(self):
        notifier, client = _notifier_with_response()
        deliver_at = datetime.utcnow() + timedelta(hours=2)

        await notifier.deliver(_alert(), SIGNIFICANT, _content(), deliver_at)

        headers = client.post.call_args.kwargs["headers"]
        assert headers["At"].isdigit()

    @pytest.mark.asyncio
    async def test_server_error_reported_not_raised(self):
        notifier, _ = _notifier_with_response(status_code=500, text="boom")

        outcomes = await notifier.deliver(_alert(), SIGNIFICANT, _content(), None)

        assert outcomes[0].success is False
        assert outcomes[0].error == "ntfy returned 500"

    @pytest.mark.asyncio
    async def test_connection_error_reported(self):
        notifier = NtfyNotifier(ntfy_url="http://ntfy.test", ntfy_topic="fares")
        client = AsyncMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        notifier._get_client = AsyncMock(return_value=client)

        outcomes = await notifier.deliver(_alert(), SIGNIFICANT, _content(), None)

        assert outcomes[0].success is False
        assert outcomes[0].error.startswith("Connection failed")

    @pytest.mark.asyncio
    async def test_history_records_delivery(self):
        notifier, _ = _notifier_with_response()
        await notifier.deliver(_alert(), SIGNIFICANT, _content(), None)

        recent = notifier.get_notifications()
        assert recent[0]["type"] == "alert"
        assert recent[0]["sent_to_ntfy"] is True

        notifier.clear_notifications()
        assert notifier.get_notifications() == []


class TestSystemAlert:
    @pytest.mark.asyncio
    async def test_send_system_alert(self):
        notifier, client = _notifier_with_response()
        assert await notifier.send_system_alert("Alert Quality Improved", "better", priority="low") is True
        headers = client.post.call_args.kwargs["headers"]
        assert headers["Priority"] == "2"
        assert headers["Tags"] == "information_source"

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        notifier = NtfyNotifier(ntfy_url="http://ntfy.test", ntfy_topic="fares")
        client = AsyncMock()
        notifier._http_client = client
        await notifier.close()
        client.aclose.assert_awaited_once()
        assert notifier._http_client is None
