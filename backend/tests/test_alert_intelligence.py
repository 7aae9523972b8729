"""Tests for alert urgency, suppression, content and delivery timing."""
import pytest
from datetime import date, datetime, timedelta

from farewatch.models import Alert
from farewatch.services.alert_intelligence import (
    MINOR,
    NONE,
    SIGNIFICANT,
    URGENT,
    AlertIntelligence,
    booking_window_label,
    classify_urgency,
    drop_percentage,
    duplicate_reasons,
    generate_content,
    notifications_in_last_hour,
    optimal_delivery_time,
    price_trend_label,
)

NOW = datetime(2026, 3, 2, 12, 0, 0)  # Monday, noon UTC


def _alert(target=500.0, departure=None, triggers=None, history=None):
    return Alert(
        filter_id=1,
        route_description="JFK-LAX",
        departure_date=departure or date(2026, 6, 1),
        target_price=target,
        triggers=triggers or [],
        notification_history=history or [],
    )


def _dispatched(minutes_ago):
    return {
        "id": f"t{minutes_ago}",
        "price": 420.0,
        "dispatched_at": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    }


class TestDropPercentage:
    def test_against_target(self):
        assert drop_percentage(500, 400) == 20.0

    def test_history_mean_takes_the_smaller_drop(self):
        # 20% below target but only ~4.8% below a 420 mean
        assert drop_percentage(500, 400, [410, 430]) == pytest.approx(4.76)

    def test_price_above_history_mean_uses_target(self):
        # Cheaper than target but above a ~401 route mean
        assert drop_percentage(500, 420, [395, 400, 405, 404]) == 16.0

    def test_history_mean_below_target_still_significant(self):
        assert drop_percentage(500, 420, [480, 480]) == 12.5

    def test_single_history_point_ignored(self):
        assert drop_percentage(500, 400, [410]) == 20.0

    def test_invalid_target(self):
        assert drop_percentage(0, 400) == 0.0


class TestClassifyUrgency:
    @pytest.mark.parametrize("drop,expected", [
        (20.0, URGENT),
        (15.0, URGENT),
        (12.0, SIGNIFICANT),
        (8.0, SIGNIFICANT),
        (5.0, MINOR),
        (3.0, MINOR),
        (2.9, NONE),
        (-4.0, NONE),
    ])
    def test_tiers(self, drop, expected):
        assert classify_urgency(drop, today=NOW.date()) == expected

    def test_near_departure_with_large_drop_is_urgent(self):
        assert classify_urgency(16.0, NOW.date() + timedelta(days=10), today=NOW.date()) == URGENT


class TestDuplicateSuppression:
    def test_counts_dispatched_triggers_in_last_hour(self):
        alert = _alert(triggers=[_dispatched(10), _dispatched(30), _dispatched(90)])
        assert notifications_in_last_hour(alert, NOW) == 2

    def test_untracked_notifications_count(self):
        alert = _alert(history=[{"channel": "ntfy", "content": "x", "success": True,
                                 "trigger_id": None, "timestamp": (NOW - timedelta(minutes=5)).isoformat()}])
        assert notifications_in_last_hour(alert, NOW) == 1

    def test_fourth_notification_in_an_hour_is_suppressed(self):
        alert = _alert(triggers=[_dispatched(5), _dispatched(15), _dispatched(25)])
        decision = AlertIntelligence().evaluate(alert, 420.0, 0.8, now=NOW)
        assert decision.should_send is False
        assert any("Notification limit reached" in r for r in decision.suppressed_reasons)

    def test_recent_successful_route_notification_suppresses(self):
        alert = _alert(history=[{
            "channel": "ntfy",
            "content": "Great Deal: JFK-LAX - Save $80",
            "success": True,
            "trigger_id": "abc",
            "timestamp": (NOW - timedelta(minutes=45)).isoformat(),
        }])
        assert any("Already notified" in r for r in duplicate_reasons(alert, NOW))

    def test_failed_route_notification_does_not_suppress(self):
        alert = _alert(history=[{
            "channel": "ntfy",
            "content": "Great Deal: JFK-LAX - Save $80",
            "success": False,
            "trigger_id": "abc",
            "timestamp": (NOW - timedelta(minutes=45)).isoformat(),
        }])
        assert duplicate_reasons(alert, NOW) == []


class TestContent:
    def test_labels(self):
        assert price_trend_label([500, 490, 480]) == "declining"
        assert price_trend_label([480, 490, 500]) == "rising"
        assert price_trend_label([480]) == "insufficient_data"
        assert booking_window_label(NOW.date() + timedelta(days=5), NOW.date()) == "last_minute"
        assert booking_window_label(NOW.date() + timedelta(days=200), NOW.date()) == "long_term"

    def test_significant_content(self):
        content = generate_content(
            SIGNIFICANT, "JFK-LAX", 500.0, 420.0, 0.82,
            departure_date=date(2026, 4, 20), history=[480, 470], today=NOW.date(),
        )
        assert content.title == "Great Deal: JFK-LAX - Save $80"
        assert "JFK-LAX" in content.summary
        assert content.body["savings"] == {"amount": 80.0, "percentage": 16.0}
        assert content.body["confidence"] == "82% confidence"
        assert content.booking_recommendation["action"] == "book_soon"
        assert content.context["historical_low"] == 470
        assert content.context["seasonal_factors"]["season"] == "spring"
        assert "Save $80" in content.message()

    def test_urgent_title(self):
        content = generate_content(URGENT, "JFK-LAX", 500.0, 400.0, 0.9, today=NOW.date())
        assert content.title.startswith("URGENT: JFK-LAX")
        assert content.call_to_action["primary"] == "Book Now - Limited Time"

    def test_content_is_deterministic(self):
        alert = _alert()
        first = AlertIntelligence().evaluate(alert, 420.0, 0.8, history=[480, 490], now=NOW)
        second = AlertIntelligence().evaluate(alert, 420.0, 0.8, history=[480, 490], now=NOW)
        assert first.content.as_dict() == second.content.as_dict()
        assert first.deliver_at == second.deliver_at


class TestDeliveryTiming:
    def test_urgent_is_immediate(self):
        assert optimal_delivery_time(URGENT, now=NOW, tz_name="UTC") == NOW

    def test_significant_daytime_waits_fifteen_minutes(self):
        assert optimal_delivery_time(SIGNIFICANT, now=NOW, tz_name="UTC") == NOW + timedelta(minutes=15)

    def test_significant_late_night_waits_for_morning(self):
        late = NOW.replace(hour=23)
        assert optimal_delivery_time(SIGNIFICANT, now=late, tz_name="UTC") == datetime(2026, 3, 3, 8, 0)

    def test_significant_early_morning(self):
        early = NOW.replace(hour=3)
        assert optimal_delivery_time(SIGNIFICANT, now=early, tz_name="UTC") == datetime(2026, 3, 2, 8, 0)

    def test_minor_business_hours_waits_an_hour(self):
        assert optimal_delivery_time(MINOR, now=NOW, tz_name="UTC") == NOW + timedelta(hours=1)

    def test_minor_friday_evening_waits_for_monday(self):
        friday_evening = datetime(2026, 3, 6, 19, 0)
        assert optimal_delivery_time(MINOR, now=friday_evening, tz_name="UTC") == datetime(2026, 3, 9, 9, 0)

    def test_minor_weekday_early_morning(self):
        assert optimal_delivery_time(MINOR, now=NOW.replace(hour=7), tz_name="UTC") == datetime(2026, 3, 2, 9, 0)

    def test_none_is_not_delivered(self):
        assert optimal_delivery_time(NONE, now=NOW, tz_name="UTC") is None

    def test_local_timezone_applies_quiet_hours(self):
        # 04:00 UTC is 23:00 the previous evening in New York (EST)
        now = datetime(2026, 3, 2, 4, 0)
        assert optimal_delivery_time(SIGNIFICANT, now=now, tz_name="America/New_York") == datetime(2026, 3, 2, 13, 0)


class TestAlertIntelligence:
    def test_small_drop_not_sent(self):
        decision = AlertIntelligence().evaluate(_alert(), 490.0, 0.8, now=NOW, tz_name="UTC")
        assert decision.urgency == NONE
        assert decision.should_send is False

    def test_invalid_price(self):
        decision = AlertIntelligence().evaluate(_alert(), 0.0, 0.8, now=NOW)
        assert decision.should_send is False
        assert decision.suppressed_reasons == ["Invalid price"]

    def test_urgent_delivered_now(self):
        decision = AlertIntelligence().evaluate(_alert(), 400.0, 0.9, now=NOW, tz_name="UTC")
        assert decision.urgency == URGENT
        assert decision.should_send is True
        assert decision.deliver_at == NOW

    def test_break_above_route_mean_is_still_sent(self):
        history = [395.0, 398.0, 400.0, 402.0, 405.0, 406.0]
        decision = AlertIntelligence().evaluate(_alert(), 420.0, 0.86, history=history, now=NOW, tz_name="UTC")
        assert decision.drop_percentage == 16.0
        assert decision.urgency == URGENT
        assert decision.should_send is True
