"""Tests for the persistent models."""
import pytest
from datetime import date, datetime, timedelta

from sqlalchemy import text
from sqlalchemy.orm.exc import StaleDataError

from farewatch.models import Alert, AlertStatus, ImmutableObservationError, ValidationStatus
from farewatch.models.price_observation import observation_quality_score

from conftest import make_filter, make_observation


class TestSearchFilter:
    def test_valid_filter_has_no_errors(self):
        assert make_filter().validation_errors() == []

    def test_missing_route_and_dates(self):
        errors = make_filter(origin_airports=[], destination_airports=[], departure_dates=[]).validation_errors()
        assert "At least one origin airport is required" in errors
        assert "At least one destination airport is required" in errors
        assert "At least one departure date is required" in errors

    def test_passenger_rules(self):
        assert "Must have at least one adult" in make_filter(adults=0).validation_errors()
        assert "Cannot exceed 9 passengers" in make_filter(adults=6, children=4).validation_errors()

    def test_price_rules(self):
        assert "Target price must be positive" in make_filter(target_price=0).validation_errors()
        assert "Minimum price must be less than maximum price" in make_filter(
            min_price=500, max_price=100
        ).validation_errors()
        assert "Target price must be within min/max range" in make_filter(
            target_price=5000, max_price=1000
        ).validation_errors()

    def test_timezone_must_exist(self):
        assert "Unknown timezone: Mars/Olympus" in make_filter(timezone="Mars/Olympus").validation_errors()
        assert make_filter(timezone="America/New_York").validation_errors() == []

    def test_unparseable_dates_are_ignored(self):
        search_filter = make_filter(departure_dates=["2026-05-01", "someday", "2026-04-01"])
        assert search_filter.departure_dates_list == [date(2026, 4, 1), date(2026, 5, 1)]
        assert search_filter.earliest_departure == date(2026, 4, 1)

    def test_route_and_display_name(self):
        search_filter = make_filter(origin_airports=["JFK", "EWR"], destination_airports=["LAX"])
        assert search_filter.route_description == "JFK,EWR-LAX"
        assert search_filter.display_name == "JFK,EWR-LAX (target $500)"

    def test_urgency(self):
        today = date(2026, 3, 1)
        assert make_filter(departure=today + timedelta(days=20)).is_urgent(today) is True
        assert make_filter(departure=today + timedelta(days=90)).is_urgent(today) is False
        assert make_filter(departure=today + timedelta(days=90), urgent=True).is_urgent(today) is True

    def test_soft_deactivation(self, db_session, search_filter):
        search_filter.deactivate()
        db_session.commit()
        assert search_filter.is_active is False
        search_filter.activate()
        assert search_filter.is_active is True


class TestPriceObservation:
    def test_stored_fields_are_immutable(self, db_session, search_filter):
        observation = make_observation("JFK-LAX", 420.0, filter_id=search_filter.id)
        db_session.add(observation)
        db_session.commit()

        with pytest.raises(ImmutableObservationError):
            observation.price = 100.0

    def test_status_transitions_allowed(self, db_session, search_filter):
        observation = make_observation("JFK-LAX", 420.0, filter_id=search_filter.id)
        db_session.add(observation)
        db_session.commit()

        observation.mark_suspicious()
        db_session.commit()
        assert observation.validation_status == ValidationStatus.SUSPICIOUS
        assert observation.data_quality_score < 1.0

        observation.mark_invalid()
        assert observation.validation_status == ValidationStatus.INVALID

        observation.mark_valid()
        assert observation.validation_status == ValidationStatus.VALID

    def test_quality_score(self):
        now = datetime(2026, 3, 1, 12)
        assert observation_quality_score(ValidationStatus.VALID, now, now) == 1.0
        assert observation_quality_score(ValidationStatus.SUSPICIOUS, now, now) == pytest.approx(0.7)
        assert observation_quality_score(ValidationStatus.VALID, now - timedelta(days=3), now) == pytest.approx(0.9)
        assert observation_quality_score(ValidationStatus.INVALID, now - timedelta(days=3), now) == pytest.approx(0.3)

    def test_deleting_filter_keeps_observations(self, db_session, search_filter):
        observation = make_observation("JFK-LAX", 420.0, filter_id=search_filter.id)
        db_session.add(observation)
        db_session.commit()

        db_session.delete(search_filter)
        db_session.commit()
        db_session.expire_all()
        assert observation.filter_id is None


class TestAlert:
    def _alert(self, db_session, search_filter):
        alert = Alert(
            filter_id=search_filter.id,
            route_description=search_filter.route_description,
            target_price=search_filter.target_price,
            triggers=[],
            notification_history=[],
        )
        db_session.add(alert)
        db_session.commit()
        return alert

    def test_defaults(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        assert alert.status == AlertStatus.ACTIVE
        assert alert.version == 1

    def test_append_trigger_persists(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        entry = alert.append_trigger(
            price=420.0, provider="skyscanner", confidence=0.8, reasons=["Near historical minimum"],
            drop_amount=80.0, drop_percentage=16.0, quote={"price": 420.0}, statistics={"count": 12},
        )
        db_session.commit()
        db_session.expire_all()

        assert len(alert.triggers) == 1
        assert alert.triggers[0]["id"] == entry["id"]
        assert alert.latest_trigger["dispatched_at"] is None
        assert alert.version == 2

    def test_trigger_dispatched_once(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        entry = alert.append_trigger(
            price=420.0, provider="skyscanner", confidence=0.8, reasons=[],
            drop_amount=80.0, drop_percentage=16.0, quote={}, statistics={},
        )
        assert alert.mark_trigger_dispatched(entry["id"], "significant", None) is True
        assert alert.mark_trigger_dispatched(entry["id"], "significant", None) is False
        assert alert.latest_trigger["urgency"] == "significant"

    def test_record_notification(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        alert.record_notification("ntfy", "Great Deal: JFK-LAX", success=False, error="HTTP 500")
        db_session.commit()
        db_session.expire_all()

        entry = alert.notification_history[0]
        assert entry["success"] is False
        assert entry["error"] == "HTTP 500"

    def test_concurrent_writer_gets_stale_data_error(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        assert alert.version == 1

        # Another worker commits first and bumps the version
        db_session.execute(text("UPDATE alerts SET version = version + 1 WHERE id = :id"), {"id": alert.id})

        alert.current_price = 460.0
        with pytest.raises(StaleDataError):
            db_session.commit()
        db_session.rollback()

    def test_filter_delete_cascades_to_alert(self, db_session, search_filter):
        alert = self._alert(db_session, search_filter)
        alert_id = alert.id
        db_session.delete(search_filter)
        db_session.commit()
        db_session.expire_all()
        assert db_session.get(Alert, alert_id) is None
