"""Tests for price break detection."""
import pytest
from datetime import date, datetime, timedelta

from farewatch.models import Alert, CabinClass, MaxStops
from farewatch.models.price_observation import ValidationStatus
from farewatch.schemas import Quote
from farewatch.services.alert_intelligence import SIGNIFICANT, AlertIntelligence
from farewatch.services.price_break_detector import (
    PriceBreakDetector,
    calculate_confidence,
    matches_filter_criteria,
    percentage_below,
)
from farewatch.services.route_statistics import build_statistics, seasonal_context

from conftest import make_filter

NOW = datetime(2026, 3, 1, 12, 0, 0)
SPRING_DEPARTURE = date(2026, 4, 20)
HISTORY = [478, 482, 476, 485, 480, 487, 483, 486, 479, 477, 484, 488]


def _stats(prices=HISTORY, departure=SPRING_DEPARTURE):
    rows = [
        (price, ValidationStatus.VALID, NOW - timedelta(hours=len(prices) - i))
        for i, price in enumerate(prices)
    ]
    stats = build_statistics("JFK-LAX", rows, now=NOW)
    stats.seasonal = seasonal_context(departure)
    return stats


def _quote(price=420.0, **kwargs):
    values = dict(
        price=price,
        provider="skyscanner",
        airline="DL",
        flight_number="DL123",
        departure_time="08:30",
        departure_date=SPRING_DEPARTURE,
    )
    values.update(kwargs)
    return Quote(**values)


def _filter(**kwargs):
    return make_filter(departure=SPRING_DEPARTURE, target_price=500.0, **kwargs)


class TestPercentageBelow:
    def test_below(self):
        assert percentage_below(500, 420) == 16.0

    def test_above_is_negative(self):
        assert percentage_below(500, 550) == -10.0

    def test_zero_reference(self):
        assert percentage_below(0, 420) == 0.0


class TestMatchesFilterCriteria:
    def test_matching_quote(self):
        assert matches_filter_criteria(_filter(), _quote(cabin_class="economy")) == []

    def test_cabin_mismatch(self):
        violations = matches_filter_criteria(_filter(cabin_class=CabinClass.BUSINESS), _quote(cabin_class="economy"))
        assert len(violations) == 1

    def test_any_cabin_accepts_all(self):
        assert matches_filter_criteria(_filter(cabin_class=CabinClass.ANY), _quote(cabin_class="first")) == []

    def test_nonstop_preference(self):
        assert matches_filter_criteria(_filter(max_stops=MaxStops.NONSTOP), _quote(stops=1))
        assert matches_filter_criteria(_filter(max_stops=MaxStops.NONSTOP), _quote(stops=0)) == []

    def test_one_stop_preference(self):
        assert matches_filter_criteria(_filter(max_stops=MaxStops.ONE_STOP), _quote(stops=2))
        assert matches_filter_criteria(_filter(max_stops=MaxStops.ONE_STOP), _quote(stops=1)) == []

    def test_airline_preferences(self):
        search_filter = _filter(airline_preferences=["AA", "UA"])
        assert matches_filter_criteria(search_filter, _quote(airline="DL"))
        assert matches_filter_criteria(search_filter, _quote(airline="AA")) == []


class TestCalculateConfidence:
    def test_bounded(self):
        stats = _stats()
        assert 0.0 <= calculate_confidence(100, 90, stats) <= 1.0
        assert calculate_confidence(420, 16, stats, spam_penalty=5.0) == 0.0

    def test_scaled_by_data_quality(self):
        stats = _stats()
        full = calculate_confidence(420, 16, stats)
        stats.data_quality_score = 0.5
        assert calculate_confidence(420, 16, stats) == pytest.approx(full * 0.5)

    def test_thin_history_lowers_confidence(self):
        assert calculate_confidence(420, 16, _stats([480, 490])) < calculate_confidence(420, 16, _stats())


class TestPriceBreakDetector:
    def test_clear_break_on_established_route(self):
        search_filter = _filter()
        result = PriceBreakDetector().detect(search_filter, [_quote()], _stats(), now=NOW)

        assert result.detections == 1
        best = result.best
        assert best.is_price_break is True
        assert best.confidence >= 0.6
        assert best.drop_amount == 80.0
        assert best.drop_percentage == 16.0
        assert best.spam.is_spam is False
        assert best.statistics["count"] == len(HISTORY)

        alert = Alert(
            filter_id=1,
            route_description=search_filter.route_description,
            departure_date=SPRING_DEPARTURE,
            target_price=500.0,
            triggers=[],
            notification_history=[],
        )
        decision = AlertIntelligence().evaluate(alert, best.price, best.confidence, history=HISTORY, now=NOW)
        assert decision.urgency == SIGNIFICANT
        assert decision.drop_percentage == pytest.approx(12.88, abs=0.05)
        assert decision.should_send is True

    def test_tiny_sample_low_price_is_spam(self):
        result = PriceBreakDetector().detect(_filter(), [_quote(50)], _stats([480, 490]), now=NOW)

        assert result.detections == 0
        assert result.false_positives_prevented == 1
        only = result.results[0]
        assert only.false_positive_prevented is True
        assert only.is_price_break is False
        assert only.rejection_reasons

    def test_price_at_or_above_target_never_breaks(self):
        result = PriceBreakDetector().detect(_filter(), [_quote(500), _quote(520)], _stats(), now=NOW)
        assert result.detections == 0
        assert all(not r.is_price_break for r in result.results)

    def test_below_floor_rejected_without_spam_run(self):
        result = PriceBreakDetector().detect(_filter(), [_quote(5)], _stats(), now=NOW)
        only = result.results[0]
        assert only.rejection_reasons == ["Price below minimum threshold"]
        assert only.spam is None
        assert result.false_positives_prevented == 0

    def test_criteria_violation_is_not_a_false_positive(self):
        search_filter = _filter(max_stops=MaxStops.NONSTOP)
        result = PriceBreakDetector().detect(search_filter, [_quote(stops=2)], _stats(), now=NOW)
        assert result.false_positives_prevented == 0
        assert result.detections == 0

    def test_filter_min_drop_overrides_default(self):
        result = PriceBreakDetector().detect(_filter(min_drop_percentage=20.0), [_quote()], _stats(), now=NOW)
        assert result.detections == 0
        assert any("below minimum 20.0%" in r for r in result.results[0].rejection_reasons)

    def test_too_many_recent_drops_blocks(self):
        falling = [520, 515, 510, 505, 500, 495, 490, 485, 480, 475]
        result = PriceBreakDetector().detect(_filter(), [_quote(440)], _stats(falling), now=NOW)
        assert result.detections == 0

    def test_breaks_sorted_first_then_by_confidence(self):
        quotes = [_quote(520), _quote(430), _quote(420)]
        result = PriceBreakDetector().detect(_filter(), quotes, _stats(), now=NOW)

        assert [r.is_price_break for r in result.results] == [True, True, False]
        assert result.results[0].confidence >= result.results[1].confidence
        assert result.best.price == 420

    def test_deterministic(self):
        detector = PriceBreakDetector()
        first = detector.detect(_filter(), [_quote()], _stats(), now=NOW)
        second = detector.detect(_filter(), [_quote()], _stats(), now=NOW)
        assert first.best.as_dict() == second.best.as_dict()

    def test_analysis_errors_are_collected(self):
        class Exploding(PriceBreakDetector):
            def analyze_quote(self, search_filter, quote, stats, now=None):
                raise ValueError("bad quote")

        result = Exploding().detect(_filter(), [_quote()], _stats(), now=NOW)
        assert result.success is False
        assert result.results == []
