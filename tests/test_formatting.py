"""
Unit tests for distance and duration labels (Phase 3).
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from trip_pipeline import (
    METERS_PER_MILE,
    InputError,
    Route,
    Segment,
    TripSettings,
    Waypoint,
    fmt_distance,
    fmt_duration,
    leg_table,
    round_to_accuracy,
    trip_totals,
)


def minutes(m: float) -> float:
    return m * 60


def miles(m: float) -> float:
    return m * METERS_PER_MILE


# ---------------------------------------------------------------------------
# Duration
# ---------------------------------------------------------------------------

class TestFmtDuration:
    def test_zero(self):
        assert fmt_duration(0) == "0 minutes"

    def test_ninety_three_minutes_rounds_to_quarter_hour(self):
        assert fmt_duration(minutes(93)) == "1 hour 30 minutes"

    def test_under_an_hour(self):
        assert fmt_duration(minutes(50)) == "45 minutes"

    def test_short_trip_rounds_down_to_zero(self):
        assert fmt_duration(minutes(7)) == "0 minutes"

    def test_rounds_up_into_first_hour(self):
        assert fmt_duration(minutes(59)) == "1 hour 0 minutes"

    def test_exactly_one_hour_is_singular(self):
        assert fmt_duration(3600) == "1 hour 0 minutes"

    def test_plural_hours(self):
        assert fmt_duration(minutes(1007)) == "16 hours 45 minutes"

    def test_full_day_shows_hours(self):
        assert fmt_duration(minutes(1440)) == "24 hours 0 minutes"

    def test_more_than_a_day_has_no_day_unit(self):
        label = fmt_duration(minutes(1500))
        assert label == "25 hours 0 minutes"
        assert "day" not in label

    def test_several_days(self):
        assert fmt_duration(minutes(3 * 1440 + 130)) == "74 hours 15 minutes"

    def test_thousands_separator_on_hours(self):
        assert fmt_duration(100_000 * 3600) == "100,000 hours 0 minutes"

    def test_beyond_timedelta_range(self):
        # ~317,000 years, past what a 64-bit nanosecond timedelta can hold
        assert fmt_duration(1e13) == "2,777,777,777 hours 45 minutes"

    @pytest.mark.parametrize("seconds", [0, 1, 449, 451, 3539, 5580, 60420, 90000, 123456.7])
    def test_stable_under_re_rounding(self, seconds):
        assert fmt_duration(seconds) == fmt_duration(round_to_accuracy(seconds, 900))

    def test_configurable_increment(self):
        assert fmt_duration(minutes(93), increment_minutes=5) == "1 hour 35 minutes"

    @pytest.mark.parametrize("bad", [-1, float("nan"), float("inf"), None, "soon"])
    def test_rejects_invalid(self, bad):
        with pytest.raises(InputError):
            fmt_duration(bad)


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

class TestFmtDistance:
    def test_one_meter(self):
        assert fmt_distance(1) == "0 miles"

    def test_one_mile_rounds_to_zero_at_ten_mile_accuracy(self):
        assert fmt_distance(1609.344) == "0 miles"

    def test_zero_length_route(self):
        assert fmt_distance(0) == "0 miles"

    def test_rounds_to_nearest_ten(self):
        assert fmt_distance(miles(14)) == "10 miles"
        assert fmt_distance(miles(16)) == "20 miles"

    def test_thousands_separator(self):
        assert fmt_distance(miles(1240)) == "1,240 miles"
        assert fmt_distance(miles(1236)) == "1,240 miles"

    def test_configurable_accuracy(self):
        assert fmt_distance(miles(1236), accuracy=1) == "1,236 miles"
        assert fmt_distance(miles(1236), accuracy=100) == "1,200 miles"

    def test_rejects_negative(self):
        with pytest.raises(InputError):
            fmt_distance(-5)


# ---------------------------------------------------------------------------
# Leg table and totals
# ---------------------------------------------------------------------------

def make_route(i: int, distance: float, duration: float) -> Route:
    a = Waypoint(f"W{i}", 0.0, float(i))
    b = Waypoint(f"W{i + 1}", 0.0, float(i + 1))
    return Route(Segment(i, a, b), ((0.0, float(i)), (0.0, float(i + 1))), distance, duration)


class TestLegTable:
    def test_labels_per_leg(self):
        routes = [make_route(0, miles(1240), minutes(93)), make_route(1, 0.0, 0.0)]
        legs = leg_table(routes)
        assert list(legs["Leg"]) == [1, 2]
        assert list(legs["Distance"]) == ["1,240 miles", "0 miles"]
        assert list(legs["Duration"]) == ["1 hour 30 minutes", "0 minutes"]

    def test_empty(self):
        legs = leg_table([])
        assert legs.empty
        assert "Duration" in legs.columns

    def test_totals_use_settings(self):
        routes = [make_route(0, miles(100), minutes(800)), make_route(1, miles(36), minutes(700))]
        totals = trip_totals(routes, TripSettings(distance_accuracy=1, duration_increment_minutes=15))
        assert totals["legs"] == 2
        assert totals["distance"] == "136 miles"
        assert totals["duration"] == "25 hours 0 minutes"
