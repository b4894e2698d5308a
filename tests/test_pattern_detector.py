"""
Tests for the PatternDetector.
"""

from datetime import date, timedelta

import pytest

from analytics.pattern_detector import CellProfile, PatternDetector, confidence_for, grid_id_for
from api.analytics_models import PatternType
from core.errors import InvalidFilter, PatternNotFound


def make_cell(lat, hours=None, days=None, methods=None):
    cell = CellProfile(lat=lat, lng=-77.1)
    for hour, count in (hours or {}).items():
        cell.hours[hour] = count
    for day, count in (days or {}).items():
        cell.days[day] = count
    cell.methods.update(methods or {})
    return cell


def daily_counts(boundary_base, mid_base, year=2023):
    """One row per day of ``year``; count varies with the day to keep variance."""
    rows = []
    current = date(year, 1, 1)
    while current.year == year:
        next_month = (current.replace(day=28) + timedelta(days=4)).replace(day=1)
        days_in_month = (next_month - timedelta(days=1)).day
        base = boundary_base if current.day > days_in_month - 5 else mid_base
        rows.append((current, base + current.day % 3))
        current += timedelta(days=1)
    return rows


# ============================================================================
# HELPERS
# ============================================================================

def test_grid_id_for():
    assert grid_id_for(39.0461, -77.1) == "39.046_-77.100"


def test_confidence_scales_with_samples():
    assert confidence_for(0.8, 2000) == 0.8
    assert confidence_for(0.8, 200) == 0.08
    assert confidence_for(1.5, 5000) == 1.0


def test_cell_profile_tie_breaks():
    cell = make_cell(39.0, hours={3: 5, 1: 5}, days={4: 2, 2: 2}, methods={"radar": 4, "laser": 4})
    assert cell.peak_hour() == 1
    assert cell.peak_day() == 2
    assert cell.primary_method() == "laser"
    assert cell.total == 8


# ============================================================================
# DETECTORS
# ============================================================================

def test_time_cluster_detected():
    hours = {h: 1 for h in range(24)}
    hours.update({7: 10, 8: 40, 9: 20})
    cells = [make_cell(39.0 + i / 1000, hours=hours, methods={"radar": 91}) for i in range(1, 4)]

    patterns = PatternDetector(store=None).detect_time_clusters(cells)

    assert len(patterns) == 1
    pattern = patterns[0]
    assert pattern.id == "time_cluster_h08"
    assert pattern.pattern_type == PatternType.TIME_CLUSTER
    assert pattern.location_count == 3
    assert pattern.statistics["peakHour"] == 8
    assert pattern.statistics["totalStops"] == 273
    assert pattern.statistics["maxPValue"] < 0.05
    assert pattern.confidence == pytest.approx(0.105, abs=1e-3)


def test_time_cluster_needs_enough_locations():
    hours = {8: 100}
    cells = [make_cell(39.0 + i / 1000, hours=hours, methods={"radar": 100}) for i in range(1, 3)]
    assert PatternDetector(store=None).detect_time_clusters(cells) == []


def test_method_zone_detected():
    radar_cells = [
        make_cell(39.0 + i / 1000, methods={"radar": 80, "patrol": 20}) for i in range(1, 4)
    ]
    patrol_cells = [
        make_cell(39.1 + i / 1000, methods={"radar": 20, "patrol": 80}) for i in range(1, 4)
    ]
    system = {"radar": 200, "patrol": 800}

    patterns = PatternDetector(store=None).detect_method_zones(radar_cells + patrol_cells, system)

    assert [p.id for p in patterns] == ["method_zone_radar"]
    assert patterns[0].statistics["lift"] == 4.0
    assert patterns[0].statistics["totalStops"] == 300


def test_method_zone_skips_unknown():
    cells = [make_cell(39.0 + i / 1000, methods={"unknown": 100}) for i in range(1, 4)]
    assert PatternDetector(store=None).detect_method_zones(cells, {"unknown": 10, "radar": 990}) == []


def test_day_pattern_detected():
    days = {0: 60, 1: 5, 2: 5, 3: 5, 4: 5, 5: 5, 6: 5}
    cells = [make_cell(39.0 + i / 1000, days=days, methods={"radar": 90}) for i in range(1, 4)]

    patterns = PatternDetector(store=None).detect_day_patterns(cells)

    assert [p.id for p in patterns] == ["day_pattern_monday"]
    assert patterns[0].statistics["peakDay"] == "Monday"
    assert patterns[0].statistics["avgDayRatio"] == pytest.approx(4.67, abs=0.01)
    assert patterns[0].statistics["maxPValue"] < 0.05


def test_sparse_concentration_is_not_significant():
    detector = PatternDetector(store=None)
    detector.min_samples = 1
    # Every stop in the top hours or on one day, but too few stops to rule out chance
    cells = [
        make_cell(
            39.0 + i / 1000, hours={8: 1, 9: 1, 10: 1}, days={0: 2, 1: 1}, methods={"radar": 3}
        )
        for i in range(1, 4)
    ]

    assert detector.detect_time_clusters(cells) == []
    assert detector.detect_day_patterns(cells) == []


def test_quota_effect_detected():
    pattern, ratio = PatternDetector(store=None).detect_quota_effect(daily_counts(30, 20))

    assert pattern is not None
    assert pattern.id == "quota_effect_month_end"
    assert pattern.pattern_type == PatternType.QUOTA_EFFECT
    assert pattern.statistics["monthEndDates"] == 60
    assert pattern.statistics["pValue"] < 0.05
    assert ratio > 1.15
    assert 0 < pattern.confidence <= 1


def test_quota_effect_absent_still_reports_ratio():
    pattern, ratio = PatternDetector(store=None).detect_quota_effect(daily_counts(20, 20))
    assert pattern is None
    assert ratio == pytest.approx(1.0, abs=0.05)


def test_quota_effect_needs_enough_dates():
    assert PatternDetector(store=None).detect_quota_effect(daily_counts(30, 20)[:40]) == (None, None)


# ============================================================================
# DISCOVERY
# ============================================================================

@pytest.mark.asyncio
async def test_discover_patterns(fake_store_class, pattern_responses):
    report = await PatternDetector(fake_store_class(pattern_responses)).discover_patterns()

    assert {p.id for p in report.patterns} == {
        "time_cluster_h08",
        "method_zone_radar",
        "day_pattern_wednesday",
    }
    confidences = [p.confidence for p in report.patterns]
    assert confidences == sorted(confidences, reverse=True)

    assert report.summary.total_patterns == 3
    assert report.summary.pattern_types == {"day_pattern": 1, "method_zone": 1, "time_cluster": 1}
    assert report.summary.locations_analyzed == 3
    assert report.summary.quota_effect_detected is False
    assert report.summary.quota_ratio is None

    zone = next(p for p in report.patterns if p.id == "method_zone_radar")
    assert [loc.grid_id for loc in zone.locations] == [
        "39.001_-77.100", "39.002_-77.100", "39.003_-77.100",
    ]


@pytest.mark.asyncio
async def test_type_filter_keeps_full_summary(fake_store_class, pattern_responses):
    detector = PatternDetector(fake_store_class(pattern_responses))
    report = await detector.discover_patterns("time_cluster")

    assert [p.id for p in report.patterns] == ["time_cluster_h08"]
    assert report.summary.total_patterns == 3


@pytest.mark.asyncio
async def test_unknown_type_rejected_before_querying(fake_store_class):
    store = fake_store_class()
    with pytest.raises(InvalidFilter):
        await PatternDetector(store).discover_patterns("bogus")
    assert store.calls == []


@pytest.mark.asyncio
async def test_get_pattern(fake_store_class, pattern_responses):
    detector = PatternDetector(fake_store_class(pattern_responses))

    pattern = await detector.get_pattern("method_zone_radar")
    assert pattern.statistics["method"] == "radar"

    with pytest.raises(PatternNotFound):
        await detector.get_pattern("time_cluster_h23")


@pytest.mark.asyncio
async def test_cell_floor_is_bound(fake_store_class, pattern_responses):
    store = fake_store_class(pattern_responses)
    await PatternDetector(store).discover_patterns()
    assert store.params_for("pattern_cell_hours") == {"min_cell_stops": 30}
