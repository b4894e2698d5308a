"""
Tests for the ThresholdAnalyzer.
"""

from decimal import Decimal

import pytest

from analytics.filters import SpatialFilter
from analytics.threshold_analyzer import ThresholdAnalyzer, bucket_for, strictness_for
from api.analytics_models import Strictness


@pytest.fixture
def threshold_responses():
    return {
        "threshold_speed_values": [
            {"speed_over": 3, "count": 10},
            {"speed_over": 7, "count": 20},
            {"speed_over": 12, "count": 40},
            {"speed_over": 17, "count": 20},
            {"speed_over": 22, "count": 5},
            {"speed_over": 27, "count": 3},
            {"speed_over": 35, "count": 2},
        ],
        "threshold_by_method": [
            {
                "method": "radar",
                "count": 60,
                "avg_speed_over": Decimal("14.2"),
                "median_speed_over": 13.0,
                "p10_speed_over": 8.6,
            },
            {
                "method": "laser",
                "count": 40,
                "avg_speed_over": 10.5,
                "median_speed_over": 10.0,
                "p10_speed_over": 6.0,
            },
        ],
        "threshold_by_location": [
            {"lat": Decimal("39.05"), "lng": Decimal("-77.10"), "count": 25,
             "avg_speed_over": 9.0, "min_speed_over": 3},
            {"lat": Decimal("39.06"), "lng": Decimal("-77.11"), "count": 30,
             "avg_speed_over": 18.0, "min_speed_over": 10},
            {"lat": Decimal("39.07"), "lng": Decimal("-77.12"), "count": 40,
             "avg_speed_over": 13.0, "min_speed_over": 6},
            {"lat": Decimal("39.08"), "lng": Decimal("-77.13"), "count": 5,
             "avg_speed_over": 5.0, "min_speed_over": 1},
        ],
        "threshold_by_speed_limit": [
            {"posted_limit": 55, "count": 150, "avg_speed_over": 16.0, "median_speed_over": 15.0},
            {"posted_limit": 25, "count": 200, "avg_speed_over": 11.0, "median_speed_over": 10.0},
            {"posted_limit": 35, "count": 50, "avg_speed_over": 12.0, "median_speed_over": 12.0},
        ],
    }


@pytest.mark.parametrize("avg,expected", [
    (9.0, Strictness.STRICT),
    (11.9, Strictness.STRICT),
    (12.0, Strictness.MODERATE),
    (14.9, Strictness.MODERATE),
    (15.0, Strictness.LENIENT),
])
def test_strictness_for(avg, expected):
    assert strictness_for(avg) == expected


@pytest.mark.parametrize("speed_over,expected", [
    (1, "1-4"),
    (4, "1-4"),
    (5, "5-9"),
    (14, "10-14"),
    (29, "25-29"),
    (30, "30+"),
    (80, "30+"),
])
def test_bucket_for(speed_over, expected):
    assert bucket_for(speed_over) == expected


@pytest.mark.asyncio
async def test_overall_distribution(fake_store_class, threshold_responses):
    profile = await ThresholdAnalyzer(fake_store_class(threshold_responses)).analyze_thresholds()
    overall = profile.overall

    assert overall.total_speed_violations == 100
    assert [b.bucket for b in overall.distribution] == [
        "1-4", "5-9", "10-14", "15-19", "20-24", "25-29", "30+",
    ]
    assert [b.percentage for b in overall.distribution] == [10.0, 20.0, 40.0, 20.0, 5.0, 3.0, 2.0]
    assert [b.cumulative_percentage for b in overall.distribution] == [
        10.0, 30.0, 70.0, 90.0, 95.0, 98.0, 100.0,
    ]
    assert overall.average_speed_over == 12.5
    assert overall.median_speed_over == 12.0
    assert overall.percentiles.p10 == 7
    assert overall.percentiles.p25 == 7
    assert overall.percentiles.p50 == 12
    assert overall.percentiles.p75 == 17
    percentiles = overall.percentiles
    assert percentiles.p10 <= percentiles.p25 <= percentiles.p50 <= percentiles.p75 <= percentiles.p90
    assert overall.insight == (
        "Under 7 mph over is rarely ticketed (30% of tickets). Most tickets are 12+ over."
    )


@pytest.mark.asyncio
async def test_recommendations(fake_store_class, threshold_responses):
    profile = await ThresholdAnalyzer(fake_store_class(threshold_responses)).analyze_thresholds()

    assert profile.recommendations.general_threshold == 7
    assert profile.recommendations.safe_buffer == 5
    assert [band.risk for band in profile.recommendations.risk_levels] == [
        "very_low", "low", "moderate", "high", "very_high",
    ]


@pytest.mark.asyncio
async def test_method_thresholds(fake_store_class, threshold_responses):
    profile = await ThresholdAnalyzer(fake_store_class(threshold_responses)).analyze_thresholds()
    methods = profile.by_method.methods

    assert [m.method for m in methods] == ["radar", "laser"]
    assert methods[0].avg_speed_over == 14.2
    assert methods[0].min_typical == 9
    assert methods[0].strictness == Strictness.MODERATE
    assert methods[1].strictness == Strictness.STRICT
    assert profile.by_method.insight == (
        "laser has lowest avg (10.5 over). Different methods have different thresholds."
    )


@pytest.mark.asyncio
async def test_method_thresholds_skip_unknown_methods(fake_store_class, threshold_responses):
    threshold_responses["threshold_by_method"].append({
        "method": "unknown",
        "count": 500,
        "avg_speed_over": 4.0,
        "median_speed_over": 4.0,
        "p10_speed_over": 1.0,
    })
    store = fake_store_class(threshold_responses)
    profile = await ThresholdAnalyzer(store).analyze_thresholds()

    assert [m.method for m in profile.by_method.methods] == ["radar", "laser"]
    assert profile.by_method.insight.startswith("laser has lowest avg")
    sql = next(sql for name, sql, _ in store.calls if name == "threshold_by_method")
    assert "arrest_type IS NOT NULL" in sql


@pytest.mark.asyncio
async def test_location_thresholds(fake_store_class, threshold_responses):
    profile = await ThresholdAnalyzer(fake_store_class(threshold_responses)).analyze_thresholds()
    by_location = profile.by_location

    assert [a.grid_id for a in by_location.strict_areas] == ["39.05_-77.10"]
    assert [a.grid_id for a in by_location.lenient_areas] == ["39.06_-77.11"]
    assert by_location.strict_areas[0].ticket_count == 25
    assert by_location.insight == (
        "Some areas ticket at 9 over avg, while lenient areas average 18 over."
    )


@pytest.mark.asyncio
async def test_speed_limit_thresholds(fake_store_class, threshold_responses):
    profile = await ThresholdAnalyzer(fake_store_class(threshold_responses)).analyze_thresholds()
    by_limit = profile.by_speed_limit

    assert [d.posted_limit for d in by_limit.data] == [25, 55]
    assert by_limit.insight == (
        "Higher speed zones (55 mph) see avg 16 over vs 11 over in 25 mph zones."
    )


@pytest.mark.asyncio
async def test_filter_and_sample_floors_are_bound(fake_store_class, threshold_responses):
    store = fake_store_class(threshold_responses)
    await ThresholdAnalyzer(store).analyze_thresholds(SpatialFilter(year=2023))

    params = store.params_for("threshold_by_location")
    assert params["p1"] == 2023
    assert params["min_grid_samples"] == 20
    assert params["min_limit_samples"] == 100


def test_empty_profile(fake_store_class):
    profile = ThresholdAnalyzer(fake_store_class()).build_profile([], [], [], [])

    assert profile.overall.total_speed_violations == 0
    assert profile.overall.distribution == []
    assert profile.overall.insight == "No speed violation data available"
    assert profile.overall.percentiles.p50 == 0
    assert profile.recommendations.general_threshold == 10
    assert profile.recommendations.safe_buffer == 8
    assert profile.by_method.insight == "Detection method data not available"
    assert profile.by_location.insight == "Location data not available"
    assert profile.by_speed_limit.insight == "Speed limit data not available"
