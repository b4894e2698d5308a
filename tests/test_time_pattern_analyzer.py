"""
Tests for the TimePatternAnalyzer.
"""

import pytest

from analytics.filters import SpatialFilter
from analytics.time_pattern_analyzer import TimePatternAnalyzer, hour_risk_level
from api.analytics_models import RiskLevel
from core.errors import DatasetNotReady


@pytest.fixture
def time_responses():
    hours = {h: 10 for h in range(24)}
    hours.update({7: 40, 8: 50, 12: 15, 16: 30, 17: 45})
    months = {m: 100 for m in range(1, 13)}
    months.update({2: 40, 7: 160})
    return {
        "time_day_of_month": [
            {"day_of_month": day, "count": 15 if day >= 25 else 10} for day in range(1, 32)
        ],
        "time_day_of_week": [
            {"day_num": day, "count": 50 if day in (0, 6) else 100,
             "avg_speed_over": None if day == 0 else 12.34}
            for day in range(7)
        ],
        "time_hourly": [
            {"hour": hour, "count": count, "avg_speed_over": 11.0} for hour, count in hours.items()
        ],
        "time_monthly": [{"month": month, "count": count} for month, count in months.items()],
        "time_weekend_vs_weekday": [
            {"is_weekend": False, "count": 500},
            {"is_weekend": True, "count": 100},
        ],
    }


@pytest.mark.parametrize("count,expected", [
    (14, RiskLevel.HIGH),
    (13, RiskLevel.MODERATE),
    (10, RiskLevel.MODERATE),
    (9, RiskLevel.LOW),
])
def test_hour_risk_level(count, expected):
    assert hour_risk_level(count, 10.0) == expected


@pytest.mark.asyncio
async def test_quota_curve(fake_store_class, time_responses):
    report = await TimePatternAnalyzer(fake_store_class(time_responses)).analyze_time_patterns()
    quota = report.quota_pattern

    assert report.total_records == 345
    assert quota.end_of_month_effect == 50
    assert quota.is_significant is True
    assert quota.insight == (
        "End of month (days 25-31) has 50% more tickets than start of month (days 1-7)"
    )
    assert len(quota.data) == 31
    assert quota.data[0].relative_rate == 0.9
    assert quota.data[24].relative_rate == 1.35


@pytest.mark.asyncio
async def test_day_of_week(fake_store_class, time_responses):
    report = await TimePatternAnalyzer(fake_store_class(time_responses)).analyze_time_patterns()
    weekdays = report.day_of_week

    assert weekdays.highest_day == "Monday"
    assert weekdays.lowest_day == "Sunday"
    assert weekdays.insight == "Monday has 58% more tickets than Sunday"
    assert weekdays.data[0].avg_speed_over == 0.0
    assert weekdays.data[1].avg_speed_over == 12.3
    assert weekdays.data[1].relative_rate == 1.17


@pytest.mark.asyncio
async def test_hourly_pattern(fake_store_class, time_responses):
    report = await TimePatternAnalyzer(fake_store_class(time_responses)).analyze_time_patterns()
    hourly = report.hourly_pattern
    by_hour = {h.hour: h for h in hourly.data}

    assert hourly.peak_hours == [7, 8, 16, 17]
    assert hourly.insight == "Peak enforcement: 07:00, 08:00, 16:00, 17:00"
    assert hourly.rush_hour.morning.total_stops == 110
    assert hourly.rush_hour.afternoon.total_stops == 95
    assert by_hour[8].risk_level == RiskLevel.HIGH
    assert by_hour[12].risk_level == RiskLevel.MODERATE
    assert by_hour[3].risk_level == RiskLevel.LOW
    assert by_hour[8].label == "08:00"


@pytest.mark.asyncio
async def test_seasonal_and_weekend(fake_store_class, time_responses):
    report = await TimePatternAnalyzer(fake_store_class(time_responses)).analyze_time_patterns()

    assert report.seasonal.highest_month == "Jul"
    assert report.seasonal.lowest_month == "Feb"
    assert report.seasonal.insight == "Jul has highest enforcement (+60%), Feb lowest (-60%)"

    weekend = report.weekend_vs_weekday
    assert weekend.weekday_avg_per_day == 100
    assert weekend.weekend_avg_per_day == 50
    assert weekend.difference == -50
    assert weekend.insight == "Weekends have 50% fewer tickets per day than weekdays"


def test_quota_effect_absent(fake_store_class):
    rows = [{"day_of_month": day, "count": 10} for day in range(1, 32)]
    report = TimePatternAnalyzer(fake_store_class()).build_report(rows, [], [], [], [])

    assert report.quota_pattern.end_of_month_effect == 0
    assert report.quota_pattern.is_significant is False
    assert report.quota_pattern.insight == "No significant end-of-month quota effect detected"


def test_empty_report(fake_store_class):
    report = TimePatternAnalyzer(fake_store_class()).build_report([], [], [], [], [])

    assert report.total_records == 0
    assert report.quota_pattern.data == []
    assert report.day_of_week.highest_day is None
    assert report.hourly_pattern.peak_hours == []
    assert report.hourly_pattern.rush_hour.morning.total_stops == 0
    assert report.seasonal.highest_month is None
    assert report.weekend_vs_weekday.difference == 0


@pytest.mark.asyncio
async def test_filter_narrows_every_query(fake_store_class, time_responses):
    store = fake_store_class(time_responses)
    await TimePatternAnalyzer(store).analyze_time_patterns(SpatialFilter(year=2022))

    assert len(store.calls) == 5
    for name, sql, params in store.calls:
        assert params["p1"] == 2022
        assert "EXTRACT(YEAR FROM stop_date) = :p1" in sql


@pytest.mark.asyncio
async def test_missing_table_propagates(fake_store_class):
    analyzer = TimePatternAnalyzer(fake_store_class(default=DatasetNotReady()))
    with pytest.raises(DatasetNotReady):
        await analyzer.analyze_time_patterns()
