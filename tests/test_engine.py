"""
Tests for the AnalyticsEngine orchestration.
"""

import pytest

from analytics.engine import AnalyticsEngine
from analytics.filters import Bounds, SpatialFilter
from api.analytics_models import AreaSummary
from core.errors import AreaTooLarge, DatasetNotReady, LocationNotFound, PatternNotFound

NOT_READY = "No data yet. Run the stop-record import to load data."


@pytest.fixture
def not_ready_engine(fake_store_class):
    return AnalyticsEngine(fake_store_class(default=DatasetNotReady()))


@pytest.mark.asyncio
async def test_area_summary(fake_store_class, area_responses):
    engine = AnalyticsEngine(fake_store_class(area_responses))
    result = await engine.area_summary(SpatialFilter(bounds=Bounds(-77.2, 39.0, -77.0, 39.1)))

    assert result.message is None
    assert result.data.summary.total_stops == 120


@pytest.mark.asyncio
async def test_area_summary_not_ready(not_ready_engine):
    result = await not_ready_engine.area_summary(SpatialFilter())
    assert result.data == AreaSummary()
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_route_risk_not_ready(not_ready_engine):
    result = await not_ready_engine.route_risk(None)
    assert result.data.corridors == []
    assert result.data.summary.total_corridors == 0
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_thresholds_not_ready(not_ready_engine):
    result = await not_ready_engine.thresholds()
    assert result.data.recommendations.general_threshold == 10
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_hotspots_not_ready(not_ready_engine):
    result = await not_ready_engine.hotspots()
    assert result.data.hotspots == []
    assert result.data.summary.total_hotspots == 0
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_time_patterns_not_ready(not_ready_engine):
    result = await not_ready_engine.time_patterns()
    assert result.data.total_records == 0
    assert result.data.hourly_pattern.peak_hours == []
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_patterns_not_ready(not_ready_engine):
    result = await not_ready_engine.patterns()
    assert result.data.patterns == []
    assert result.data.summary.total_patterns == 0
    assert result.message == NOT_READY


@pytest.mark.asyncio
async def test_pattern_lookup_not_ready(not_ready_engine):
    with pytest.raises(PatternNotFound):
        await not_ready_engine.pattern("time_cluster_h08")


@pytest.mark.asyncio
async def test_location_not_ready(not_ready_engine):
    with pytest.raises(LocationNotFound):
        await not_ready_engine.location_profile("39.046_-77.120")


@pytest.mark.asyncio
async def test_anomalies_not_ready(not_ready_engine):
    result = await not_ready_engine.anomalies()
    assert result.data.anomalies == []
    assert result.data.summary.by_type == {
        "temporalSpike": 0,
        "enforcementSurge": 0,
        "enforcementDrop": 0,
    }


@pytest.mark.asyncio
async def test_other_errors_propagate(fake_store_class):
    engine = AnalyticsEngine(fake_store_class(default=AreaTooLarge()))
    with pytest.raises(AreaTooLarge):
        await engine.thresholds()
