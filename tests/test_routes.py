"""
Tests for the enforcement analytics API routes.
"""

from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest

from analytics.engine import AnalyticsEngine
from core.concurrency import ConcurrencyLimitExceeded
from core.errors import AreaTooLarge, DatasetNotReady

BOUNDS = "-77.2,39.0,-77.0,39.1"


def engine_with(store):
    return patch("api.analytics_routes.get_engine", return_value=AnalyticsEngine(store))


# ============================================================================
# HEALTH
# ============================================================================

@pytest.mark.asyncio
async def test_health_endpoint(app_client):
    async with app_client as client:
        response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "enforcement-analytics"
    assert "max_concurrent" in data["concurrency"]


@pytest.mark.asyncio
async def test_trace_id_is_echoed(app_client):
    async with app_client as client:
        response = await client.get("/health", headers={"x-trace-id": "abc123"})

    assert response.headers["x-trace-id"] == "abc123"


@pytest.mark.asyncio
async def test_trace_id_from_traceparent(app_client):
    traceparent = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
    async with app_client as client:
        response = await client.get("/health", headers={"traceparent": traceparent})

    assert response.headers["x-trace-id"] == "4bf92f3577b34da6a3ce929d0e0e4736"


# ============================================================================
# AREA DRILL-DOWN
# ============================================================================

@pytest.mark.asyncio
async def test_area_drilldown(app_client, fake_store_class, area_responses):
    with engine_with(fake_store_class(area_responses)):
        async with app_client as client:
            response = await client.get("/area-drilldown", params={"bounds": BOUNDS})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["summary"]["totalStops"] == 120
    assert len(body["data"]["timePatterns"]["byHour"]) == 24
    assert body["data"]["speedStats"] is None
    assert "generatedAt" in body["meta"]


@pytest.mark.asyncio
async def test_area_drilldown_requires_bounds(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get("/area-drilldown")

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "INVALID_FILTER"
    assert body["error"] == "bounds parameter is required"
    assert store.calls == []


@pytest.mark.asyncio
async def test_area_drilldown_too_large(app_client, fake_store_class):
    with engine_with(fake_store_class({"area_count": AreaTooLarge()})):
        async with app_client as client:
            response = await client.get("/area-drilldown", params={"bounds": BOUNDS})

    assert response.status_code == 413
    assert response.json()["code"] == "AREA_TOO_LARGE"


@pytest.mark.asyncio
async def test_area_drilldown_dataset_not_ready(app_client, fake_store_class):
    with engine_with(fake_store_class(default=DatasetNotReady())):
        async with app_client as client:
            response = await client.get("/area-drilldown", params={"bounds": BOUNDS})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["summary"]["totalStops"] == 0
    assert body["meta"]["message"].startswith("No data yet")


@pytest.mark.asyncio
async def test_malformed_bounds_rejected_by_drilldown_only(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            drilldown = await client.get("/area-drilldown", params={"bounds": "1,2,3"})
            route_risk = await client.get("/route-risk", params={"bounds": "1,2,3"})

    assert drilldown.status_code == 400
    assert route_risk.status_code == 200


# ============================================================================
# ROUTE RISK / THRESHOLDS
# ============================================================================

@pytest.mark.asyncio
async def test_route_risk_ignores_malformed_bounds(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get("/route-risk", params={"bounds": "oops", "limit": "500"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["bounds"] == "all"
    assert body["meta"]["limit"] == 50
    assert body["data"]["corridors"] == []
    assert "riskLevelGuide" in body["data"]
    assert "p1" not in store.params_for("corridor_groups")


@pytest.mark.asyncio
async def test_route_risk_applies_bounds(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get("/route-risk", params={"bounds": BOUNDS})

    assert response.json()["meta"]["bounds"] == BOUNDS
    assert response.json()["meta"]["limit"] == 20
    assert store.params_for("corridor_groups")["p1"] == 39.0


@pytest.mark.asyncio
async def test_hotspots_lenient_parameters(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get(
                "/hotspots", params={"bounds": "oops", "limit": "500", "minStops": "x"}
            )

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["hotspots"] == []
    assert body["meta"]["bounds"] == "all"
    assert body["meta"]["limit"] == 200
    assert body["meta"]["minStopsThreshold"] == 10
    assert "p1" not in store.params_for("hotspot_cells")


@pytest.mark.asyncio
async def test_hotspots_applies_bounds(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get("/hotspots", params={"bounds": BOUNDS, "minStops": "25"})

    meta = response.json()["meta"]
    assert meta["bounds"] == BOUNDS
    assert meta["limit"] == 50
    assert meta["minStopsThreshold"] == 25
    assert store.params_for("hotspot_cells")["p1"] == 39.0
    assert store.params_for("hotspot_cells")["min_stops"] == 25


@pytest.mark.asyncio
async def test_thresholds_invalid_year(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            response = await client.get("/thresholds", params={"year": "1800"})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILTER"


@pytest.mark.asyncio
async def test_thresholds_speed_over_out_of_range(app_client, fake_store_class):
    store = fake_store_class()
    with engine_with(store):
        async with app_client as client:
            response = await client.get("/thresholds", params={"minSpeedOver": "99999999999"})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILTER"
    assert store.calls == []


@pytest.mark.asyncio
async def test_thresholds(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            response = await client.get("/thresholds")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["recommendations"]["generalThreshold"] == 10
    assert len(data["recommendations"]["riskLevels"]) == 5


@pytest.mark.asyncio
async def test_time_patterns(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            response = await client.get("/time-patterns")
            invalid = await client.get("/time-patterns", params={"year": "1800"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["totalRecords"] == 0
    assert body["data"]["quotaPattern"]["isSignificant"] is False
    assert body["data"]["hourlyPattern"]["rushHour"]["morning"]["hours"] == "7:00-10:00 AM"
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "INVALID_FILTER"


# ============================================================================
# PATTERNS / LOCATIONS / ANOMALIES
# ============================================================================

@pytest.mark.asyncio
async def test_patterns_summary_omits_locations(app_client, fake_store_class, pattern_responses):
    with engine_with(fake_store_class(pattern_responses)):
        async with app_client as client:
            response = await client.get("/ml/patterns", params={"summary": "true"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["summary"]["totalPatterns"] == 3
    assert all("locations" not in p for p in data["patterns"])


@pytest.mark.asyncio
async def test_patterns_by_type(app_client, fake_store_class, pattern_responses):
    with engine_with(fake_store_class(pattern_responses)):
        async with app_client as client:
            response = await client.get("/ml/patterns", params={"type": "method_zone"})

    patterns = response.json()["data"]["patterns"]
    assert [p["id"] for p in patterns] == ["method_zone_radar"]
    assert len(patterns[0]["locations"]) == 3


@pytest.mark.asyncio
async def test_pattern_by_id(app_client, fake_store_class, pattern_responses):
    with engine_with(fake_store_class(pattern_responses)):
        async with app_client as client:
            found = await client.get("/ml/patterns", params={"patternId": "time_cluster_h08"})
            missing = await client.get("/ml/patterns", params={"patternId": "nope"})

    assert found.status_code == 200
    assert found.json()["data"]["id"] == "time_cluster_h08"
    assert missing.status_code == 404
    assert missing.json()["code"] == "PATTERN_NOT_FOUND"


@pytest.mark.asyncio
async def test_patterns_bounds_filter_locations(app_client, fake_store_class, pattern_responses):
    # Only the first of the three radar cells lies inside
    bounds = "-77.2,39.0,-77.0,39.0015"
    with engine_with(fake_store_class(pattern_responses)):
        async with app_client as client:
            listed = await client.get("/ml/patterns", params={"type": "method_zone", "bounds": bounds})
            single = await client.get(
                "/ml/patterns", params={"patternId": "time_cluster_h08", "bounds": bounds}
            )
            malformed = await client.get("/ml/patterns", params={"bounds": "1,2"})

    pattern = listed.json()["data"]["patterns"][0]
    assert [loc["gridId"] for loc in pattern["locations"]] == ["39.001_-77.100"]
    assert pattern["locationCount"] == 3
    assert listed.json()["meta"]["bounds"] == bounds
    assert len(single.json()["data"]["locations"]) == 1
    assert malformed.status_code == 200
    assert malformed.json()["meta"]["bounds"] == "all"
    assert all(len(p["locations"]) == 3 for p in malformed.json()["data"]["patterns"]
               if p["patternType"] != "quota_effect")


@pytest.mark.asyncio
async def test_patterns_unknown_type(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            response = await client.get("/ml/patterns", params={"type": "bogus"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_location_profile_errors(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            invalid = await client.get("/ml/location/not-a-grid")
            missing = await client.get("/ml/location/39.046_-77.120")

    assert invalid.status_code == 400
    assert missing.status_code == 404
    assert missing.json()["code"] == "LOCATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_anomalies(app_client, fake_store_class):
    with engine_with(fake_store_class()):
        async with app_client as client:
            response = await client.get("/ml/anomalies")

    assert response.status_code == 200
    summary = response.json()["data"]["summary"]
    assert summary["totalAnomalies"] == 0
    assert summary["byType"]["temporalSpike"] == 0


# ============================================================================
# CAPACITY
# ============================================================================

@pytest.mark.asyncio
async def test_service_at_capacity(app_client, fake_store_class):
    @asynccontextmanager
    async def full(timeout=None):
        raise ConcurrencyLimitExceeded("Service at capacity")
        yield

    with engine_with(fake_store_class()), patch("api.analytics_routes.acquire_slot", full):
        async with app_client as client:
            response = await client.get("/ml/anomalies")

    assert response.status_code == 503
    assert response.json()["code"] == "AT_CAPACITY"


# ============================================================================
# UNEXPECTED ERRORS
# ============================================================================

@pytest.mark.asyncio
async def test_unexpected_store_error_keeps_envelope(app_client, fake_store_class):
    with engine_with(fake_store_class({"area_count": RuntimeError("boom")})):
        async with app_client as client:
            response = await client.get("/area-drilldown", params={"bounds": BOUNDS})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "INTERNAL_AGGREGATION_FAILURE"
    assert "boom" not in body["error"]


@pytest.mark.asyncio
async def test_error_outside_analytics_handler_keeps_envelope(fake_store_class):
    from httpx import AsyncClient, ASGITransport
    from main import app

    # The app-wide handler re-raises after responding; keep the response instead
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    with engine_with(fake_store_class()), patch(
        "api.analytics_routes.parse_filter", side_effect=RuntimeError("boom")
    ):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/thresholds")

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "INTERNAL_AGGREGATION_FAILURE"
