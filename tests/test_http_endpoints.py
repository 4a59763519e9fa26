"""Test HTTP endpoint functionality."""

from __future__ import annotations

import pytest
from conftest import NOW
from fastapi.testclient import TestClient

from appmetrics.aggregation.orchestrator import FetchOrchestrator
from appmetrics.aggregation.service import AggregationService
from appmetrics.config.models import AppConfig, EnvSettings
from appmetrics.connectors import ConnectorError, ConnectorErrorKind
from appmetrics.domain.models import Domain
from appmetrics.server.http import create_app


@pytest.fixture
def config(demo_profile):
    return AppConfig(
        admin_subjects=["ops@example.com"],
        applications={"demo": demo_profile},
    )


@pytest.fixture
def service(demo_profile, demo_connectors):
    return AggregationService(
        {"demo": demo_profile},
        FetchOrchestrator(demo_connectors),
        now=lambda: NOW,
    )


def _client(config, service, **settings) -> TestClient:
    app = create_app(config, service=service, settings=EnvSettings(**settings))
    return TestClient(app)


@pytest.fixture
def client(config, service):
    """Create a test client for the FastAPI app."""
    return _client(config, service)


def test_health_endpoint_no_auth(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ready_endpoint(client):
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_ready_without_connectors(config, demo_profile):
    service = AggregationService({"demo": demo_profile}, FetchOrchestrator({}))
    response = _client(config, service).get("/ready")
    assert response.json() == {"status": "no_connectors"}


def test_capabilities(client):
    body = client.get("/capabilities").json()
    assert body["http_auth"] == "disabled"
    assert body["applications"] == ["demo"]
    assert body["domains"]["compute"] is True
    assert body["domains"]["distribution"] is False
    assert "snapshot" in body["views"]
    assert body["granularities"][0] == "minute"


def test_list_apps(client):
    response = client.get("/api/apps")
    assert response.status_code == 200
    assert response.json()[0]["app_id"] == "demo"


def test_snapshot_endpoint(client):
    response = client.get("/api/apps/demo/snapshot", params={"range": "24h"})
    assert response.status_code == 200
    body = response.json()
    assert body["stale"] is False
    assert body["cache_hit"] is False
    assert body["completed_within_budget"] is True
    assert body["data"]["health"]["status"] == "healthy"
    assert body["data"]["compute"]["total_invocations"] == 600
    assert "x-correlation-id" in response.headers


def test_snapshot_degraded_reports_issue(client, demo_connectors):
    demo_connectors[Domain.COMPUTE].errors["fn-b"] = ConnectorError(
        ConnectorErrorKind.UPSTREAM, "HTTP 500", status_code=500
    )
    body = client.get("/api/apps/demo/snapshot").json()
    assert body["data"]["health"]["status"] == "degraded"
    assert body["data"]["health"]["issues"] == [
        "compute source 'fn-b' failed: HTTP 500"
    ]


def test_snapshot_unavailable_returns_503(client, demo_connectors):
    demo_connectors[Domain.COMPUTE].errors.update(
        {
            rid: ConnectorError(ConnectorErrorKind.TIMEOUT, "slow")
            for rid in ("fn-a", "fn-b", "fn-c")
        }
    )
    response = client.get("/api/apps/demo/snapshot")
    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["error_type"] == "aggregation_unavailable"
    assert len(detail["issues"]) == 3


def test_unknown_app_returns_404(client):
    response = client.get("/api/apps/nope/snapshot")
    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["error_type"] == "unknown_application"
    assert detail["available_options"] == ["demo"]


@pytest.mark.parametrize("token", ["forever", "1000000d"])
def test_invalid_range_returns_400(client, token):
    response = client.get("/api/apps/demo/snapshot", params={"range": token})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "invalid_range_token"
    assert "mtd" in detail["available_options"]


def test_unknown_metric_returns_400(client):
    response = client.get(
        "/api/apps/demo/timeseries/compute", params={"metric": "bogus"}
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "invalid_view_request"
    assert "invocations" in detail["available_options"]


def test_non_integer_limit_returns_400(client):
    response = client.get("/api/apps/demo/breakdown/compute", params={"limit": "ten"})
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "validation_error"


def test_timeseries_breakdown_and_projection(client):
    series = client.get(
        "/api/apps/demo/timeseries/traffic", params={"granularity": "hour"}
    ).json()
    assert series["data"]["granularity"] == "hour"
    assert len(series["data"]["points"]) == 24

    breakdown = client.get(
        "/api/apps/demo/breakdown/compute", params={"limit": 1}
    ).json()
    assert [i["key"] for i in breakdown["data"]["items"]] == ["fn-c"]

    projection = client.get("/api/apps/demo/projection").json()
    assert projection["data"]["projection"]["days_in_month"] == 31
    assert projection["data"]["projection"]["projected_month"] == pytest.approx(372.0)


def test_api_requires_token_when_configured(config, service):
    client = _client(config, service, http_token="test-token")

    assert client.get("/health").status_code == 200
    assert client.get("/api/apps").status_code == 401
    assert (
        client.get(
            "/api/apps", headers={"Authorization": "Bearer wrong"}
        ).status_code
        == 403
    )
    response = client.get(
        "/api/apps", headers={"Authorization": "Bearer test-token"}
    )
    assert response.status_code == 200


def test_admin_invalidate_requires_admin_subject(client):
    client.get("/api/apps/demo/snapshot")

    response = client.post("/admin/cache/invalidate")
    assert response.status_code == 403
    assert response.json()["detail"]["error_type"] == "forbidden"

    response = client.post(
        "/admin/cache/invalidate", headers={"X-Admin-Subject": "intruder"}
    )
    assert response.status_code == 403

    response = client.post(
        "/admin/cache/invalidate",
        params={"app_id": "demo"},
        headers={"X-Admin-Subject": "ops@example.com"},
    )
    assert response.status_code == 200
    assert response.json() == {"app_id": "demo", "entries_removed": 1}


def test_admin_invalidate_unknown_app(client):
    response = client.post(
        "/admin/cache/invalidate",
        params={"app_id": "nope"},
        headers={"X-Admin-Subject": "ops@example.com"},
    )
    assert response.status_code == 404


def test_correlation_id_is_echoed(client):
    response = client.get("/health", headers={"x-correlation-id": "abc-123"})
    assert response.headers["x-correlation-id"] == "abc-123"
