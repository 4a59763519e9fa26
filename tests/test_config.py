"""Tests for configuration models and loading."""

from __future__ import annotations

from pathlib import Path

import orjson
import pytest
from pydantic import ValidationError

from appmetrics.config.models import (
    AppConfig,
    CacheConfig,
    ConfigError,
    ConnectorConfig,
    EnvSettings,
)
from appmetrics.domain.models import Domain, Granularity

VALID = {
    "admin_subjects": ["ops@example.com"],
    "applications": {
        "demo": {
            "name": "Demo",
            "functions": ["fn-a", "fn-b"],
            "api_gateway": "demo-api",
            "billing_filter": "app:demo",
        }
    },
    "connectors": {
        "compute": {"type": "http", "endpoint": "http://localhost:8081"},
        "cost": {
            "type": "fixture",
            "fixture_path": "fixtures/cost.json",
            "granularities": ["day"],
        },
    },
    "orchestrator": {"max_concurrency": 4},
    "cache": {"ttl_seconds": {"summary": 10}},
}


def test_load_valid_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(VALID))
    config = AppConfig.load(path)

    profile = config.applications["demo"]
    assert profile.app_id == "demo"
    assert profile.functions == ("fn-a", "fn-b")
    assert profile.configured_domains() == [Domain.COMPUTE, Domain.TRAFFIC, Domain.COST]
    assert config.connectors[Domain.COST].granularities == [Granularity.DAY]
    assert config.orchestrator.max_concurrency == 4
    assert config.orchestrator.call_timeout_seconds == 5.0
    assert config.cache.ttl_for("summary") == 10


def test_application_key_overrides_body_app_id():
    data = dict(VALID, applications={"demo": {"app_id": "other"}})
    assert AppConfig.model_validate(data).applications["demo"].app_id == "demo"


@pytest.mark.parametrize("subjects", [[], ["", "   "]])
def test_admin_subjects_required(subjects):
    with pytest.raises(ValidationError, match="admin_subjects"):
        AppConfig.model_validate(dict(VALID, admin_subjects=subjects))


def test_admin_subjects_missing():
    data = {k: v for k, v in VALID.items() if k != "admin_subjects"}
    with pytest.raises(ValidationError):
        AppConfig.model_validate(data)


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="cannot read config file"):
        AppConfig.load(tmp_path / "missing.json")


def test_load_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError, match="not valid JSON"):
        AppConfig.load(path)


def test_load_invalid_schema(tmp_path):
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(dict(VALID, connectors={"weather": {}})))
    with pytest.raises(ConfigError, match="invalid configuration"):
        AppConfig.load(path)


def test_connector_config_requires_transport_details():
    with pytest.raises(ValidationError, match="endpoint"):
        ConnectorConfig(type="http")
    with pytest.raises(ValidationError, match="fixture_path"):
        ConnectorConfig(type="fixture")
    with pytest.raises(ValidationError):
        ConnectorConfig(type="http", endpoint="http://x", timeout_seconds=0)


def test_cache_ttl_for_view_kinds():
    cache = CacheConfig()
    assert cache.ttl_for("summary") == 30.0
    assert cache.ttl_for("timeseries:compute:errors") == 30.0
    assert cache.ttl_for("breakdown:cost:cost:10") == 60.0
    assert cache.ttl_for("projection") == 60.0
    assert cache.ttl_for("unknown") == 30.0


def test_env_settings(monkeypatch):
    monkeypatch.setenv("APPMETRICS_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("APPMETRICS_HTTP_TOKEN", "t0ken")
    monkeypatch.setenv("APPMETRICS_CORS_ORIGINS", "http://a.example, ,http://b.example")
    settings = EnvSettings()
    assert settings.log_level == "DEBUG"
    assert settings.http_token == "t0ken"
    assert settings.cors_origin_list() == ["http://a.example", "http://b.example"]
    assert EnvSettings(cors_origins=None).cors_origin_list() == []


def test_example_config_loads():
    path = Path(__file__).resolve().parents[1] / "examples" / "config.json"
    config = AppConfig.load(path)
    assert config.applications["storefront"].configured_domains() == list(Domain)
    assert config.connectors[Domain.DISTRIBUTION].type == "fixture"
