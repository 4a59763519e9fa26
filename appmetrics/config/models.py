"""Config models and loader.

This module defines Pydantic models for file- and environment-based
configuration: the application profile registry, connector settings per
domain, orchestrator limits, cache TTLs and alert thresholds. The file format
is JSON, parsed with ``orjson``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.models import ApplicationProfile, Domain, Granularity
from ..domain.timerange import DEFAULT_DISPLAY_BUDGET


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


class ConnectorConfig(BaseModel):
    """Configuration for the connector serving one domain.

    Attributes
    ----------
    type: str
        Connector strategy identifier ("http" or "fixture").
    endpoint: Optional[str]
        Base URL of the per-source client service (http connectors).
    api_key: Optional[str]
        Optional bearer token used to authenticate to the source.
    fixture_path: Optional[str]
        JSON fixture file (fixture connectors).
    timeout_seconds: float
        Transport timeout for one upstream call.
    granularities: Optional[List[Granularity]]
        Granularities the upstream supports; ``None`` means all.
    """

    type: str = Field("http", description="Connector strategy identifier")
    endpoint: Optional[str] = Field(None, description="Client service base URL")
    api_key: Optional[str] = Field(None, description="Authentication token")
    fixture_path: Optional[str] = Field(None, description="JSON fixture file")
    timeout_seconds: float = Field(10.0, gt=0)
    granularities: Optional[List[Granularity]] = None

    @model_validator(mode="after")
    def _check_transport(self) -> "ConnectorConfig":
        if self.type == "http" and not self.endpoint:
            raise ValueError("http connectors require an endpoint")
        if self.type == "fixture" and not self.fixture_path:
            raise ValueError("fixture connectors require a fixture_path")
        return self


class OrchestratorConfig(BaseModel):
    """Fan-out limits for one aggregation request."""

    max_concurrency: int = Field(8, ge=1)
    call_timeout_seconds: float = Field(5.0, gt=0)
    request_budget_seconds: float = Field(15.0, gt=0)


class CacheConfig(BaseModel):
    """Aggregation cache sizing and per-view freshness windows."""

    maxsize: int = Field(1024, ge=1)
    ttl_seconds: Dict[str, float] = Field(
        default_factory=lambda: {
            "summary": 30.0,
            "timeseries": 30.0,
            "breakdown": 60.0,
            "projection": 60.0,
        }
    )
    max_stale_seconds: float = Field(900.0, ge=0)

    def ttl_for(self, view_kind: str) -> float:
        """TTL for a view kind; ``"timeseries:compute:errors"`` uses ``timeseries``."""
        base = view_kind.split(":", 1)[0]
        return self.ttl_seconds.get(base, 30.0)


class Thresholds(BaseModel):
    """Alert thresholds; findings never change the health status."""

    function_error_rate_percent: float = 5.0
    gateway_error_rate_percent: float = 5.0
    gateway_latency_ms: float = 1000.0
    function_throttles: float = 0.0
    table_throttles: float = 0.0
    table_system_errors: float = 0.0


class AppConfig(BaseModel):
    """Top-level application configuration.

    Attributes
    ----------
    admin_subjects: List[str]
        Subjects allowed to call admin endpoints. Required, non-empty.
    applications: Dict[str, ApplicationProfile]
        Mapping from ``app_id`` to the application's resources.
    connectors: Dict[Domain, ConnectorConfig]
        Connector settings per domain.
    """

    admin_subjects: List[str]
    applications: Dict[str, ApplicationProfile] = Field(default_factory=dict)
    connectors: Dict[Domain, ConnectorConfig] = Field(default_factory=dict)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    display_budget: int = Field(DEFAULT_DISPLAY_BUDGET, ge=1)
    thresholds: Thresholds = Field(default_factory=Thresholds)

    @field_validator("admin_subjects")
    @classmethod
    def _check_admins(cls, value: List[str]) -> List[str]:
        cleaned = [s.strip() for s in value if s and s.strip()]
        if not cleaned:
            raise ValueError("admin_subjects must list at least one subject")
        return cleaned

    @field_validator("applications", mode="before")
    @classmethod
    def _fill_app_ids(cls, value: Any) -> Any:
        # Profiles are keyed by id in the file; the key wins over any body value
        if isinstance(value, dict):
            return {
                key: {**body, "app_id": key} if isinstance(body, dict) else body
                for key, body in value.items()
            }
        return value

    @staticmethod
    def load(path: Path) -> "AppConfig":
        """Load application config from a JSON file.

        Raises
        ------
        ConfigError
            If the file cannot be read, is not JSON, or fails validation.
        """
        try:
            raw = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc
        try:
            return AppConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration in {path}: {exc}") from exc


class EnvSettings(BaseSettings):
    """Environment-driven settings and .env support.

    Attributes
    ----------
    log_level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    config: Optional[str]
        Path to the JSON configuration file.
    http_token: Optional[str]
        Bearer token required on ``/api`` and ``/admin`` routes when set.
    cors_origins: Optional[str]
        Comma-separated list of allowed CORS origins.
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="APPMETRICS_")

    log_level: str = Field("INFO")
    config: Optional[str] = Field(None, description="Path to config JSON")
    http_token: Optional[str] = Field(None, description="API bearer token")
    cors_origins: Optional[str] = Field(None, description="Allowed CORS origins")

    def cors_origin_list(self) -> List[str]:
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
