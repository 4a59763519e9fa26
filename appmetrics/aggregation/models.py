"""Read-view models produced by the aggregation service.

Every view is a frozen Pydantic model so a cached payload can be handed to
several concurrent readers without copying. JSON bodies served by the HTTP
layer are the ``model_dump(mode="json")`` of these models.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..domain.models import (
    Domain,
    FetchStatus,
    Granularity,
    SourceFetchResult,
    TimeRange,
)

T = TypeVar("T")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class HealthStatus(str, Enum):
    """Overall state of one aggregation."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class HealthSummary(_Frozen):
    """Source health for one aggregation.

    Attributes
    ----------
    status: HealthStatus
        Derived from fetch outcomes only; alerts never change it.
    issues: List[str]
        One line per failed source.
    alerts: List[str]
        Threshold findings on successfully fetched sources.
    """

    status: HealthStatus
    healthy_sources: int = 0
    failed_sources: int = 0
    unavailable_sources: int = 0
    issues: List[str] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)


class SourceStatus(_Frozen):
    """Public projection of one :class:`SourceFetchResult`."""

    source_id: str
    domain: Domain
    resource_id: str
    status: FetchStatus
    error_type: Optional[str] = None
    error_detail: Optional[str] = None
    elapsed_ms: int = 0

    @classmethod
    def from_result(cls, result: SourceFetchResult) -> "SourceStatus":
        return cls(
            source_id=result.source_id,
            domain=result.domain,
            resource_id=result.resource_id,
            status=result.status,
            error_type=result.error_type,
            error_detail=result.error_detail,
            elapsed_ms=result.elapsed_ms,
        )


class RankedItem(_Frozen):
    """One entry of a top-N ranking."""

    key: str
    value: float
    percentage: float


class ComputeSummary(_Frozen):
    total_invocations: float = 0.0
    total_errors: float = 0.0
    total_throttles: float = 0.0
    error_rate: float = 0.0
    average_duration_ms: float = 0.0
    function_count: int = 0
    invocation_trend: float = 0.0
    sources_ok: int = 0
    sources_failed: int = 0


class TrafficSummary(_Frozen):
    total_requests: float = 0.0
    total_4xx: float = 0.0
    total_5xx: float = 0.0
    error_rate: float = 0.0
    average_latency_ms: float = 0.0
    request_trend: float = 0.0
    sources_ok: int = 0
    sources_failed: int = 0


class StorageSummary(_Frozen):
    read_capacity: float = 0.0
    write_capacity: float = 0.0
    throttled_requests: float = 0.0
    user_errors: float = 0.0
    system_errors: float = 0.0
    table_count: int = 0
    item_count: float = 0.0
    table_size_bytes: float = 0.0
    sources_ok: int = 0
    sources_failed: int = 0


class CostSummary(_Frozen):
    current_period: float = 0.0
    daily_average: float = 0.0
    projected_month: float = 0.0
    trend: float = 0.0
    top_services: List[RankedItem] = Field(default_factory=list)
    currency: str = "USD"
    sources_ok: int = 0
    sources_failed: int = 0


class DistributionSummary(_Frozen):
    downloads: float = 0.0
    updates: float = 0.0
    revenue: float = 0.0
    arpu: float = 0.0
    arppu: float = 0.0
    active_devices: float = 0.0
    paying_users: float = 0.0
    average_rating: float = 0.0
    total_ratings: float = 0.0
    download_trend: float = 0.0
    sources_ok: int = 0
    sources_failed: int = 0


class AggregatedSnapshot(_Frozen):
    """Full dashboard snapshot of one application."""

    app_id: str
    range_token: str
    period: str
    time_range: TimeRange
    generated_at: datetime
    compute: Optional[ComputeSummary] = None
    traffic: Optional[TrafficSummary] = None
    storage: Optional[StorageSummary] = None
    cost: Optional[CostSummary] = None
    distribution: Optional[DistributionSummary] = None
    health: HealthSummary
    sources: List[SourceStatus] = Field(default_factory=list)


class TimeSeriesPoint(_Frozen):
    timestamp: datetime
    value: Optional[float] = None


class TimeSeriesView(_Frozen):
    """One metric of one domain on the range's bucket grid."""

    app_id: str
    domain: Domain
    metric: str
    unit: str
    range_token: str
    time_range: TimeRange
    granularity: Granularity
    points: List[TimeSeriesPoint] = Field(default_factory=list)
    health: HealthSummary
    sources: List[SourceStatus] = Field(default_factory=list)


class BreakdownView(_Frozen):
    """Ranked sub-components of one metric."""

    app_id: str
    domain: Domain
    metric: str
    unit: str
    dimension: str
    range_token: str
    time_range: TimeRange
    total: float = 0.0
    items: List[RankedItem] = Field(default_factory=list)
    health: HealthSummary
    sources: List[SourceStatus] = Field(default_factory=list)


class ProjectionMethod(str, Enum):
    LINEAR_FIT = "linear_fit"
    DAILY_AVERAGE = "daily_average"
    NONE = "none"


class CostProjection(_Frozen):
    """Month-end cost projection from a month-to-date daily series.

    Attributes
    ----------
    confidence: float
        In ``[0, 1]``; 1 for a perfect linear fit, 0 for the fallback.
    """

    month_to_date: float = 0.0
    daily_average: float = 0.0
    projected_month: float = 0.0
    projected_year: float = 0.0
    slope: float = 0.0
    intercept: float = 0.0
    method: ProjectionMethod = ProjectionMethod.NONE
    confidence: float = 0.0
    days_elapsed: int = 0
    days_in_month: int = 0


class ProjectionView(_Frozen):
    app_id: str
    range_token: str
    time_range: TimeRange
    month_start: datetime
    currency: str = "USD"
    projection: CostProjection
    daily_costs: List[TimeSeriesPoint] = Field(default_factory=list)
    health: HealthSummary
    sources: List[SourceStatus] = Field(default_factory=list)


class ApplicationInfo(_Frozen):
    app_id: str
    name: str
    environment: str
    domains: List[Domain] = Field(default_factory=list)


class ViewEnvelope(_Frozen, Generic[T]):
    """Result wrapper carrying cache and budget metadata."""

    data: T
    stale: bool = False
    cache_hit: bool = False
    computed_at: datetime
    completed_within_budget: bool = True
