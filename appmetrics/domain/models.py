"""Canonical data model for the aggregation engine.

These Pydantic models represent the values that flow between connectors, the
fetch orchestrator and the derived metrics calculator. All of them are frozen:
a sample, a series or a fetch result is never mutated after it is created, so
they can be shared freely between concurrent requests and cached payloads.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Domain(str, Enum):
    """Category of metrics served by one kind of upstream source."""

    COMPUTE = "compute"  # Serverless functions
    TRAFFIC = "traffic"  # API gateway
    STORAGE = "storage"  # Managed key-value tables
    COST = "cost"  # Billing
    DISTRIBUTION = "distribution"  # Mobile store analytics


class Granularity(str, Enum):
    """Time-bucket width used to sample a series."""

    MINUTE = "minute"
    FIVE_MINUTES = "5min"
    FIFTEEN_MINUTES = "15min"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        """Bucket width in seconds."""
        return _GRANULARITY_SECONDS[self]

    @classmethod
    def ordered(cls) -> List["Granularity"]:
        """All granularities from finest to coarsest."""
        return sorted(cls, key=lambda g: g.seconds)


_GRANULARITY_SECONDS = {
    Granularity.MINUTE: 60,
    Granularity.FIVE_MINUTES: 300,
    Granularity.FIFTEEN_MINUTES: 900,
    Granularity.HOUR: 3600,
    Granularity.DAY: 86400,
}


class TimeRange(BaseModel):
    """Concrete half-open interval ``[start, end)`` with a sampling granularity.

    Attributes
    ----------
    start: datetime
        Inclusive start (UTC).
    end: datetime
        Exclusive end (UTC).
    granularity: Granularity
        Bucket width used to sample series over the interval.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    granularity: Granularity

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.start >= self.end:
            raise ValueError("time range start must be before end")
        return self

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def bucket_count(self, granularity: Optional[Granularity] = None) -> int:
        """Number of buckets implied by ``(end - start) / granularity``."""
        g = granularity or self.granularity
        return math.ceil(self.duration_seconds / g.seconds)

    def bucket_starts(self, granularity: Optional[Granularity] = None) -> List[datetime]:
        """Start instant of every bucket in the range."""
        g = granularity or self.granularity
        step = timedelta(seconds=g.seconds)
        return [self.start + step * i for i in range(self.bucket_count(g))]

    def with_granularity(self, granularity: Granularity) -> "TimeRange":
        return TimeRange(start=self.start, end=self.end, granularity=granularity)

    def aligned(self, granularity: Optional[Granularity] = None) -> "TimeRange":
        """Same end, with ``start`` floored to a bucket boundary of ``granularity``.

        Boundaries are counted from the Unix epoch, so daily buckets start at
        midnight UTC, matching how billing and analytics rollups are keyed.
        """
        g = granularity or self.granularity
        epoch_seconds = math.floor(self.start.timestamp())
        floored = datetime.fromtimestamp(
            epoch_seconds - epoch_seconds % g.seconds, tz=timezone.utc
        )
        return TimeRange(start=floored, end=self.end, granularity=g)

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end


class MetricSample(BaseModel):
    """Single observation reported by a connector.

    Attributes
    ----------
    timestamp: datetime
        Start of the bucket the value was reported for (UTC).
    value: float
        Observed value.
    unit: str
        Unit of measurement (e.g., "count", "milliseconds", "USD").
    dimensions: Optional[Dict[str, str]]
        Optional sub-component keys (e.g., {"service": "Lambda"}) used by
        breakdown views.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: float
    unit: str = "count"
    dimensions: Optional[Dict[str, str]] = None


class SourceSeries(BaseModel):
    """Samples fetched from one source for one resource over a time range.

    ``metrics`` maps a metric name to its samples in non-decreasing timestamp
    order; each entry is the series of one (source, metric, resource) tuple.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    domain: Domain
    resource_id: str
    granularity: Granularity
    metrics: Dict[str, Tuple[MetricSample, ...]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_ordering(self) -> "SourceSeries":
        for name, samples in self.metrics.items():
            for prev, cur in zip(samples, samples[1:]):
                if cur.timestamp < prev.timestamp:
                    raise ValueError(
                        f"samples for metric '{name}' are not in timestamp order"
                    )
        return self

    def samples(self, metric: str) -> Tuple[MetricSample, ...]:
        return self.metrics.get(metric, ())

    def total(self, metric: str) -> float:
        return sum(s.value for s in self.samples(metric))


class FetchStatus(str, Enum):
    """Outcome of one connector call."""

    OK = "ok"
    TIMEOUT = "timeout"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


class SourceFetchResult(BaseModel):
    """Result of exactly one (connector, resource) work item.

    Failures are captured here instead of being raised, so one broken source
    never aborts an aggregation run.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    domain: Domain
    resource_id: str
    status: FetchStatus
    series: Optional[SourceSeries] = None
    error_detail: Optional[str] = None
    error_type: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK and self.series is not None


class ApplicationProfile(BaseModel):
    """Static per-application resource configuration.

    Attributes
    ----------
    app_id: str
        Application identifier used in cache keys and URLs.
    name: str
        Display name.
    environment: str
        Deployment environment label (e.g., "dev", "prod").
    functions: Tuple[str, ...]
        Serverless function names (compute domain).
    api_gateway: Optional[str]
        API gateway name (traffic domain).
    tables: Tuple[str, ...]
        Key-value table names (storage domain).
    billing_filter: Optional[str]
        Billing filter expression or tag (cost domain).
    distribution_store_id: Optional[str]
        Store application identifier (distribution domain).
    """

    model_config = ConfigDict(frozen=True)

    app_id: str = ""
    name: str = ""
    environment: str = "dev"
    functions: Tuple[str, ...] = ()
    api_gateway: Optional[str] = None
    tables: Tuple[str, ...] = ()
    billing_filter: Optional[str] = None
    distribution_store_id: Optional[str] = None

    def resources_for(self, domain: Domain) -> Tuple[str, ...]:
        """Resource identifiers that must be queried for ``domain``."""
        if domain == Domain.COMPUTE:
            return tuple(f for f in self.functions if f)
        if domain == Domain.TRAFFIC:
            return (self.api_gateway,) if self.api_gateway else ()
        if domain == Domain.STORAGE:
            return tuple(t for t in self.tables if t)
        if domain == Domain.COST:
            return (self.billing_filter,) if self.billing_filter else ()
        if domain == Domain.DISTRIBUTION:
            return (
                (self.distribution_store_id,) if self.distribution_store_id else ()
            )
        return ()

    def configured_domains(self) -> List[Domain]:
        return [d for d in Domain if self.resources_for(d)]
