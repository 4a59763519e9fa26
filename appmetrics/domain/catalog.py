"""Metric catalog: what each domain reports and how it aggregates.

The catalog is data, not code paths. Connectors, the orchestrator and the
time-series and breakdown views look metrics up here instead of branching on
the domain, so adding a metric is a one-line change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import Domain, Granularity
from .utils.aggregation import AggregationStrategy

SUM = AggregationStrategy.SUM
MEAN = AggregationStrategy.MEAN
MAX = AggregationStrategy.MAX
LAST = AggregationStrategy.LAST


@dataclass(frozen=True)
class MetricSpec:
    """Description of one metric.

    Attributes
    ----------
    name: str
        Metric identifier as reported by connectors (e.g., "invocations").
    unit: str
        Unit of measurement.
    strategy: AggregationStrategy
        How samples of this metric combine within one bucket.
    dimension: Optional[str]
        Sample dimension used to break the metric down (e.g., "service").
    """

    name: str
    unit: str
    strategy: AggregationStrategy
    dimension: Optional[str] = None


@dataclass(frozen=True)
class DomainSpec:
    """Metrics reported by one domain and its defaults."""

    domain: Domain
    resource_label: str
    primary_metric: str
    metrics: Dict[str, MetricSpec] = field(default_factory=dict)
    native_granularities: Optional[List[Granularity]] = None

    def metric(self, name: str) -> MetricSpec:
        """Return the spec for ``name``; raises KeyError for unknown metrics."""
        return self.metrics[name]

    def metric_names(self) -> List[str]:
        return list(self.metrics.keys())


def _specs(*metrics: MetricSpec) -> Dict[str, MetricSpec]:
    return {m.name: m for m in metrics}


CATALOG: Dict[Domain, DomainSpec] = {
    Domain.COMPUTE: DomainSpec(
        domain=Domain.COMPUTE,
        resource_label="Function",
        primary_metric="invocations",
        metrics=_specs(
            MetricSpec("invocations", "count", SUM),
            MetricSpec("errors", "count", SUM),
            MetricSpec("throttles", "count", SUM),
            MetricSpec("duration", "milliseconds", MEAN),
            MetricSpec("concurrent_executions", "count", MAX),
        ),
    ),
    Domain.TRAFFIC: DomainSpec(
        domain=Domain.TRAFFIC,
        resource_label="API gateway",
        primary_metric="requests",
        metrics=_specs(
            MetricSpec("requests", "count", SUM),
            MetricSpec("errors_4xx", "count", SUM),
            MetricSpec("errors_5xx", "count", SUM),
            MetricSpec("latency", "milliseconds", MEAN),
        ),
    ),
    Domain.STORAGE: DomainSpec(
        domain=Domain.STORAGE,
        resource_label="Table",
        primary_metric="consumed_read_capacity",
        metrics=_specs(
            MetricSpec("consumed_read_capacity", "capacity_units", SUM),
            MetricSpec("consumed_write_capacity", "capacity_units", SUM),
            MetricSpec("throttled_requests", "count", SUM),
            MetricSpec("user_errors", "count", SUM),
            MetricSpec("system_errors", "count", SUM),
            MetricSpec("item_count", "count", LAST),
            MetricSpec("table_size_bytes", "bytes", LAST),
        ),
    ),
    Domain.COST: DomainSpec(
        domain=Domain.COST,
        resource_label="Billing scope",
        primary_metric="cost",
        metrics=_specs(MetricSpec("cost", "USD", SUM, dimension="service")),
        native_granularities=[Granularity.DAY],
    ),
    Domain.DISTRIBUTION: DomainSpec(
        domain=Domain.DISTRIBUTION,
        resource_label="Store app",
        primary_metric="downloads",
        metrics=_specs(
            MetricSpec("downloads", "count", SUM, dimension="territory"),
            MetricSpec("updates", "count", SUM),
            MetricSpec("revenue", "USD", SUM, dimension="product"),
            MetricSpec("active_devices", "count", MAX),
            MetricSpec("paying_users", "count", MAX),
            MetricSpec("rating_average", "stars", MEAN),
            MetricSpec("rating_count", "count", LAST),
        ),
        native_granularities=[Granularity.DAY],
    ),
}


def domain_spec(domain: Domain) -> DomainSpec:
    return CATALOG[domain]
