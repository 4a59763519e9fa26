"""
Derived metrics calculator.

Pure functions that turn fetched series into business figures: error rates,
trend deltas, month-end cost projection, revenue per user, top-N rankings,
the per-domain summaries of a snapshot and the health evaluation. Nothing
here performs I/O or touches shared state; every division by zero yields 0.
"""

import logging
import math
from datetime import datetime
from typing import (
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from ..config.models import Thresholds
from ..domain.catalog import CATALOG
from ..domain.models import (
    Domain,
    FetchStatus,
    Granularity,
    SourceFetchResult,
    TimeRange,
)
from ..domain.utils.aggregation import (
    AggregationStrategy,
    aggregate_samples,
    bucket_samples,
    cross_resource_strategy,
    group_by_dimension,
    merge_bucket_columns,
)
from ..domain.utils.statistics import linear_fit, mean_or_zero, non_null
from ..domain.utils.validation import clamp, is_valid_float, sanitize_float
from ..utils.partial_results import describe_failure
from .models import (
    ComputeSummary,
    CostProjection,
    CostSummary,
    DistributionSummary,
    HealthStatus,
    HealthSummary,
    ProjectionMethod,
    RankedItem,
    StorageSummary,
    TrafficSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_TREND_WINDOW = 7
DEFAULT_TOP_SERVICES = 5
RESIDUAL_TOLERANCE = 1e-9


# ---------------------------------------------------------------------------
# Pure derived metrics
# ---------------------------------------------------------------------------


def error_rate(errors: float, invocations: float) -> float:
    """
    Error percentage of ``invocations``, clamped to ``[0, 100]``.

    Examples
    --------
    >>> error_rate(5, 100)
    5.0
    >>> error_rate(3, 0)
    0.0
    """
    if not is_valid_float(invocations) or invocations <= 0:
        return 0.0
    return clamp(errors / max(invocations, 1) * 100.0, 0.0, 100.0)


def trend_delta(values: Sequence[float], window: int = DEFAULT_TREND_WINDOW) -> float:
    """
    Percentage change of the mean of the last N values over the N before.

    ``N = min(window, len(values) // 2)``. Returns 0 with fewer than two
    values or when the earlier mean is 0.

    Examples
    --------
    >>> trend_delta([10, 10, 20, 20], window=2)
    100.0
    >>> trend_delta([10] * 7)
    0.0
    """
    vals = [float(v) for v in values if is_valid_float(v)]
    if len(vals) < 2 or window < 1:
        return 0.0
    n = min(window, len(vals) // 2)
    recent = sum(vals[-n:]) / n
    previous = sum(vals[-2 * n : -n]) / n
    if previous == 0:
        return 0.0
    return (recent - previous) / previous * 100.0


def project_cost(daily_costs: Sequence[float], days_in_month: int) -> CostProjection:
    """
    Project month-end cost from the month-to-date daily series.

    With two or more days, an ordinary least-squares line through the daily
    values is extrapolated over the remaining days (negative extrapolations
    count as 0). With a single day the daily average is carried forward.

    Parameters
    ----------
    daily_costs : Sequence[float]
        One cost per elapsed day of the month, oldest first
    days_in_month : int
        Calendar length of the month being projected

    Returns
    -------
    CostProjection
        Month-to-date total, projection, fit parameters and confidence

    Examples
    --------
    >>> project_cost([10.0], 30).projected_month
    300.0
    """
    costs = [float(c) for c in daily_costs if is_valid_float(c)]
    n = len(costs)
    if n == 0:
        return CostProjection(days_in_month=days_in_month)

    month_to_date = sum(costs)
    daily_average = month_to_date / n
    days_remaining = max(days_in_month - n, 0)
    projected_year = daily_average * 365

    fit = linear_fit(costs) if n >= 2 else None
    if fit is None:
        return CostProjection(
            month_to_date=month_to_date,
            daily_average=daily_average,
            projected_month=month_to_date + daily_average * days_remaining,
            projected_year=projected_year,
            intercept=daily_average,
            method=ProjectionMethod.DAILY_AVERAGE,
            confidence=0.0,
            days_elapsed=n,
            days_in_month=days_in_month,
        )

    extrapolated = sum(max(fit.predict(x), 0.0) for x in range(n, n + days_remaining))
    residual_std = math.sqrt(fit.residual_variance)
    # Residuals this small relative to the level are float rounding, not misfit
    if residual_std <= RESIDUAL_TOLERANCE * max(abs(daily_average), 1.0):
        confidence = 1.0
    elif daily_average <= 0:
        confidence = 0.0
    else:
        confidence = clamp(1.0 - residual_std / daily_average, 0.0, 1.0)

    return CostProjection(
        month_to_date=month_to_date,
        daily_average=daily_average,
        projected_month=month_to_date + extrapolated,
        projected_year=projected_year,
        slope=fit.slope,
        intercept=fit.intercept,
        method=ProjectionMethod.LINEAR_FIT,
        confidence=confidence,
        days_elapsed=n,
        days_in_month=days_in_month,
    )


def revenue_per_user(
    revenue: float, active_devices: float, paying_users: float
) -> Tuple[float, float]:
    """Return ``(arpu, arppu)``; a zero denominator yields 0 for that figure."""
    arpu = revenue / active_devices if active_devices > 0 else 0.0
    arppu = revenue / paying_users if paying_users > 0 else 0.0
    return arpu, arppu


def rank_top_n(values: Mapping[str, float], n: Optional[int] = None) -> List[RankedItem]:
    """
    Rank entries by value, descending, ties broken by key.

    Percentages are relative to the total of all entries, not just the
    returned ones; they are 0 when the total is 0.

    Examples
    --------
    >>> [i.key for i in rank_top_n({"b": 1.0, "a": 1.0, "c": 5.0}, 2)]
    ['c', 'a']
    """
    total = sum(values.values())
    ordered = sorted(values.items(), key=lambda kv: (-kv[1], kv[0]))
    if n is not None:
        ordered = ordered[: max(n, 0)]
    return [
        RankedItem(
            key=key,
            value=value,
            percentage=(value / total * 100.0) if total else 0.0,
        )
        for key, value in ordered
    ]


# ---------------------------------------------------------------------------
# Series helpers
# ---------------------------------------------------------------------------


def ok_results(results: Iterable[SourceFetchResult]) -> List[SourceFetchResult]:
    return [r for r in results if r.ok]


def series_granularity(
    results: Sequence[SourceFetchResult], default: Granularity
) -> Granularity:
    """Coarsest granularity among fetched series, or ``default`` if none."""
    seen = [r.series.granularity for r in results if r.ok and r.series is not None]
    if not seen:
        return default
    return max(seen, key=lambda g: g.seconds)


def merged_buckets(
    results: Sequence[SourceFetchResult],
    domain: Domain,
    metric: str,
    time_range: TimeRange,
    granularity: Optional[Granularity] = None,
) -> List[Optional[float]]:
    """
    One value per bucket of ``time_range``, merged across resources.

    Each resource is bucketed with the metric's own strategy; resources are
    then combined by sum, or by mean for mean-type metrics.
    """
    spec = CATALOG[domain].metric(metric)
    g = granularity or time_range.granularity
    columns = [
        bucket_samples(r.series.samples(metric), time_range, spec.strategy, g)
        for r in results
        if r.ok and r.series is not None
    ]
    if not columns:
        return [None] * time_range.bucket_count(g)
    return merge_bucket_columns(columns, cross_resource_strategy(spec.strategy))


def _total(results: Sequence[SourceFetchResult], metric: str) -> float:
    return sum(r.series.total(metric) for r in results if r.series is not None)


def _per_resource(
    results: Sequence[SourceFetchResult], metric: str, strategy: AggregationStrategy
) -> List[float]:
    """Aggregate each resource's samples of ``metric`` into one value."""
    values: List[float] = []
    for r in results:
        if r.series is None:
            continue
        value = aggregate_samples([s.value for s in r.series.samples(metric)], strategy)
        if value is not None:
            values.append(value)
    return values


def _counts(results: Sequence[SourceFetchResult]) -> Dict[str, int]:
    ok = sum(1 for r in results if r.ok)
    return {"sources_ok": ok, "sources_failed": len(results) - ok}


# ---------------------------------------------------------------------------
# Per-domain summaries
# ---------------------------------------------------------------------------


def summarize_compute(
    results: Sequence[SourceFetchResult], time_range: TimeRange
) -> ComputeSummary:
    ok = ok_results(results)
    invocations = _total(ok, "invocations")
    errors = _total(ok, "errors")
    g = series_granularity(ok, time_range.granularity)
    return ComputeSummary(
        total_invocations=invocations,
        total_errors=errors,
        total_throttles=_total(ok, "throttles"),
        error_rate=error_rate(errors, invocations),
        average_duration_ms=mean_or_zero(
            _per_resource(ok, "duration", AggregationStrategy.MEAN)
        ),
        function_count=len(results),
        invocation_trend=trend_delta(
            non_null(merged_buckets(ok, Domain.COMPUTE, "invocations", time_range, g))
        ),
        **_counts(results),
    )


def summarize_traffic(
    results: Sequence[SourceFetchResult], time_range: TimeRange
) -> TrafficSummary:
    ok = ok_results(results)
    requests = _total(ok, "requests")
    errors_4xx = _total(ok, "errors_4xx")
    errors_5xx = _total(ok, "errors_5xx")
    g = series_granularity(ok, time_range.granularity)
    return TrafficSummary(
        total_requests=requests,
        total_4xx=errors_4xx,
        total_5xx=errors_5xx,
        error_rate=error_rate(errors_4xx + errors_5xx, requests),
        average_latency_ms=mean_or_zero(
            _per_resource(ok, "latency", AggregationStrategy.MEAN)
        ),
        request_trend=trend_delta(
            non_null(merged_buckets(ok, Domain.TRAFFIC, "requests", time_range, g))
        ),
        **_counts(results),
    )


def summarize_storage(
    results: Sequence[SourceFetchResult], time_range: TimeRange
) -> StorageSummary:
    _ = time_range
    ok = ok_results(results)
    return StorageSummary(
        read_capacity=_total(ok, "consumed_read_capacity"),
        write_capacity=_total(ok, "consumed_write_capacity"),
        throttled_requests=_total(ok, "throttled_requests"),
        user_errors=_total(ok, "user_errors"),
        system_errors=_total(ok, "system_errors"),
        table_count=len(results),
        item_count=sum(_per_resource(ok, "item_count", AggregationStrategy.LAST)),
        table_size_bytes=sum(
            _per_resource(ok, "table_size_bytes", AggregationStrategy.LAST)
        ),
        **_counts(results),
    )


def daily_costs(
    results: Sequence[SourceFetchResult], time_range: TimeRange
) -> List[Optional[float]]:
    """Cost per day of ``time_range``; days without billing data are None."""
    return merged_buckets(results, Domain.COST, "cost", time_range, Granularity.DAY)


def month_to_date_costs(
    results: Sequence[SourceFetchResult], window: TimeRange, month: datetime
) -> List[float]:
    """Daily costs of ``window`` from ``month`` on; days without data are skipped.

    ``window`` must be a daily range aligned to midnight so that its buckets
    coincide with calendar days.
    """
    per_day = daily_costs(results, window)
    starts = window.bucket_starts(Granularity.DAY)
    return [v for ts, v in zip(starts, per_day) if ts >= month and v is not None]


def summarize_cost(
    results: Sequence[SourceFetchResult],
    window: TimeRange,
    month: datetime,
    days_in_month: int,
    top_n: int = DEFAULT_TOP_SERVICES,
) -> CostSummary:
    """Month-to-date spend of the billing month starting at ``month``.

    Figures are those of :func:`project_cost` over the same series, so a
    snapshot and a projection view of one month always agree.
    """
    ok = ok_results(results)
    daily = month_to_date_costs(ok, window, month)
    projection = project_cost(daily, days_in_month)
    by_service: Dict[str, float] = {}
    for r in ok:
        if r.series is None:
            continue
        in_month = [
            s
            for s in r.series.samples("cost")
            if s.timestamp >= month and window.contains(s.timestamp)
        ]
        for key, value in group_by_dimension(
            in_month, "service", default_key=r.resource_id
        ).items():
            by_service[key] = by_service.get(key, 0.0) + value
    return CostSummary(
        current_period=projection.month_to_date,
        daily_average=projection.daily_average,
        projected_month=projection.projected_month,
        trend=trend_delta(daily),
        top_services=rank_top_n(by_service, top_n),
        **_counts(results),
    )


def summarize_distribution(
    results: Sequence[SourceFetchResult], time_range: TimeRange
) -> DistributionSummary:
    ok = ok_results(results)
    revenue = _total(ok, "revenue")
    active = sum(_per_resource(ok, "active_devices", AggregationStrategy.MAX))
    paying = sum(_per_resource(ok, "paying_users", AggregationStrategy.MAX))
    arpu, arppu = revenue_per_user(revenue, active, paying)
    # Store ratings are on a 0-5 scale; anything else is upstream noise
    ratings = non_null(
        [
            sanitize_float(s.value, min_value=0.0, max_value=5.0)
            for r in ok
            if r.series is not None
            for s in r.series.samples("rating_average")
        ]
    )
    g = series_granularity(ok, time_range.granularity)
    return DistributionSummary(
        downloads=_total(ok, "downloads"),
        updates=_total(ok, "updates"),
        revenue=revenue,
        arpu=arpu,
        arppu=arppu,
        active_devices=active,
        paying_users=paying,
        average_rating=mean_or_zero(ratings),
        total_ratings=sum(_per_resource(ok, "rating_count", AggregationStrategy.LAST)),
        download_trend=trend_delta(
            non_null(merged_buckets(ok, Domain.DISTRIBUTION, "downloads", time_range, g))
        ),
        **_counts(results),
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def collect_alerts(
    results: Iterable[SourceFetchResult], thresholds: Optional[Thresholds] = None
) -> List[str]:
    """Threshold findings for successfully fetched sources, one per resource."""
    t = thresholds or Thresholds()
    alerts: List[str] = []
    for r in results:
        if not r.ok or r.series is None:
            continue
        s = r.series
        if r.domain == Domain.COMPUTE:
            rate = error_rate(s.total("errors"), s.total("invocations"))
            if rate > t.function_error_rate_percent:
                alerts.append(
                    f"Function {r.resource_id} has high error rate: {rate:.2f}%"
                )
            elif s.total("throttles") > t.function_throttles:
                alerts.append(f"Function {r.resource_id} is being throttled")
        elif r.domain == Domain.TRAFFIC:
            rate = error_rate(
                s.total("errors_4xx") + s.total("errors_5xx"), s.total("requests")
            )
            latency = mean_or_zero([x.value for x in s.samples("latency")])
            if rate > t.gateway_error_rate_percent:
                alerts.append(
                    f"API gateway {r.resource_id} has high error rate: {rate:.2f}%"
                )
            elif latency > t.gateway_latency_ms:
                alerts.append(
                    f"API gateway {r.resource_id} has high latency: {latency:.0f}ms"
                )
        elif r.domain == Domain.STORAGE:
            if s.total("throttled_requests") > t.table_throttles:
                alerts.append(f"Table {r.resource_id} is being throttled")
            elif s.total("system_errors") > t.table_system_errors:
                alerts.append(f"Table {r.resource_id} has system errors")
    return alerts


def evaluate_health(
    results: Sequence[SourceFetchResult],
    required_domains: Iterable[Domain],
    thresholds: Optional[Thresholds] = None,
) -> HealthSummary:
    """
    Derive the health of one aggregation from its fetch results.

    Status rules:
    - ``critical`` if a required domain had work items and none succeeded,
      or if nothing succeeded at all while something failed;
    - ``degraded`` if any source failed;
    - ``healthy`` otherwise.
    Domains without work items never affect the status. Alerts are reported
    alongside and never change it.
    """
    ok = [r for r in results if r.ok]
    failed = [r for r in results if not r.ok]
    unavailable = [r for r in failed if r.status == FetchStatus.UNAVAILABLE]

    critical_domains = []
    for domain in required_domains:
        domain_results = [r for r in results if r.domain == domain]
        if domain_results and not any(r.ok for r in domain_results):
            critical_domains.append(domain)

    if critical_domains or (failed and not ok):
        status = HealthStatus.CRITICAL
    elif failed:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    if status != HealthStatus.HEALTHY:
        logger.info(
            "calculator.health",
            extra={
                "status": status.value,
                "critical_domains": [d.value for d in critical_domains],
                "failed": len(failed),
                "ok": len(ok),
            },
        )

    return HealthSummary(
        status=status,
        healthy_sources=len(ok),
        failed_sources=len(failed) - len(unavailable),
        unavailable_sources=len(unavailable),
        issues=[describe_failure(r) for r in failed],
        alerts=collect_alerts(ok, thresholds),
    )
