"""Aggregation service: the read views served to dashboards.

Every view runs through the same pipeline:

1. resolve the range token into a concrete time range;
2. look the view up in the aggregation cache (a fresh hit short-circuits);
3. fan out to the connectors of the domains the view needs;
4. evaluate health; a critical result aborts the computation so that the
   cache can fall back to a stale payload;
5. shape the fetched series into the view model.

Only step 5 differs between views.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from ..config.models import AppConfig, CacheConfig, Thresholds
from ..connectors import Connector
from ..domain.catalog import CATALOG, MetricSpec
from ..domain.models import ApplicationProfile, Domain, Granularity, TimeRange
from ..domain.timerange import TimeRangeResolver, normalize_token
from ..domain.utils.aggregation import aggregate_samples, group_by_dimension
from ..domain.utils.timestamps import days_in_month, format_period, month_start
from ..utils.cache import AggregationCache
from .calculator import (
    daily_costs,
    evaluate_health,
    merged_buckets,
    month_to_date_costs,
    ok_results,
    project_cost,
    rank_top_n,
    series_granularity,
    summarize_compute,
    summarize_cost,
    summarize_distribution,
    summarize_storage,
    summarize_traffic,
)
from .models import (
    AggregatedSnapshot,
    ApplicationInfo,
    BreakdownView,
    HealthStatus,
    HealthSummary,
    ProjectionView,
    SourceStatus,
    TimeSeriesPoint,
    TimeSeriesView,
    ViewEnvelope,
)
from .orchestrator import FetchOrchestrator, FetchOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

VIEW_SUMMARY = "summary"
VIEW_TIMESERIES = "timeseries"
VIEW_BREAKDOWN = "breakdown"
VIEW_PROJECTION = "projection"

SNAPSHOT_REQUIRED = (Domain.COMPUTE, Domain.TRAFFIC, Domain.STORAGE, Domain.COST)
DEFAULT_BREAKDOWN_LIMIT = 10
RESOURCE_DIMENSION = "resource"


class UnknownApplication(LookupError):
    """Raised when a view is requested for an application id not configured."""

    def __init__(self, app_id: str, available: Sequence[str]) -> None:
        super().__init__(f"unknown application '{app_id}'")
        self.app_id = app_id
        self.available = list(available)


class InvalidViewRequest(ValueError):
    """Raised for an unknown domain or metric, or an invalid view parameter."""

    def __init__(self, detail: str, available_options: Optional[Sequence[str]] = None):
        super().__init__(detail)
        self.detail = detail
        self.available_options = list(available_options or [])


class AggregationUnavailable(RuntimeError):
    """Raised when a domain required by the view failed for every source."""

    def __init__(self, health: HealthSummary) -> None:
        super().__init__("aggregation unavailable: " + "; ".join(health.issues))
        self.health = health
        self.issues = list(health.issues)


@dataclass(frozen=True)
class PipelineRun:
    """Fetched data of one aggregation, ready for shaping."""

    profile: ApplicationProfile
    range_token: str
    time_range: TimeRange
    outcome: FetchOutcome
    health: HealthSummary
    ranges: Mapping[Domain, TimeRange] = field(default_factory=dict)

    def range_for(self, domain: Domain) -> TimeRange:
        return self.ranges.get(domain, self.time_range)

    @property
    def sources(self) -> List[SourceStatus]:
        return [SourceStatus.from_result(r) for r in self.outcome.results]


@dataclass(frozen=True)
class ComputedView(Generic[T]):
    """Cached payload: the shaped view plus how its fetch went."""

    view: T
    completed_within_budget: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def billing_month(end: datetime) -> datetime:
    """Start of the month a cost projection ending at ``end`` covers.

    Exactly at a month boundary the month that just ended is reported.
    """
    month = month_start(end)
    if month >= end:
        month = month_start(month - timedelta(days=1))
    return month


def cost_window(requested: TimeRange) -> Tuple[TimeRange, datetime]:
    """Daily, midnight-aligned range covering ``requested`` and its billing month."""
    month = billing_month(requested.end)
    window = TimeRange(
        start=min(requested.start, month),
        end=requested.end,
        granularity=Granularity.DAY,
    ).aligned()
    return window, month


class AggregationService:
    """Snapshot, time-series, breakdown and projection views.

    Parameters
    ----------
    profiles: Mapping[str, ApplicationProfile]
        Application registry keyed by ``app_id``.
    orchestrator: FetchOrchestrator
        Fan-out over the configured connectors.
    cache: AggregationCache, optional
        Shared cache; a private one is created if omitted.
    resolver: TimeRangeResolver, optional
        Range token resolver (display budget).
    cache_config: CacheConfig, optional
        Per-view TTLs.
    thresholds: Thresholds, optional
        Alert thresholds for health summaries.
    now: Callable[[], datetime]
        Wall clock; injectable for tests.
    """

    def __init__(
        self,
        profiles: Mapping[str, ApplicationProfile],
        orchestrator: FetchOrchestrator,
        cache: Optional[AggregationCache] = None,
        *,
        resolver: Optional[TimeRangeResolver] = None,
        cache_config: Optional[CacheConfig] = None,
        thresholds: Optional[Thresholds] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._profiles: Dict[str, ApplicationProfile] = {
            app_id: p if p.app_id else p.model_copy(update={"app_id": app_id})
            for app_id, p in profiles.items()
        }
        self._orchestrator = orchestrator
        self._cache_config = cache_config or CacheConfig()
        self._cache = cache or AggregationCache(
            maxsize=self._cache_config.maxsize,
            max_stale_seconds=self._cache_config.max_stale_seconds,
        )
        self._resolver = resolver or TimeRangeResolver()
        self._thresholds = thresholds or Thresholds()
        self._now = now

    @classmethod
    def from_config(
        cls, config: AppConfig, connectors: Mapping[Domain, Connector]
    ) -> "AggregationService":
        return cls(
            config.applications,
            FetchOrchestrator(connectors, config.orchestrator),
            resolver=TimeRangeResolver(config.display_budget),
            cache_config=config.cache,
            thresholds=config.thresholds,
        )

    @property
    def cache(self) -> AggregationCache:
        return self._cache

    @property
    def connectors(self) -> Mapping[Domain, Connector]:
        return self._orchestrator.connectors

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def list_applications(self) -> List[ApplicationInfo]:
        return [
            ApplicationInfo(
                app_id=app_id,
                name=p.name or app_id,
                environment=p.environment,
                domains=p.configured_domains(),
            )
            for app_id, p in sorted(self._profiles.items())
        ]

    def get_profile(self, app_id: str) -> ApplicationProfile:
        try:
            return self._profiles[app_id]
        except KeyError:
            raise UnknownApplication(app_id, sorted(self._profiles)) from None

    def invalidate_cache(self, app_id: Optional[str] = None) -> int:
        if app_id is not None:
            self.get_profile(app_id)
        return self._cache.invalidate(app_id)

    async def aclose(self) -> None:
        for connector in self.connectors.values():
            await connector.aclose()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def get_snapshot(
        self, app_id: str, range_token: str = "24h"
    ) -> ViewEnvelope[AggregatedSnapshot]:
        """Dashboard snapshot with one summary per configured domain."""
        profile = self.get_profile(app_id)
        time_range = self._resolve(range_token)
        domains = profile.configured_domains()
        ranges = {Domain.COST: cost_window(time_range)[0]}

        async def compute() -> ComputedView[AggregatedSnapshot]:
            run = await self._run_pipeline(
                profile,
                range_token,
                time_range,
                domains,
                SNAPSHOT_REQUIRED,
                ranges=ranges,
            )
            return ComputedView(
                self._shape_snapshot(run), run.outcome.completed_within_budget
            )

        return await self._serve(app_id, VIEW_SUMMARY, range_token, compute)

    async def get_time_series(
        self,
        app_id: str,
        domain: Union[Domain, str],
        range_token: str = "24h",
        metric: Optional[str] = None,
        granularity: Optional[Union[Granularity, str]] = None,
    ) -> ViewEnvelope[TimeSeriesView]:
        """One metric of one domain on the range grid, merged across resources."""
        profile = self.get_profile(app_id)
        dom = _parse_domain(domain)
        spec = _parse_metric(dom, metric)
        gran = _parse_granularity(granularity)
        time_range = self._resolve(range_token, gran)

        async def compute() -> ComputedView[TimeSeriesView]:
            run = await self._run_pipeline(
                profile, range_token, time_range, [dom], [dom]
            )
            return ComputedView(
                self._shape_time_series(run, dom, spec),
                run.outcome.completed_within_budget,
            )

        view_kind = f"{VIEW_TIMESERIES}:{dom.value}:{spec.name}"
        if gran is not None:
            view_kind += f":{gran.value}"
        return await self._serve(app_id, view_kind, range_token, compute)

    async def get_breakdown(
        self,
        app_id: str,
        domain: Union[Domain, str],
        range_token: str = "24h",
        metric: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ViewEnvelope[BreakdownView]:
        """Ranked sub-components of one metric."""
        profile = self.get_profile(app_id)
        dom = _parse_domain(domain)
        spec = _parse_metric(dom, metric)
        if limit is None:
            limit = DEFAULT_BREAKDOWN_LIMIT
        if limit < 1:
            raise InvalidViewRequest("limit must be at least 1")
        time_range = self._resolve(range_token)

        async def compute() -> ComputedView[BreakdownView]:
            run = await self._run_pipeline(
                profile, range_token, time_range, [dom], [dom]
            )
            return ComputedView(
                self._shape_breakdown(run, dom, spec, limit),
                run.outcome.completed_within_budget,
            )

        view_kind = f"{VIEW_BREAKDOWN}:{dom.value}:{spec.name}:{limit}"
        return await self._serve(app_id, view_kind, range_token, compute)

    async def get_projection(
        self, app_id: str, range_token: str = "mtd"
    ) -> ViewEnvelope[ProjectionView]:
        """Month-end cost projection from daily billing data."""
        profile = self.get_profile(app_id)
        fetch_range, month = cost_window(self._resolve(range_token))

        async def compute() -> ComputedView[ProjectionView]:
            run = await self._run_pipeline(
                profile, range_token, fetch_range, [Domain.COST], [Domain.COST]
            )
            return ComputedView(
                self._shape_projection(run, month), run.outcome.completed_within_budget
            )

        return await self._serve(app_id, VIEW_PROJECTION, range_token, compute)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _resolve(
        self, range_token: str, granularity: Optional[Granularity] = None
    ) -> TimeRange:
        return self._resolver.resolve(range_token, self._now(), granularity)

    async def _serve(
        self,
        app_id: str,
        view_kind: str,
        range_token: str,
        compute: Callable[[], Awaitable[ComputedView[Any]]],
    ) -> ViewEnvelope[Any]:
        key = (app_id, view_kind, normalize_token(range_token))
        result = await self._cache.get_or_compute(
            key, compute, self._cache_config.ttl_for(view_kind)
        )
        payload: ComputedView[Any] = result.payload
        return ViewEnvelope(
            data=payload.view,
            stale=result.stale,
            cache_hit=result.cache_hit,
            computed_at=result.computed_at,
            completed_within_budget=payload.completed_within_budget,
        )

    async def _run_pipeline(
        self,
        profile: ApplicationProfile,
        range_token: str,
        time_range: TimeRange,
        domains: Sequence[Domain],
        required: Sequence[Domain],
        *,
        ranges: Optional[Mapping[Domain, TimeRange]] = None,
    ) -> PipelineRun:
        """Fetch the domains of one view and evaluate their health.

        Raises
        ------
        AggregationUnavailable
            If the health evaluation is critical.
        """
        outcome = await self._orchestrator.fetch(
            profile, domains, time_range, ranges=ranges
        )
        required_here = [d for d in required if d in domains]
        health = evaluate_health(outcome.results, required_here, self._thresholds)
        if health.status == HealthStatus.CRITICAL:
            logger.error(
                "aggregation.unavailable",
                extra={
                    "app_id": profile.app_id,
                    "range": range_token,
                    "issues": health.issues,
                },
            )
            raise AggregationUnavailable(health)
        if health.status == HealthStatus.DEGRADED:
            logger.warning(
                "aggregation.degraded",
                extra={
                    "app_id": profile.app_id,
                    "range": range_token,
                    "issues": health.issues,
                },
            )
        return PipelineRun(
            profile, range_token, time_range, outcome, health, dict(ranges or {})
        )

    # ------------------------------------------------------------------
    # Shaping
    # ------------------------------------------------------------------

    def _shape_snapshot(self, run: PipelineRun) -> AggregatedSnapshot:
        tr = run.time_range
        outcome = run.outcome
        profile = run.profile
        sections: Dict[str, Any] = {}
        if profile.resources_for(Domain.COMPUTE):
            sections["compute"] = summarize_compute(
                outcome.for_domain(Domain.COMPUTE), tr
            )
        if profile.resources_for(Domain.TRAFFIC):
            sections["traffic"] = summarize_traffic(
                outcome.for_domain(Domain.TRAFFIC), tr
            )
        if profile.resources_for(Domain.STORAGE):
            sections["storage"] = summarize_storage(
                outcome.for_domain(Domain.STORAGE), tr
            )
        if profile.resources_for(Domain.COST):
            window = run.range_for(Domain.COST)
            month = billing_month(window.end)
            sections["cost"] = summarize_cost(
                outcome.for_domain(Domain.COST), window, month, days_in_month(month)
            )
        if profile.resources_for(Domain.DISTRIBUTION):
            sections["distribution"] = summarize_distribution(
                outcome.for_domain(Domain.DISTRIBUTION), tr
            )
        return AggregatedSnapshot(
            app_id=profile.app_id,
            range_token=run.range_token,
            period=format_period(tr.start, tr.end),
            time_range=tr,
            generated_at=self._now(),
            health=run.health,
            sources=run.sources,
            **sections,
        )

    def _shape_time_series(
        self, run: PipelineRun, domain: Domain, spec: MetricSpec
    ) -> TimeSeriesView:
        ok = ok_results(run.outcome.results)
        granularity = series_granularity(ok, run.time_range.granularity)
        grid = run.time_range
        if granularity != grid.granularity:
            # Coarser rollups are keyed on their own boundaries (daily at midnight)
            grid = grid.aligned(granularity)
        values = merged_buckets(ok, domain, spec.name, grid, granularity)
        points = [
            TimeSeriesPoint(timestamp=ts, value=value)
            for ts, value in zip(grid.bucket_starts(granularity), values)
        ]
        return TimeSeriesView(
            app_id=run.profile.app_id,
            domain=domain,
            metric=spec.name,
            unit=spec.unit,
            range_token=run.range_token,
            time_range=run.time_range,
            granularity=granularity,
            points=points,
            health=run.health,
            sources=run.sources,
        )

    def _shape_breakdown(
        self, run: PipelineRun, domain: Domain, spec: MetricSpec, limit: int
    ) -> BreakdownView:
        ok = ok_results(run.outcome.results)
        values: Dict[str, float] = {}
        dimension = spec.dimension or RESOURCE_DIMENSION
        for r in ok:
            if r.series is None:
                continue
            samples = r.series.samples(spec.name)
            if spec.dimension:
                grouped = group_by_dimension(samples, spec.dimension, r.resource_id)
            else:
                value = aggregate_samples([s.value for s in samples], spec.strategy)
                grouped = {r.resource_id: value} if value is not None else {}
            for key, value in grouped.items():
                values[key] = values.get(key, 0.0) + value
        return BreakdownView(
            app_id=run.profile.app_id,
            domain=domain,
            metric=spec.name,
            unit=spec.unit,
            dimension=dimension,
            range_token=run.range_token,
            time_range=run.time_range,
            total=sum(values.values()),
            items=rank_top_n(values, limit),
            health=run.health,
            sources=run.sources,
        )

    def _shape_projection(self, run: PipelineRun, month: datetime) -> ProjectionView:
        ok = ok_results(run.outcome.results)
        tr = run.time_range
        per_day = daily_costs(ok, tr)
        starts = tr.bucket_starts(Granularity.DAY)
        month_to_date = month_to_date_costs(ok, tr, month)
        projection = project_cost(month_to_date, days_in_month(month))
        return ProjectionView(
            app_id=run.profile.app_id,
            range_token=run.range_token,
            time_range=tr,
            month_start=month,
            projection=projection,
            daily_costs=[
                TimeSeriesPoint(timestamp=ts, value=v) for ts, v in zip(starts, per_day)
            ],
            health=run.health,
            sources=run.sources,
        )


def _parse_domain(value: Union[Domain, str]) -> Domain:
    if isinstance(value, Domain):
        return value
    try:
        return Domain(str(value).strip().lower())
    except ValueError:
        raise InvalidViewRequest(
            f"unknown domain '{value}'", [d.value for d in Domain]
        ) from None


def _parse_metric(domain: Domain, metric: Optional[str]) -> MetricSpec:
    spec = CATALOG[domain]
    name = metric or spec.primary_metric
    try:
        return spec.metric(name)
    except KeyError:
        raise InvalidViewRequest(
            f"unknown metric '{name}' for domain '{domain.value}'", spec.metric_names()
        ) from None


def _parse_granularity(
    value: Optional[Union[Granularity, str]],
) -> Optional[Granularity]:
    if value is None or isinstance(value, Granularity):
        return value
    try:
        return Granularity(str(value).strip().lower())
    except ValueError:
        raise InvalidViewRequest(
            f"unknown granularity '{value}'", [g.value for g in Granularity.ordered()]
        ) from None
