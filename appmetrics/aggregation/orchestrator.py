"""Fetch orchestration across independently failing sources.

The orchestrator fans out one call per ``(connector, resource)`` work item
with a bounded number of calls in flight, applies a per-call timeout capped
by the remaining request budget, and turns every outcome into exactly one
:class:`SourceFetchResult`. Failures are recorded, never raised; only task
cancellation of the caller propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config.models import OrchestratorConfig
from ..connectors import Connector, ConnectorError, ConnectorErrorKind, FetchContext
from ..domain.models import (
    ApplicationProfile,
    Domain,
    FetchStatus,
    Granularity,
    SourceFetchResult,
    TimeRange,
)
from ..utils.correlation import get_request_id
from ..utils.partial_results import classify_error, format_failure_summary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    """One resource of one domain to fetch."""

    domain: Domain
    resource_id: str
    connector: Optional[Connector]


@dataclass(frozen=True)
class FetchOutcome:
    """All fetch results of one aggregation run.

    Attributes
    ----------
    results: Tuple[SourceFetchResult, ...]
        One result per work item, in work-item order.
    completed_within_budget: bool
        False if any call was cut short by the request budget.
    elapsed_ms: int
        Wall time of the whole fan-out.
    """

    results: Tuple[SourceFetchResult, ...]
    completed_within_budget: bool
    elapsed_ms: int

    def for_domain(self, domain: Domain) -> List[SourceFetchResult]:
        return [r for r in self.results if r.domain == domain]

    def successes(self, domain: Domain) -> List[SourceFetchResult]:
        return [r for r in self.results if r.domain == domain and r.ok]


def build_work_items(
    profile: ApplicationProfile,
    domains: Iterable[Domain],
    connectors: Mapping[Domain, Connector],
) -> List[WorkItem]:
    """Every resource of every requested domain, paired with its connector."""
    items: List[WorkItem] = []
    for domain in domains:
        connector = connectors.get(domain)
        for resource_id in profile.resources_for(domain):
            items.append(WorkItem(domain, resource_id, connector))
    return items


def negotiate_granularity(
    connector: Connector, requested: Granularity
) -> Optional[Granularity]:
    """Finest granularity at or above ``requested`` that ``connector`` serves."""
    ordered = Granularity.ordered()
    for candidate in ordered[ordered.index(requested) :]:
        if connector.supports_granularity(candidate):
            return candidate
    return None


class FetchOrchestrator:
    """Concurrent, budgeted fetcher.

    Parameters
    ----------
    connectors: Mapping[Domain, Connector]
        Connector serving each domain; missing domains yield ``unavailable``.
    config: OrchestratorConfig
        Concurrency bound, per-call timeout and request budget.
    """

    def __init__(
        self,
        connectors: Mapping[Domain, Connector],
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self._connectors = dict(connectors)
        self._config = config or OrchestratorConfig()

    @property
    def connectors(self) -> Mapping[Domain, Connector]:
        return self._connectors

    async def fetch(
        self,
        profile: ApplicationProfile,
        domains: Sequence[Domain],
        time_range: TimeRange,
        *,
        request_id: Optional[str] = None,
        ranges: Optional[Mapping[Domain, TimeRange]] = None,
    ) -> FetchOutcome:
        """Fetch every resource of ``domains`` for ``profile`` over ``time_range``.

        ``ranges`` overrides the range of individual domains, e.g. a
        month-aligned daily window for billing data within a snapshot.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self._config.request_budget_seconds
        req_id = request_id or get_request_id()
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        budget_cut: List[bool] = []

        items = build_work_items(profile, domains, self._connectors)

        async def run(item: WorkItem) -> SourceFetchResult:
            if item.connector is None or not item.connector.is_configured():
                return SourceFetchResult(
                    source_id=item.connector.source_id if item.connector else "none",
                    domain=item.domain,
                    resource_id=item.resource_id,
                    status=FetchStatus.UNAVAILABLE,
                    error_detail="no configured connector",
                    error_type="not_configured",
                )
            requested = (ranges or {}).get(item.domain, time_range)
            effective = self._effective_range(item, item.connector, requested)
            if effective is None:
                return SourceFetchResult(
                    source_id=item.connector.source_id,
                    domain=item.domain,
                    resource_id=item.resource_id,
                    status=FetchStatus.UNAVAILABLE,
                    error_detail=(
                        "connector serves no granularity at or above "
                        f"{requested.granularity.value}"
                    ),
                    error_type="unsupported_granularity",
                )
            async with semaphore:
                return await self._fetch_one(
                    item, item.connector, effective, deadline, req_id, budget_cut
                )

        results = await asyncio.gather(*(run(item) for item in items))
        elapsed_ms = int((loop.time() - started) * 1000)
        outcome = FetchOutcome(
            results=tuple(results),
            completed_within_budget=not budget_cut,
            elapsed_ms=elapsed_ms,
        )

        failed = [r for r in results if not r.ok]
        logger.info(
            "orchestrator.fetch.complete",
            extra={
                "req_id": req_id,
                "app_id": profile.app_id,
                "domains": [d.value for d in domains],
                "total": len(results),
                "ok": len(results) - len(failed),
                "failed": len(failed),
                "elapsed_ms": elapsed_ms,
                "completed_within_budget": outcome.completed_within_budget,
            },
        )
        if failed:
            logger.warning(
                "orchestrator.fetch.partial",
                extra={"req_id": req_id, "summary": format_failure_summary(results)},
            )
        return outcome

    @staticmethod
    def _effective_range(
        item: WorkItem, connector: Connector, time_range: TimeRange
    ) -> Optional[TimeRange]:
        """``time_range`` at a granularity the connector serves, or None.

        A coarser range is aligned to its bucket boundaries so that rollups
        keyed at, e.g., midnight are not cut off by an unaligned start.
        """
        granularity = negotiate_granularity(connector, time_range.granularity)
        if granularity is None:
            return None
        if granularity == time_range.granularity:
            return time_range
        logger.debug(
            "orchestrator.granularity_fallback",
            extra={
                "domain": item.domain.value,
                "requested": time_range.granularity.value,
                "used": granularity.value,
            },
        )
        return time_range.aligned(granularity)

    async def _fetch_one(
        self,
        item: WorkItem,
        connector: Connector,
        time_range: TimeRange,
        deadline: float,
        req_id: str,
        budget_cut: List[bool],
    ) -> SourceFetchResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        remaining = deadline - started
        call_timeout = self._config.call_timeout_seconds
        limited_by_budget = remaining < call_timeout

        def result(status: FetchStatus, **kwargs) -> SourceFetchResult:
            return SourceFetchResult(
                source_id=connector.source_id,
                domain=item.domain,
                resource_id=item.resource_id,
                status=status,
                elapsed_ms=int((loop.time() - started) * 1000),
                **kwargs,
            )

        if remaining <= 0:
            budget_cut.append(True)
            return result(
                FetchStatus.TIMEOUT,
                error_detail="request budget exhausted before the call started",
                error_type="timeout",
            )

        timeout = min(call_timeout, remaining)
        ctx = FetchContext(deadline=started + timeout, request_id=req_id)
        try:
            series = await asyncio.wait_for(
                connector.fetch([item.resource_id], time_range, ctx), timeout
            )
        except asyncio.TimeoutError as exc:
            if limited_by_budget:
                budget_cut.append(True)
            return result(
                FetchStatus.TIMEOUT,
                error_detail=f"no response within {timeout:.1f}s",
                error_type=classify_error(exc),
            )
        except ConnectorError as exc:
            if exc.kind == ConnectorErrorKind.TIMEOUT:
                if limited_by_budget:
                    budget_cut.append(True)
                status = FetchStatus.TIMEOUT
            elif exc.kind == ConnectorErrorKind.NOT_CONFIGURED:
                status = FetchStatus.UNAVAILABLE
            else:
                status = FetchStatus.ERROR
            return result(status, error_detail=str(exc), error_type=classify_error(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "orchestrator.fetch.unexpected_error",
                extra={"domain": item.domain.value, "resource_id": item.resource_id},
            )
            return result(
                FetchStatus.ERROR, error_detail=str(exc), error_type=classify_error(exc)
            )
        return result(FetchStatus.OK, series=series)
