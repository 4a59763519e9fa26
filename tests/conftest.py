"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so imports like
``import appmetrics`` resolve correctly regardless of the working directory
pytest chooses, and provides a scriptable in-memory connector plus sample
builders shared by the orchestrator, service and HTTP tests.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

import pytest  # noqa: E402

from appmetrics.connectors import (  # noqa: E402
    ConnectorError,
    ConnectorErrorKind,
    FetchContext,
)
from appmetrics.domain.models import (  # noqa: E402
    ApplicationProfile,
    Domain,
    Granularity,
    MetricSample,
    SourceSeries,
    TimeRange,
)

NOW = datetime(2025, 10, 15, 12, 0, tzinfo=timezone.utc)


def hourly_samples(
    values: Sequence[float],
    end: datetime = NOW,
    unit: str = "count",
    dimensions: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    """Raw sample dicts, one per hour, the last one starting an hour before ``end``."""
    start = end - timedelta(hours=len(values))
    return [
        {
            "timestamp": (start + timedelta(hours=i)).isoformat(),
            "value": v,
            "unit": unit,
            "dimensions": dimensions,
        }
        for i, v in enumerate(values)
    ]


def daily_samples(
    values: Sequence[float],
    start: datetime,
    dimensions: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    return [
        {
            "timestamp": (start + timedelta(days=i)).isoformat(),
            "value": v,
            "unit": "USD",
            "dimensions": dimensions,
        }
        for i, v in enumerate(values)
    ]


def make_series(
    domain: Domain,
    resource_id: str,
    metrics: Dict[str, List[MetricSample]],
    granularity: Granularity = Granularity.HOUR,
) -> SourceSeries:
    return SourceSeries(
        source_id=f"{domain.value}-fake",
        domain=domain,
        resource_id=resource_id,
        granularity=granularity,
        metrics={k: tuple(v) for k, v in metrics.items()},
    )


class FakeConnector:
    """Scriptable connector serving raw sample dicts per resource.

    Parameters
    ----------
    domain: Domain
        Domain served.
    data: Dict[str, Dict[str, list]]
        ``{resource_id: {metric: [raw samples]}}``.
    errors: Dict[str, ConnectorError]
        Resources whose fetch raises the given error.
    delays: Dict[str, float]
        Per-resource sleep before answering (seconds).
    """

    def __init__(
        self,
        domain: Domain,
        data: Optional[Dict[str, Dict[str, list]]] = None,
        *,
        errors: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
        granularities: Optional[Sequence[Granularity]] = None,
        configured: bool = True,
    ) -> None:
        self.domain = domain
        self.source_id = f"{domain.value}-fake"
        self._data = data or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self._granularities = set(granularities) if granularities else None
        self._configured = configured
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def is_configured(self) -> bool:
        return self._configured

    def supports_granularity(self, granularity: Granularity) -> bool:
        return self._granularities is None or granularity in self._granularities

    async def aclose(self) -> None:
        self.closed = True

    async def fetch(
        self, resource_ids: Sequence[str], time_range: TimeRange, ctx: FetchContext
    ) -> SourceSeries:
        from appmetrics.connectors.samples import build_series

        self.calls.append(
            {"resource_ids": list(resource_ids), "time_range": time_range, "ctx": ctx}
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for rid in resource_ids:
                delay = self.delays.get(rid, 0.0)
                if delay:
                    await asyncio.sleep(delay)
                if rid in self.errors:
                    raise self.errors[rid]
            merged: Dict[str, list] = {}
            for rid in resource_ids:
                if rid not in self._data:
                    raise ConnectorError(
                        ConnectorErrorKind.NOT_CONFIGURED, f"no data for {rid}"
                    )
                for metric, samples in self._data[rid].items():
                    merged.setdefault(metric, []).extend(samples)
            return build_series(
                source_id=self.source_id,
                domain=self.domain,
                resource_ids=resource_ids,
                granularity=time_range.granularity,
                metrics_payload=merged,
                time_range=time_range,
            )
        finally:
            self.in_flight -= 1


def compute_data(invocations: float = 100.0, errors: float = 2.0) -> Dict[str, list]:
    return {
        "invocations": hourly_samples([invocations / 4] * 4),
        "errors": hourly_samples([errors / 4] * 4),
        "throttles": hourly_samples([0, 0, 0, 0]),
        "duration": hourly_samples([120, 130, 110, 140], unit="milliseconds"),
    }


@pytest.fixture
def demo_profile() -> ApplicationProfile:
    return ApplicationProfile(
        app_id="demo",
        name="Demo App",
        environment="dev",
        functions=("fn-a", "fn-b", "fn-c"),
        api_gateway="demo-api",
        tables=("demo-table",),
        billing_filter="app:demo",
    )


@pytest.fixture
def demo_connectors() -> Dict[Domain, FakeConnector]:
    """Healthy connectors for every domain of ``demo_profile``."""
    month_start = NOW.replace(day=1, hour=0)
    return {
        Domain.COMPUTE: FakeConnector(
            Domain.COMPUTE,
            {
                "fn-a": compute_data(100, 2),
                "fn-b": compute_data(200, 4),
                "fn-c": compute_data(300, 6),
            },
        ),
        Domain.TRAFFIC: FakeConnector(
            Domain.TRAFFIC,
            {
                "demo-api": {
                    "requests": hourly_samples([250, 250, 250, 250]),
                    "errors_4xx": hourly_samples([2, 2, 2, 2]),
                    "errors_5xx": hourly_samples([1, 1, 1, 1]),
                    "latency": hourly_samples([80, 90, 100, 110], unit="milliseconds"),
                }
            },
        ),
        Domain.STORAGE: FakeConnector(
            Domain.STORAGE,
            {
                "demo-table": {
                    "consumed_read_capacity": hourly_samples([5, 5, 5, 5]),
                    "consumed_write_capacity": hourly_samples([1, 1, 1, 1]),
                    "throttled_requests": hourly_samples([0, 0, 0, 0]),
                    "system_errors": hourly_samples([0, 0, 0, 0]),
                    "item_count": hourly_samples([10, 11, 12, 13]),
                    "table_size_bytes": hourly_samples([1000, 1100, 1200, 1300]),
                }
            },
        ),
        Domain.COST: FakeConnector(
            Domain.COST,
            {
                "app:demo": {
                    "cost": daily_samples([10.0] * 14, month_start, {"service": "Lambda"})
                    + daily_samples([2.0] * 14, month_start, {"service": "DynamoDB"})
                }
            },
            granularities=[Granularity.DAY],
        ),
    }
