"""Tests for the concurrent fetch orchestrator."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW, FakeConnector, compute_data

from appmetrics.aggregation.orchestrator import (
    FetchOrchestrator,
    build_work_items,
    negotiate_granularity,
)
from appmetrics.config.models import OrchestratorConfig
from appmetrics.connectors import ConnectorError, ConnectorErrorKind
from appmetrics.domain.models import (
    ApplicationProfile,
    Domain,
    FetchStatus,
    Granularity,
    TimeRange,
)

DAY_RANGE = TimeRange(
    start=NOW - timedelta(hours=24), end=NOW, granularity=Granularity.HOUR
)


def _profile(n_functions: int = 3) -> ApplicationProfile:
    return ApplicationProfile(
        app_id="demo",
        functions=tuple(f"fn-{i}" for i in range(n_functions)),
        api_gateway="demo-api",
        billing_filter="app:demo",
    )


def _compute(**kwargs) -> FakeConnector:
    data = {f"fn-{i}": compute_data() for i in range(10)}
    return FakeConnector(Domain.COMPUTE, data, **kwargs)


def test_build_work_items(demo_profile, demo_connectors):
    items = build_work_items(
        demo_profile, [Domain.COMPUTE, Domain.DISTRIBUTION], demo_connectors
    )
    assert [(i.domain, i.resource_id) for i in items] == [
        (Domain.COMPUTE, "fn-a"),
        (Domain.COMPUTE, "fn-b"),
        (Domain.COMPUTE, "fn-c"),
    ]


@pytest.mark.asyncio
async def test_all_sources_succeed(demo_profile, demo_connectors):
    orchestrator = FetchOrchestrator(demo_connectors)
    outcome = await orchestrator.fetch(
        demo_profile, [Domain.COMPUTE, Domain.TRAFFIC], DAY_RANGE
    )
    assert [r.resource_id for r in outcome.results] == [
        "fn-a",
        "fn-b",
        "fn-c",
        "demo-api",
    ]
    assert all(r.status == FetchStatus.OK for r in outcome.results)
    assert outcome.completed_within_budget is True
    assert len(outcome.successes(Domain.COMPUTE)) == 3


@pytest.mark.asyncio
async def test_slow_source_times_out_without_blocking_others():
    connector = _compute(delays={"fn-1": 1.0})
    orchestrator = FetchOrchestrator(
        {Domain.COMPUTE: connector},
        OrchestratorConfig(call_timeout_seconds=0.05, request_budget_seconds=5),
    )
    outcome = await orchestrator.fetch(_profile(), [Domain.COMPUTE], DAY_RANGE)
    statuses = {r.resource_id: r.status for r in outcome.results}
    assert statuses == {
        "fn-0": FetchStatus.OK,
        "fn-1": FetchStatus.TIMEOUT,
        "fn-2": FetchStatus.OK,
    }
    timed_out = outcome.results[1]
    assert timed_out.error_type == "timeout"
    # Per-call timeouts are not budget cuts
    assert outcome.completed_within_budget is True


@pytest.mark.asyncio
async def test_request_budget_cut_is_reported():
    connector = _compute(delays={"fn-0": 1.0})
    orchestrator = FetchOrchestrator(
        {Domain.COMPUTE: connector},
        OrchestratorConfig(call_timeout_seconds=5, request_budget_seconds=0.05),
    )
    outcome = await orchestrator.fetch(_profile(1), [Domain.COMPUTE], DAY_RANGE)
    assert outcome.results[0].status == FetchStatus.TIMEOUT
    assert outcome.completed_within_budget is False


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    connector = _compute(delays={f"fn-{i}": 0.02 for i in range(8)})
    orchestrator = FetchOrchestrator(
        {Domain.COMPUTE: connector}, OrchestratorConfig(max_concurrency=2)
    )
    outcome = await orchestrator.fetch(_profile(8), [Domain.COMPUTE], DAY_RANGE)
    assert all(r.ok for r in outcome.results)
    assert len(connector.calls) == 8
    assert connector.max_in_flight <= 2


@pytest.mark.asyncio
async def test_missing_connector_is_unavailable(demo_profile, demo_connectors):
    connectors = {Domain.COMPUTE: demo_connectors[Domain.COMPUTE]}
    outcome = await FetchOrchestrator(connectors).fetch(
        demo_profile, [Domain.COMPUTE, Domain.TRAFFIC], DAY_RANGE
    )
    traffic = outcome.for_domain(Domain.TRAFFIC)
    assert len(traffic) == 1
    assert traffic[0].status == FetchStatus.UNAVAILABLE
    assert traffic[0].error_type == "not_configured"


@pytest.mark.asyncio
async def test_unconfigured_connector_is_never_called():
    connector = _compute(configured=False)
    outcome = await FetchOrchestrator({Domain.COMPUTE: connector}).fetch(
        _profile(2), [Domain.COMPUTE], DAY_RANGE
    )
    assert [r.status for r in outcome.results] == [FetchStatus.UNAVAILABLE] * 2
    assert connector.calls == []


@pytest.mark.asyncio
async def test_granularity_falls_back_to_daily():
    connector = FakeConnector(
        Domain.COST, {"app:demo": {"cost": []}}, granularities=[Granularity.DAY]
    )
    outcome = await FetchOrchestrator({Domain.COST: connector}).fetch(
        _profile(0), [Domain.COST], DAY_RANGE
    )
    assert outcome.results[0].ok
    used = connector.calls[0]["time_range"]
    assert used.granularity == Granularity.DAY
    assert used.start == (NOW - timedelta(days=1)).replace(hour=0)
    assert used.end == NOW
    assert outcome.results[0].series.granularity == Granularity.DAY


@pytest.mark.asyncio
async def test_granularity_negotiates_finest_supported():
    connector = FakeConnector(
        Domain.COMPUTE,
        {"fn-0": compute_data()},
        granularities=[Granularity.HOUR, Granularity.DAY],
    )
    minute_range = TimeRange(
        start=NOW - timedelta(minutes=90), end=NOW, granularity=Granularity.MINUTE
    )
    outcome = await FetchOrchestrator({Domain.COMPUTE: connector}).fetch(
        _profile(1), [Domain.COMPUTE], minute_range
    )
    assert outcome.results[0].ok
    used = connector.calls[0]["time_range"]
    assert used.granularity == Granularity.HOUR
    assert used.start == NOW - timedelta(hours=2)


@pytest.mark.asyncio
async def test_no_supported_granularity_is_unavailable_without_a_call():
    connector = FakeConnector(
        Domain.COMPUTE, {"fn-0": compute_data()}, granularities=[Granularity.MINUTE]
    )
    outcome = await FetchOrchestrator({Domain.COMPUTE: connector}).fetch(
        _profile(1), [Domain.COMPUTE], DAY_RANGE
    )
    result = outcome.results[0]
    assert result.status == FetchStatus.UNAVAILABLE
    assert result.error_type == "unsupported_granularity"
    assert connector.calls == []


def test_negotiate_granularity_walks_towards_coarser():
    hourly_only = FakeConnector(Domain.COMPUTE, granularities=[Granularity.HOUR])
    assert negotiate_granularity(hourly_only, Granularity.MINUTE) == Granularity.HOUR
    assert negotiate_granularity(hourly_only, Granularity.HOUR) == Granularity.HOUR
    assert negotiate_granularity(hourly_only, Granularity.DAY) is None


@pytest.mark.asyncio
async def test_per_domain_range_override():
    cost = FakeConnector(
        Domain.COST, {"app:demo": {"cost": []}}, granularities=[Granularity.DAY]
    )
    month = TimeRange(
        start=NOW.replace(day=1, hour=0), end=NOW, granularity=Granularity.DAY
    )
    connectors = {Domain.COMPUTE: _compute(), Domain.COST: cost}
    await FetchOrchestrator(connectors).fetch(
        _profile(1),
        [Domain.COMPUTE, Domain.COST],
        DAY_RANGE,
        ranges={Domain.COST: month},
    )
    assert cost.calls[0]["time_range"] == month
    assert connectors[Domain.COMPUTE].calls[0]["time_range"] == DAY_RANGE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, status, error_type",
    [
        (
            ConnectorError(ConnectorErrorKind.UPSTREAM, "bad gateway", status_code=502),
            FetchStatus.ERROR,
            "server_error",
        ),
        (
            ConnectorError(ConnectorErrorKind.NOT_CONFIGURED, "unknown function"),
            FetchStatus.UNAVAILABLE,
            "not_configured",
        ),
        (
            ConnectorError(ConnectorErrorKind.TIMEOUT, "upstream timed out"),
            FetchStatus.TIMEOUT,
            "timeout",
        ),
        (RuntimeError("kaput"), FetchStatus.ERROR, "unknown_error"),
        (KeyError("metrics"), FetchStatus.ERROR, "missing_field"),
    ],
)
async def test_errors_become_results(error, status, error_type):
    connector = _compute(errors={"fn-0": error})
    outcome = await FetchOrchestrator({Domain.COMPUTE: connector}).fetch(
        _profile(2), [Domain.COMPUTE], DAY_RANGE
    )
    failed, ok = outcome.results
    assert failed.status == status
    assert failed.error_type == error_type
    assert failed.series is None
    assert ok.status == FetchStatus.OK


@pytest.mark.asyncio
async def test_request_id_reaches_connector():
    connector = _compute()
    await FetchOrchestrator({Domain.COMPUTE: connector}).fetch(
        _profile(1), [Domain.COMPUTE], DAY_RANGE, request_id="req-42"
    )
    assert connector.calls[0]["ctx"].request_id == "req-42"
