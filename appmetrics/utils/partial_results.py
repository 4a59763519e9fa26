"""
Partial results handling for aggregations where some sources fail.

Provides the helpers the orchestrator and health evaluation use to describe
failed fetches: classification of exceptions into error types, one issue line
per failed source, and a grouped summary for logs.
"""

import asyncio
import logging
from typing import Dict, Iterable, List

import httpx

from ..connectors import ConnectorError, ConnectorErrorKind
from ..domain.models import FetchStatus, SourceFetchResult

logger = logging.getLogger(__name__)


def classify_error(exc: BaseException) -> str:
    """Classify an exception into an error type string.

    Examples
    --------
    >>> classify_error(asyncio.TimeoutError())
    'timeout'
    >>> classify_error(KeyError("x"))
    'missing_field'
    """
    if isinstance(exc, ConnectorError):
        if exc.status_code is not None:
            return _classify_status(exc.status_code)
        if exc.kind == ConnectorErrorKind.TIMEOUT:
            return "timeout"
        if exc.kind == ConnectorErrorKind.NOT_CONFIGURED:
            return "not_configured"
        cause = exc.__cause__
        if cause is not None and not isinstance(cause, ConnectorError):
            nested = classify_error(cause)
            if nested != "unknown_error":
                return nested
        return "upstream_error"

    error_type = "unknown_error"
    if isinstance(exc, httpx.HTTPStatusError):
        error_type = _classify_status(exc.response.status_code)
    elif isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        error_type = "timeout"
    elif isinstance(exc, httpx.ConnectError):
        error_type = "connection_error"
    elif isinstance(exc, httpx.HTTPError):
        error_type = "transport_error"
    elif isinstance(exc, KeyError):
        error_type = "missing_field"
    elif isinstance(exc, ValueError):
        error_type = "parse_error"
    return error_type


def _classify_status(status: int) -> str:
    if status >= 500:
        return "server_error"
    if status == 429:
        return "rate_limit"
    if status in (401, 403):
        return "auth_error"
    if status == 404:
        return "not_found"
    return "http_error"


def describe_failure(result: SourceFetchResult) -> str:
    """One human-readable issue line for a failed fetch result."""
    subject = f"{result.domain.value} source '{result.resource_id}'"
    if result.status == FetchStatus.TIMEOUT:
        text = f"{subject} timed out"
    elif result.status == FetchStatus.UNAVAILABLE:
        text = f"{subject} is unavailable"
    else:
        text = f"{subject} failed"
    if result.error_detail:
        text += f": {result.error_detail}"
    return text


def format_failure_summary(results: Iterable[SourceFetchResult]) -> str:
    """
    Format a human-readable summary of failed fetches grouped by error type.

    Parameters
    ----------
    results : Iterable[SourceFetchResult]
        All results of one aggregation run

    Returns
    -------
    str
        Formatted summary string
    """
    results = list(results)
    failures = [r for r in results if not r.ok]
    successes = len(results) - len(failures)
    if not failures:
        return f"All {successes} source fetch(es) succeeded."

    lines = [f"Partial results: {successes} succeeded, {len(failures)} failed"]

    failures_by_type: Dict[str, List[SourceFetchResult]] = {}
    for failure in failures:
        key = failure.error_type or failure.status.value
        failures_by_type.setdefault(key, []).append(failure)

    for error_type, group in failures_by_type.items():
        lines.append(f"  - {len(group)} {error_type}")
        identifiers = [f"{f.domain.value}/{f.resource_id}" for f in group[:3]]
        if len(group) > 3:
            identifiers.append(f"... and {len(group) - 3} more")
        lines.append(f"    Affected: {', '.join(identifiers)}")

    return "\n".join(lines)
