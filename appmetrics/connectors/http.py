"""HTTP connector.

This connector calls a thin per-source client service that fronts one
upstream (function metrics, gateway metrics, billing, store analytics). It
encapsulates transport concerns (base URL, headers, timeouts) and maps
transport failures onto :class:`ConnectorError` kinds. It never retries; the
orchestrator decides what a failure means for the aggregate.

Wire format
-----------
Request: ``POST <endpoint>/series`` with
``{"domain", "resource_ids", "start", "end", "granularity_seconds"}``.
Response: ``{"metrics": {name: [{timestamp, value, unit, dimensions}]}}``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from ..config.models import ConnectorConfig
from ..domain.catalog import CATALOG
from ..domain.models import Domain, Granularity, SourceSeries, TimeRange
from ..domain.utils.timestamps import to_iso8601
from ..utils.correlation import CORRELATION_HEADER, get_request_id
from . import ConnectorError, ConnectorErrorKind, FetchContext
from .samples import build_series

logger = logging.getLogger(__name__)

SERIES_PATH = "/series"


class HTTPConnector:
    """Connector for a per-source client service.

    Parameters
    ----------
    domain: Domain
        Domain whose metrics the upstream serves.
    endpoint: str
        Base URL of the client service (e.g., "http://localhost:8081").
    api_key: Optional[str]
        Optional bearer token for authenticating requests.
    timeout: float
        Transport timeout in seconds; the fetch deadline may shorten it.
    granularities: Optional[Sequence[Granularity]]
        Granularities the upstream supports. Defaults to the domain's native
        granularities, or all of them.

    Attributes
    ----------
    _client: httpx.AsyncClient
        Shared async client configured with base URL, timeout, and headers.
    """

    def __init__(
        self,
        domain: Domain,
        endpoint: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        *,
        granularities: Optional[Sequence[Granularity]] = None,
        source_id: Optional[str] = None,
    ) -> None:
        self.domain = domain
        self.source_id = source_id or f"{domain.value}-http"
        self._endpoint = endpoint
        self._timeout_seconds = timeout
        native = granularities or CATALOG[domain].native_granularities
        self._granularities = frozenset(native) if native else None
        self._client = httpx.AsyncClient(
            base_url=endpoint or "", timeout=timeout, headers=self._headers(api_key)
        )
        logger.info(
            "http_connector.init",
            extra={
                "domain": domain.value,
                "endpoint": endpoint,
                "timeout_seconds": timeout,
            },
        )

    @classmethod
    def from_config(cls, domain: Domain, config: ConnectorConfig) -> "HTTPConnector":
        return cls(
            domain,
            config.endpoint,
            config.api_key,
            config.timeout_seconds,
            granularities=config.granularities,
        )

    def inject_http_client_for_testing(self, client: Any) -> None:
        """Replace underlying HTTP client (testing only).

        This allows unit tests to provide a mock compatible with ``post()``.
        """
        self._client = client

    @staticmethod
    def _headers(api_key: Optional[str]) -> dict:
        """Build default headers, with an Authorization header if a key is set."""
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def is_configured(self) -> bool:
        return bool(self._endpoint)

    def supports_granularity(self, granularity: Granularity) -> bool:
        return self._granularities is None or granularity in self._granularities

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(
        self, resource_ids: Sequence[str], time_range: TimeRange, ctx: FetchContext
    ) -> SourceSeries:
        """Fetch series for ``resource_ids`` from the client service.

        Raises
        ------
        ConnectorError
            ``timeout`` when the call exceeds its timeout or deadline,
            ``not_configured`` on 401/403 or missing endpoint, ``upstream`` on
            any other HTTP, transport or parse failure.
        """
        if not self.is_configured():
            raise ConnectorError(
                ConnectorErrorKind.NOT_CONFIGURED,
                f"no endpoint configured for {self.domain.value}",
            )
        remaining = ctx.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ConnectorError(ConnectorErrorKind.TIMEOUT, "deadline already passed")
        payload: Dict[str, Any] = {
            "domain": self.domain.value,
            "resource_ids": list(resource_ids),
            "start": to_iso8601(time_range.start),
            "end": to_iso8601(time_range.end),
            "granularity_seconds": time_range.granularity.seconds,
        }
        data = await self._post_json(
            SERIES_PATH,
            payload,
            timeout=min(self._timeout_seconds, remaining),
            request_id=ctx.request_id,
        )
        metrics = data.get("metrics") if isinstance(data, dict) else None
        if not isinstance(metrics, dict):
            raise ConnectorError(
                ConnectorErrorKind.UPSTREAM, "response is missing a 'metrics' object"
            )
        try:
            return build_series(
                source_id=self.source_id,
                domain=self.domain,
                resource_ids=resource_ids,
                granularity=time_range.granularity,
                metrics_payload=metrics,
                time_range=time_range,
            )
        except ValueError as exc:
            raise ConnectorError(ConnectorErrorKind.UPSTREAM, str(exc)) from exc

    async def _post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        *,
        timeout: float,
        request_id: str = "",
    ) -> Dict[str, Any]:
        """POST JSON to the client service and return the parsed body.

        Raises
        ------
        ConnectorError
            Mapped from timeouts, HTTP status errors, transport errors and
            undecodable bodies.
        """
        req_id = request_id or get_request_id()
        headers = {CORRELATION_HEADER: req_id} if req_id else {}
        logger.debug(
            "http_connector.post",
            extra={
                "req_id": req_id,
                "domain": self.domain.value,
                "path": path,
                "resource_ids": payload.get("resource_ids"),
            },
        )
        try:
            resp = await self._client.post(
                path, json=payload, headers=headers, timeout=timeout
            )
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning(
                "http_connector.timeout",
                extra={
                    "req_id": req_id,
                    "domain": self.domain.value,
                    "path": path,
                    "timeout_seconds": round(timeout, 3),
                },
            )
            raise ConnectorError(
                ConnectorErrorKind.TIMEOUT,
                f"request to {path} timed out after {timeout:.1f}s",
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            text = exc.response.text or ""
            body_preview = text if len(text) <= 500 else text[:500] + "..."
            logger.error(
                "http_connector.status_error",
                extra={
                    "req_id": req_id,
                    "domain": self.domain.value,
                    "path": path,
                    "status": status,
                    "body_preview": body_preview,
                },
            )
            kind = (
                ConnectorErrorKind.NOT_CONFIGURED
                if status in (401, 403)
                else ConnectorErrorKind.UPSTREAM
            )
            raise ConnectorError(
                kind, f"upstream returned HTTP {status}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "http_connector.transport_error",
                extra={
                    "req_id": req_id,
                    "domain": self.domain.value,
                    "path": path,
                    "error": str(exc),
                },
            )
            raise ConnectorError(
                ConnectorErrorKind.UPSTREAM, f"transport error: {exc}"
            ) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise ConnectorError(
                ConnectorErrorKind.UPSTREAM, "response body is not valid JSON"
            ) from exc
        logger.debug(
            "http_connector.response",
            extra={
                "req_id": req_id,
                "domain": self.domain.value,
                "path": path,
                "status_code": resp.status_code,
            },
        )
        return data
