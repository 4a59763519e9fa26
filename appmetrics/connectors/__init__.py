"""Source connector interfaces and registry.

A connector retrieves time-ordered samples for one domain from one upstream
system. The domain is data carried by the connector, not a code path: the
same HTTP strategy serves functions, gateways, tables, billing and store
analytics. Connectors are built from configuration by a registry keyed by the
connector ``type``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from ..config.models import ConnectorConfig
from ..domain.models import Domain, Granularity, SourceSeries, TimeRange

logger = logging.getLogger(__name__)


class ConnectorErrorKind(str, Enum):
    """Failure categories a connector may report."""

    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    NOT_CONFIGURED = "not_configured"


class ConnectorError(Exception):
    """Raised by connectors when a fetch cannot produce a series.

    Parameters
    ----------
    kind: ConnectorErrorKind
        Failure category used by the orchestrator to pick a fetch status.
    message: str
        Human-readable detail.
    status_code: Optional[int]
        Upstream HTTP status when one was received.
    """

    def __init__(
        self,
        kind: ConnectorErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


@dataclass(frozen=True)
class FetchContext:
    """Per-call context handed to connectors.

    Attributes
    ----------
    deadline: float
        Absolute ``loop.time()`` after which the call is abandoned.
    request_id: str
        Correlation id of the request that triggered the fetch.
    """

    deadline: float
    request_id: str = ""


class Connector(Protocol):
    """Protocol for source connectors.

    Implementations must be safe to call concurrently and must not mutate
    shared state; cancellation arrives as ``asyncio.CancelledError``.
    """

    source_id: str
    domain: Domain

    async def fetch(
        self, resource_ids: Sequence[str], time_range: TimeRange, ctx: FetchContext
    ) -> SourceSeries:
        """Fetch samples for ``resource_ids`` over ``time_range``."""
        raise NotImplementedError

    def supports_granularity(self, granularity: Granularity) -> bool:
        """Return True if the upstream can sample at ``granularity``."""
        raise NotImplementedError

    def is_configured(self) -> bool:
        """Return True if the connector has what it needs to run."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release transport resources."""
        raise NotImplementedError


ConnectorFactory = Callable[[Domain, ConnectorConfig], Connector]

_factories: Dict[str, ConnectorFactory] = {}


def register_connector_type(type_name: str, factory: ConnectorFactory) -> None:
    """Register a connector factory under a config ``type`` identifier."""
    _factories[type_name] = factory


def get_available_connector_types() -> List[str]:
    return sorted(_factories.keys())


def build_connector(domain: Domain, config: ConnectorConfig) -> Connector:
    """Instantiate the connector strategy named by ``config.type``.

    Raises
    ------
    KeyError
        If no factory is registered for the type.
    """
    _register_builtin_types()
    try:
        factory = _factories[config.type]
    except KeyError:
        raise KeyError(
            f"unknown connector type '{config.type}'; "
            f"available: {get_available_connector_types()}"
        ) from None
    return factory(domain, config)


def build_connectors(
    configs: Mapping[Domain, ConnectorConfig],
) -> Dict[Domain, Connector]:
    """Build one connector per configured domain."""
    connectors = {domain: build_connector(domain, cfg) for domain, cfg in configs.items()}
    log_connector_status(connectors)
    return connectors


def log_connector_status(connectors: Mapping[Domain, Connector]) -> None:
    """Log which domains have a working connector."""
    if not connectors:
        logger.warning(
            "connectors.none_configured",
            extra={"hint": "add a 'connectors' section to the config file"},
        )
        return
    for domain, connector in connectors.items():
        logger.info(
            "connectors.registered",
            extra={
                "domain": domain.value,
                "source_id": connector.source_id,
                "type": type(connector).__name__,
                "configured": connector.is_configured(),
            },
        )
    missing = [d.value for d in Domain if d not in connectors]
    if missing:
        logger.info("connectors.domains_without_connector", extra={"domains": missing})


def _register_builtin_types() -> None:
    if "http" in _factories and "fixture" in _factories:
        return
    from .fixture import FixtureConnector
    from .http import HTTPConnector

    _factories.setdefault("http", HTTPConnector.from_config)
    _factories.setdefault("fixture", FixtureConnector.from_config)


def reset_connector_types() -> None:
    """Test-only helper to clear registered connector factories."""
    _factories.clear()
