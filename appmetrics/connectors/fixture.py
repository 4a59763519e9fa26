"""Fixture connector for local development and demos.

Serves samples from a JSON file shaped ``{resource_id: {metric: [samples]}}``.
The file is read once when the connector is built; fetches only read the
parsed mapping, so the connector is safe to share between requests.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import orjson

from ..config.models import ConnectorConfig
from ..domain.catalog import CATALOG
from ..domain.models import Domain, Granularity, SourceSeries, TimeRange
from . import ConnectorError, ConnectorErrorKind, FetchContext
from .samples import build_series

logger = logging.getLogger(__name__)


class FixtureConnector:
    """Connector backed by an in-memory fixture mapping.

    Parameters
    ----------
    domain: Domain
        Domain whose metrics the fixture holds.
    data: Optional[Mapping[str, Any]]
        Parsed fixture; ``None`` leaves the connector unconfigured.
    granularities: Optional[Sequence[Granularity]]
        Granularities to advertise; defaults to the domain's native ones.
    """

    def __init__(
        self,
        domain: Domain,
        data: Optional[Mapping[str, Any]],
        *,
        granularities: Optional[Sequence[Granularity]] = None,
        source_id: Optional[str] = None,
    ) -> None:
        self.domain = domain
        self.source_id = source_id or f"{domain.value}-fixture"
        self._data: Dict[str, Any] = dict(data) if data is not None else {}
        self._configured = data is not None
        native = granularities or CATALOG[domain].native_granularities
        self._granularities = frozenset(native) if native else None

    @classmethod
    def from_file(
        cls,
        domain: Domain,
        path: Path,
        *,
        granularities: Optional[Sequence[Granularity]] = None,
    ) -> "FixtureConnector":
        """Load a fixture file; unreadable files yield an unconfigured connector."""
        try:
            data = orjson.loads(Path(path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            logger.warning(
                "fixture_connector.load_failed",
                extra={"domain": domain.value, "path": str(path), "error": str(exc)},
            )
            data = None
        if data is not None and not isinstance(data, dict):
            logger.warning(
                "fixture_connector.invalid_shape",
                extra={"domain": domain.value, "path": str(path)},
            )
            data = None
        return cls(domain, data, granularities=granularities)

    @classmethod
    def from_config(
        cls, domain: Domain, config: ConnectorConfig
    ) -> "FixtureConnector":
        return cls.from_file(
            domain, Path(config.fixture_path or ""), granularities=config.granularities
        )

    def is_configured(self) -> bool:
        return self._configured

    def supports_granularity(self, granularity: Granularity) -> bool:
        return self._granularities is None or granularity in self._granularities

    async def aclose(self) -> None:
        return None

    async def fetch(
        self, resource_ids: Sequence[str], time_range: TimeRange, ctx: FetchContext
    ) -> SourceSeries:
        """Return the fixture samples of ``resource_ids`` inside ``time_range``.

        Samples of several resources are concatenated per metric.

        Raises
        ------
        ConnectorError
            ``not_configured`` if a resource is absent from the fixture,
            ``upstream`` if its entry is malformed.
        """
        _ = ctx
        merged: Dict[str, list] = {}
        for resource_id in resource_ids:
            entry = self._data.get(resource_id)
            if entry is None:
                raise ConnectorError(
                    ConnectorErrorKind.NOT_CONFIGURED,
                    f"resource '{resource_id}' not present in {self.domain.value} fixture",
                )
            if not isinstance(entry, dict):
                raise ConnectorError(
                    ConnectorErrorKind.UPSTREAM,
                    f"fixture entry for '{resource_id}' must be an object",
                )
            for metric, samples in entry.items():
                if not isinstance(samples, list):
                    raise ConnectorError(
                        ConnectorErrorKind.UPSTREAM,
                        f"fixture metric '{metric}' for '{resource_id}' must be a list",
                    )
                merged.setdefault(metric, []).extend(samples)
        return build_series(
            source_id=self.source_id,
            domain=self.domain,
            resource_ids=resource_ids,
            granularity=time_range.granularity,
            metrics_payload=merged,
            time_range=time_range,
        )
