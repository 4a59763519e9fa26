"""Conversion of upstream sample payloads into validated metric samples.

Both connector strategies receive ``{metric: [{timestamp, value, unit,
dimensions}]}`` mappings. Entries with unparseable timestamps or non-finite
values are dropped with a debug log; the rest are sorted by timestamp and
restricted to the requested range.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..domain.catalog import CATALOG
from ..domain.models import Domain, Granularity, MetricSample, SourceSeries, TimeRange
from ..domain.utils.timestamps import parse_timestamp
from ..domain.utils.validation import is_valid_float

logger = logging.getLogger(__name__)


def parse_sample(
    raw: Any, default_unit: str, time_range: Optional[TimeRange] = None
) -> Optional[MetricSample]:
    """Build a sample from one raw entry, or None if it is unusable."""
    if not isinstance(raw, Mapping):
        return None
    ts = parse_timestamp(raw.get("timestamp"))
    value = raw.get("value")
    if ts is None or isinstance(value, bool) or not is_valid_float(value):
        return None
    if time_range is not None and not time_range.contains(ts):
        return None
    dims = raw.get("dimensions")
    dimensions: Optional[Dict[str, str]] = None
    if isinstance(dims, Mapping) and dims:
        dimensions = {str(k): str(v) for k, v in dims.items() if v is not None}
    unit = raw.get("unit")
    return MetricSample(
        timestamp=ts,
        value=float(value),
        unit=str(unit) if unit else default_unit,
        dimensions=dimensions or None,
    )


def parse_metric_samples(
    domain: Domain,
    metric: str,
    entries: Iterable[Any],
    time_range: Optional[TimeRange] = None,
) -> Tuple[MetricSample, ...]:
    """Parse, filter and timestamp-sort the entries of one metric."""
    spec = CATALOG[domain].metrics.get(metric)
    default_unit = spec.unit if spec else "count"
    samples: List[MetricSample] = []
    dropped = 0
    for raw in entries:
        sample = parse_sample(raw, default_unit, time_range)
        if sample is None:
            dropped += 1
            continue
        samples.append(sample)
    if dropped:
        logger.debug(
            "connectors.samples.dropped",
            extra={"domain": domain.value, "metric": metric, "dropped": dropped},
        )
    samples.sort(key=lambda s: s.timestamp)
    return tuple(samples)


def build_series(
    *,
    source_id: str,
    domain: Domain,
    resource_ids: Sequence[str],
    granularity: Granularity,
    metrics_payload: Mapping[str, Any],
    time_range: Optional[TimeRange] = None,
) -> SourceSeries:
    """Assemble a :class:`SourceSeries` from a raw ``{metric: [...]}`` mapping.

    Metric names outside the domain catalog are ignored.
    """
    known = CATALOG[domain].metrics
    metrics: Dict[str, Tuple[MetricSample, ...]] = {}
    for name, entries in metrics_payload.items():
        if name not in known:
            logger.debug(
                "connectors.samples.unknown_metric",
                extra={"domain": domain.value, "metric": name},
            )
            continue
        if not isinstance(entries, list):
            raise ValueError(f"metric '{name}' must map to a list of samples")
        metrics[name] = parse_metric_samples(domain, name, entries, time_range)
    return SourceSeries(
        source_id=source_id,
        domain=domain,
        resource_id=",".join(resource_ids),
        granularity=granularity,
        metrics=metrics,
    )
