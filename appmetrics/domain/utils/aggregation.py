"""
Series reconciliation utilities.

Provides utilities for aggregating samples with different strategies,
placing samples from independently-sampled sources onto the common bucket
grid of a time range, and grouping samples by a dimension for breakdowns.
"""

import logging
import statistics
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import Granularity, MetricSample, TimeRange

logger = logging.getLogger(__name__)


class AggregationStrategy(Enum):
    """Strategy for aggregating multiple samples into a single value."""

    MEAN = "mean"  # Average of all values (latency, duration)
    MEDIAN = "median"  # Middle value (robust to outliers)
    MIN = "min"  # Minimum value
    MAX = "max"  # Maximum value (peak concurrency)
    FIRST = "first"  # First value in sequence
    LAST = "last"  # Last value in sequence (gauges such as item counts)
    SUM = "sum"  # Sum of all values (counters, cost)


class MissingDataStrategy(Enum):
    """Strategy for handling buckets without any sample."""

    SKIP = "skip"  # Leave the bucket empty (None)
    ZERO = "zero"  # Treat the bucket as zero
    FORWARD_FILL = "forward_fill"  # Use previous non-missing value


def aggregate_samples(
    samples: Sequence[Optional[float]],
    strategy: AggregationStrategy = AggregationStrategy.MEAN,
) -> Optional[float]:
    """
    Aggregate multiple values using the specified strategy.

    Parameters
    ----------
    samples : Sequence[Optional[float]]
        Values to aggregate; ``None`` entries are skipped.
    strategy : AggregationStrategy, default=MEAN
        Aggregation method to use.

    Returns
    -------
    float or None
        Aggregated value, or None when no valid value remains.

    Examples
    --------
    >>> aggregate_samples([1.0, 2.0, 3.0], AggregationStrategy.SUM)
    6.0
    >>> aggregate_samples([1.0, None, 3.0], AggregationStrategy.MEAN)
    2.0
    """
    processed = [s for s in samples if s is not None]
    if not processed:
        return None

    if strategy == AggregationStrategy.MEAN:
        return statistics.mean(processed)
    if strategy == AggregationStrategy.MEDIAN:
        return statistics.median(processed)
    if strategy == AggregationStrategy.MIN:
        return min(processed)
    if strategy == AggregationStrategy.MAX:
        return max(processed)
    if strategy == AggregationStrategy.FIRST:
        return processed[0]
    if strategy == AggregationStrategy.LAST:
        return processed[-1]
    if strategy == AggregationStrategy.SUM:
        return float(sum(processed))

    logger.warning(
        "aggregation.invalid_strategy",
        extra={"strategy": getattr(strategy, "value", strategy)},
    )
    return None


def cross_resource_strategy(strategy: AggregationStrategy) -> AggregationStrategy:
    """Strategy used to combine one bucket across several resources.

    Averages stay averages; every other per-resource value (counters, peaks,
    gauges) is additive across resources.
    """
    if strategy in (AggregationStrategy.MEAN, AggregationStrategy.MEDIAN):
        return AggregationStrategy.MEAN
    return AggregationStrategy.SUM


def bucket_index(ts: datetime, time_range: TimeRange, granularity: Granularity) -> int:
    """Index of the bucket containing ``ts`` on the range grid."""
    offset = (ts - time_range.start).total_seconds()
    return int(offset // granularity.seconds)


def bucket_samples(
    samples: Iterable[MetricSample],
    time_range: TimeRange,
    strategy: AggregationStrategy,
    granularity: Optional[Granularity] = None,
    missing: MissingDataStrategy = MissingDataStrategy.SKIP,
) -> List[Optional[float]]:
    """
    Place samples onto the bucket grid of ``time_range``.

    Samples outside the range are ignored. Samples sharing a bucket are
    combined with ``strategy``; this is how a finer-grained upstream series is
    reconciled onto a coarser display grid.

    Parameters
    ----------
    samples : Iterable[MetricSample]
        Samples of one metric for one resource.
    time_range : TimeRange
        Range defining the grid origin and length.
    strategy : AggregationStrategy
        Within-bucket aggregation.
    granularity : Granularity, optional
        Grid width; defaults to the range granularity.
    missing : MissingDataStrategy, default=SKIP
        How to fill buckets without samples.

    Returns
    -------
    List[Optional[float]]
        One value per bucket, in bucket order.
    """
    g = granularity or time_range.granularity
    count = time_range.bucket_count(g)
    grouped: List[List[float]] = [[] for _ in range(count)]
    for sample in samples:
        if not time_range.contains(sample.timestamp):
            continue
        idx = bucket_index(sample.timestamp, time_range, g)
        if 0 <= idx < count:
            grouped[idx].append(sample.value)

    values = [aggregate_samples(bucket, strategy) for bucket in grouped]
    return _fill_missing(values, missing)


def merge_bucket_columns(
    columns: Sequence[Sequence[Optional[float]]],
    strategy: AggregationStrategy,
) -> List[Optional[float]]:
    """Combine equal-length bucket lists (one per resource) bucket by bucket."""
    if not columns:
        return []
    width = max(len(c) for c in columns)
    merged: List[Optional[float]] = []
    for i in range(width):
        merged.append(
            aggregate_samples([c[i] if i < len(c) else None for c in columns], strategy)
        )
    return merged


def group_by_dimension(
    samples: Iterable[MetricSample],
    dimension: str,
    default_key: str,
) -> Dict[str, float]:
    """
    Sum sample values by the value of ``dimension``.

    Samples without the dimension are attributed to ``default_key``.

    Examples
    --------
    >>> group_by_dimension(samples, "service", default_key="billing")
    {'Lambda': 12.0, 'DynamoDB': 3.5}
    """
    grouped: Dict[str, float] = {}
    for sample in samples:
        key = default_key
        if sample.dimensions and sample.dimensions.get(dimension):
            key = sample.dimensions[dimension]
        grouped[key] = grouped.get(key, 0.0) + sample.value
    return grouped


def _fill_missing(
    values: List[Optional[float]], strategy: MissingDataStrategy
) -> List[Optional[float]]:
    if strategy == MissingDataStrategy.SKIP:
        return values
    if strategy == MissingDataStrategy.ZERO:
        return [v if v is not None else 0.0 for v in values]
    if strategy == MissingDataStrategy.FORWARD_FILL:
        result: List[Optional[float]] = []
        last_valid: Optional[float] = None
        for v in values:
            if v is not None:
                last_valid = v
            result.append(last_valid)
        return result

    logger.warning(
        "aggregation.invalid_missing_strategy",
        extra={"strategy": getattr(strategy, "value", strategy)},
    )
    return values
