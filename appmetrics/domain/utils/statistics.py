"""
Statistical helpers for derived metrics.

Provides the least-squares fit used by cost projection and small numeric
helpers shared by the calculator. All calculations are deterministic.
"""

import logging
import statistics
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinearFit:
    """
    Ordinary least-squares fit ``y = intercept + slope * x``.

    Attributes
    ----------
    slope : float
        Change of y per unit of x
    intercept : float
        Fitted value at x = 0
    residual_variance : float
        Mean squared residual of the fit (0 for a perfect line)
    count : int
        Number of points used
    """

    slope: float
    intercept: float
    residual_variance: float
    count: int

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x


def linear_fit(
    values: Sequence[float], xs: Optional[Sequence[float]] = None
) -> Optional[LinearFit]:
    """
    Fit a line through ``values`` with ordinary least squares.

    Parameters
    ----------
    values : Sequence[float]
        Observations (e.g., daily costs)
    xs : Sequence[float] or None
        Optional x coordinates. If None, uses indices 0, 1, 2, ...

    Returns
    -------
    LinearFit or None
        Fitted line, or None with fewer than 2 points or mismatched lengths

    Examples
    --------
    >>> fit = linear_fit([1.0, 3.0, 5.0])
    >>> fit.slope, fit.intercept, fit.residual_variance
    (2.0, 1.0, 0.0)
    """
    n = len(values)
    if n < 2:
        return None

    if xs is None:
        xs = list(range(n))

    if len(xs) != n:
        logger.warning(
            "statistics.fit_length_mismatch",
            extra={"values": n, "xs": len(xs)},
        )
        return None

    x_mean = statistics.fmean(xs)
    y_mean = statistics.fmean(values)

    numerator = sum((xs[i] - x_mean) * (values[i] - y_mean) for i in range(n))
    denominator = sum((xs[i] - x_mean) ** 2 for i in range(n))

    if denominator == 0:
        # All points share one x; the best fit is the flat mean
        slope = 0.0
    else:
        slope = numerator / denominator
    intercept = y_mean - slope * x_mean

    residuals = [values[i] - (intercept + slope * xs[i]) for i in range(n)]
    residual_variance = sum(r * r for r in residuals) / n

    return LinearFit(
        slope=slope,
        intercept=intercept,
        residual_variance=residual_variance,
        count=n,
    )


def mean_or_zero(values: Sequence[float]) -> float:
    """Arithmetic mean, 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return statistics.fmean(values)


def non_null(values: Sequence[Optional[float]]) -> List[float]:
    """Drop empty buckets from a bucketed series."""
    return [v for v in values if v is not None]
