"""
Numeric guards for upstream data.

Sources occasionally report infinity or NaN (a ratio over an empty period,
a division the upstream did not guard). Such values must never reach derived
metrics or JSON responses, which cannot encode them.
"""

import math
from numbers import Real
from typing import Optional


def is_valid_float(value: float) -> bool:
    """True for finite real numbers; False for NaN, infinities and non-numbers.

    >>> is_valid_float(float("nan"))
    False
    """
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    return math.isfinite(value)


def sanitize_float(
    value: float,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    default: Optional[float] = None,
) -> Optional[float]:
    """
    Return ``value`` if it is finite and inside the optional inclusive bounds.

    Anything else yields ``default`` (None unless given), so callers can drop
    bad samples with ``non_null`` or substitute a neutral value.

    >>> sanitize_float(-5.0, min_value=0.0, default=0.0)
    0.0
    """
    in_range = (
        is_valid_float(value)
        and (min_value is None or value >= min_value)
        and (max_value is None or value <= max_value)
    )
    return value if in_range else default


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp a finite value into ``[lower, upper]``; non-finite becomes ``lower``."""
    return max(lower, min(upper, value)) if is_valid_float(value) else lower
