"""Resolution of symbolic range tokens into concrete time ranges.

A dashboard asks for "last day" or "7d"; connectors need a concrete
``[start, end)`` interval and a bucket width. The resolver picks a bucket
width that keeps charts readable: shorter ranges get finer buckets, and the
granularity is coarsened until the number of buckets fits the display
budget.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Optional

from .models import Granularity, TimeRange
from .utils.timestamps import ensure_utc, month_start

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_BUDGET = 400
MONTH_TO_DATE = "mtd"

_TOKEN_RE = re.compile(r"^(\d+)\s*([mhdw])$")
_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400, "w": 7 * 86400}
_ALIASES = {
    "last_hour": "1h",
    "hour": "1h",
    "last_day": "1d",
    "day": "1d",
    "last_week": "7d",
    "week": "7d",
    "last_month": "30d",
    "month": "30d",
    "last_quarter": "90d",
    "quarter": "90d",
    "month_to_date": MONTH_TO_DATE,
}

# (max range length in seconds, preferred granularity); longer ranges use DAY
_PREFERRED = (
    (3600, Granularity.MINUTE),
    (6 * 3600, Granularity.FIVE_MINUTES),
    (86400, Granularity.FIFTEEN_MINUTES),
    (7 * 86400, Granularity.HOUR),
)


class InvalidRangeToken(ValueError):
    """Raised for malformed, unknown or unrepresentable range tokens."""

    def __init__(self, token: str, reason: str = "unknown range token") -> None:
        super().__init__(f"{reason}: {token!r}")
        self.token = token
        self.reason = reason


def normalize_token(token: str) -> str:
    """Lower-case a token and fold spaces and hyphens into underscores.

    Examples
    --------
    >>> normalize_token(" Last Day ")
    'last_day'
    """
    folded = re.sub(r"[\s\-]+", "_", token.strip().lower())
    return _ALIASES.get(folded, folded)


def preferred_granularity(duration_seconds: float) -> Granularity:
    for limit, granularity in _PREFERRED:
        if duration_seconds <= limit:
            return granularity
    return Granularity.DAY


class TimeRangeResolver:
    """Turn range tokens into :class:`TimeRange` values.

    Parameters
    ----------
    display_budget: int
        Maximum number of buckets a resolved range may contain.
    """

    def __init__(self, display_budget: int = DEFAULT_DISPLAY_BUDGET) -> None:
        if display_budget < 1:
            raise ValueError("display_budget must be at least 1")
        self.display_budget = display_budget

    def resolve(
        self,
        token: str,
        now: datetime,
        granularity: Optional[Granularity] = None,
    ) -> TimeRange:
        """Resolve ``token`` relative to ``now``.

        Parameters
        ----------
        token: str
            Range token such as "1h", "7d", "last week" or "mtd".
        now: datetime
            Reference instant; the range ends here. Naive values are UTC.
        granularity: Granularity, optional
            Requested bucket width; coarsened if it would exceed the budget.

        Raises
        ------
        InvalidRangeToken
            If the token is malformed, non-positive, or too long to fit the
            display budget even at daily granularity.
        """
        if not isinstance(token, str) or not token.strip():
            raise InvalidRangeToken(str(token), "empty range token")

        end = ensure_utc(now)
        normalized = normalize_token(token)

        if normalized == MONTH_TO_DATE:
            start = month_start(end)
            if start >= end:
                # Exactly at a month boundary: report the month that just ended
                start = month_start(start - timedelta(days=1))
        else:
            match = _TOKEN_RE.match(normalized)
            if not match:
                raise InvalidRangeToken(token)
            amount = int(match.group(1))
            if amount <= 0:
                raise InvalidRangeToken(token, "range must be positive")
            seconds = amount * _UNIT_SECONDS[match.group(2)]
            # Longer than the budget at the coarsest granularity; also keeps
            # huge amounts away from datetime arithmetic
            if seconds > self.display_budget * Granularity.DAY.seconds:
                raise InvalidRangeToken(token, "range exceeds display budget")
            try:
                start = end - timedelta(seconds=seconds)
            except OverflowError:
                raise InvalidRangeToken(token, "range is out of bounds") from None

        duration = (end - start).total_seconds()
        chosen = self.choose_granularity(duration, granularity)
        if chosen is None:
            raise InvalidRangeToken(token, "range exceeds display budget")

        if granularity is not None and chosen != granularity:
            logger.debug(
                "timerange.granularity_downgraded",
                extra={
                    "token": token,
                    "requested": granularity.value,
                    "chosen": chosen.value,
                },
            )
        return TimeRange(start=start, end=end, granularity=chosen)

    def choose_granularity(
        self, duration_seconds: float, requested: Optional[Granularity] = None
    ) -> Optional[Granularity]:
        """Finest granularity, starting at the preference, that fits the budget."""
        preferred = requested or preferred_granularity(duration_seconds)
        ordered = Granularity.ordered()
        for candidate in ordered[ordered.index(preferred) :]:
            if math.ceil(duration_seconds / candidate.seconds) <= self.display_budget:
                return candidate
        return None
