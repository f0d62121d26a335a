"""PriceAggregator: Median consensus with outlier exclusion and quorum.

Algorithm:
    1. Drop missing, non-finite and non-positive prices
    2. Compute the median across all remaining sources
    3. Flag a source as outlier if ``|price - median| / median > outlier_pct``
    4. The rest are "used"; fewer than ``quorum_min_used`` fails the aggregation
    5. Otherwise the consensus value is the mean of the used prices

Outliers are reported even when quorum fails, so alerting can proceed.

.. code-block:: python

    >>> aggregator = PriceAggregator(outlier_pct=0.05, quorum_min_used=2)
    >>> result = aggregator.aggregate({"a": 100.0, "b": 101.0, "c": 99.0, "d": 150.0})
    >>> result.success
    True
    >>> result.median
    100.5
    >>> result.mean
    100.0
    >>> sorted(result.outliers)
    ['d']
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from statistics import median as _median
from typing import TypedDict

from .StallMath import pct_diff


class OutlierInfo(TypedDict):
    """Why a source was excluded.

    :ivar price: Source price.
    :ivar deviation: ``|price - median| / median`` (fraction).
    """

    price: float
    deviation: float


@dataclass
class AggregationResult:
    """Result of one aggregation.

    :ivar median: Median over all valid sources, or None without input.
    :ivar mean: Mean of the used sources, or None when aggregation failed.
    :ivar used: Sources kept, with their prices.
    :ivar outliers: Sources excluded, with price and deviation.
    :ivar error: Failure reason (``no_prices`` or ``insufficient_quorum``).
    """

    median: float | None
    mean: float | None
    used: dict[str, float] = field(default_factory=dict)
    outliers: dict[str, OutlierInfo] = field(default_factory=dict)
    error: str | None = None

    @property
    def success(self) -> bool:
        """Check if a consensus value was produced."""
        return self.mean is not None and self.error is None

    @property
    def source_count(self) -> int:
        """Number of valid sources evaluated."""
        return len(self.used) + len(self.outliers)

    @property
    def used_count(self) -> int:
        """Number of sources kept."""
        return len(self.used)


class PriceAggregator:
    """Aggregates the newest price of each source into a consensus value.

    :ivar outlier_pct: Max allowed relative deviation from the median.
    :ivar quorum_min_used: Minimum number of used sources.

    .. code-block:: python

        >>> agg = PriceAggregator(outlier_pct=0.01, quorum_min_used=2)
        >>> agg.aggregate({"a": 100.0, "b": 130.0}).error
        'insufficient_quorum'
    """

    def __init__(self, outlier_pct: float = 0.01, quorum_min_used: int = 2) -> None:
        """Initialize the aggregator.

        :param outlier_pct: Relative deviation (fraction) above which a source
            is an outlier (default 1%).
        :param quorum_min_used: Minimum non-outlier sources required.
        :raises ValueError: If parameters are invalid.
        """
        if quorum_min_used < 1:
            raise ValueError("quorum_min_used must be at least 1")
        if outlier_pct < 0:
            raise ValueError("outlier_pct must not be negative")

        self.outlier_pct = outlier_pct
        self.quorum_min_used = quorum_min_used

    def aggregate(self, prices: dict[str, float | None]) -> AggregationResult:
        """Classify sources and compute the consensus.

        :param prices: Dict mapping source name to its newest price.
        :returns: AggregationResult; ``success`` is False when there is no
            usable input or quorum is not met.
        """
        valid: dict[str, float] = {}
        for source, price in prices.items():
            if price is None:
                continue
            value = float(price)
            if math.isfinite(value) and value > 0:
                valid[source] = value

        if not valid:
            return AggregationResult(median=None, mean=None, error="no_prices")

        med = _median(valid.values())

        used: dict[str, float] = {}
        outliers: dict[str, OutlierInfo] = {}
        for source, price in valid.items():
            deviation = pct_diff(price, med)
            if deviation > self.outlier_pct:
                outliers[source] = {"price": price, "deviation": deviation}
            else:
                used[source] = price

        if len(used) < self.quorum_min_used:
            return AggregationResult(
                median=med,
                mean=None,
                used=used,
                outliers=outliers,
                error="insufficient_quorum",
            )

        return AggregationResult(
            median=med,
            mean=sum(used.values()) / len(used),
            used=used,
            outliers=outliers,
        )
