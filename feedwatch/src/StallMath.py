"""StallMath: Flat-range vs market-move classification shared by both stall detectors.

An entity is **stalled** when its own last three samples are (nearly) flat
while the market median moved:

    - ``span = max(ts) - min(ts)`` must be at least ``STALL_MIN_SPAN_SEC``
    - ``flat_range_pct = (max - min) / ((max + min) / 2)``
    - ``market_move_pct = |median_late - median_early| / median_early``
    - stalled iff ``flat_range_pct <= STALL_FLAT_PCT`` and
      ``market_move_pct >= STALL_MARKET_MOVE_PCT``

.. code-block:: python

    >>> samples = [
    ...     Sample(run_id=3, price=100.00, observed_at=18000),
    ...     Sample(run_id=2, price=100.01, observed_at=9000),
    ...     Sample(run_id=1, price=100.00, observed_at=0),
    ... ]
    >>> result = evaluate_stall(samples, median_early=100.0, median_late=110.0,
    ...                         thresholds=Thresholds(stall_flat_pct=0.001,
    ...                                               stall_market_move_pct=0.02,
    ...                                               stall_min_span_sec=3600))
    >>> result.stalled
    True
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from statistics import median as _median

from .Thresholds import Thresholds

SAMPLES_REQUIRED = 3


@dataclass(frozen=True)
class Sample:
    """One price observation of a datasource or participant.

    :ivar run_id: Run that recorded the sample.
    :ivar price: Observed price.
    :ivar observed_at: Epoch seconds.
    """

    run_id: int
    price: float
    observed_at: float


@dataclass(frozen=True)
class StallEvaluation:
    """Outcome of one flat-vs-market test.

    :ivar stalled: Classification.
    :ivar span_sec: Span of the judged samples.
    :ivar flat_range_pct: Entity's own relative range.
    :ivar market_move_pct: Relative move of the market median.
    :ivar mean_price: Mean of the judged samples.
    :ivar median_early: Market median at the oldest sample's run.
    :ivar median_late: Market median at the newest sample's run.
    """

    stalled: bool
    span_sec: float
    flat_range_pct: float
    market_move_pct: float
    mean_price: float
    median_early: float
    median_late: float

    @property
    def dev_pct(self) -> float:
        """Deviation of the entity's mean price from the current median."""
        return pct_diff(self.mean_price, self.median_late)


def finite(values: Iterable[float | None]) -> list[float]:
    """Drop None, NaN and infinite values."""
    out: list[float] = []
    for v in values:
        if v is None:
            continue
        try:
            f = float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(f):
            out.append(f)
    return out


def median(values: Iterable[float | None]) -> float | None:
    """Median of the finite values, or None when there are none."""
    clean = finite(values)
    return _median(clean) if clean else None


def mean(values: Iterable[float | None]) -> float | None:
    """Arithmetic mean of the finite values, or None when there are none."""
    clean = finite(values)
    return sum(clean) / len(clean) if clean else None


def pct_diff(a: float | None, b: float | None) -> float:
    """Return ``|a - b| / |b|``; infinity when either is missing or ``b`` is 0."""
    if a is None or b is None:
        return math.inf
    if not (math.isfinite(a) and math.isfinite(b)) or b == 0:
        return math.inf
    return abs(a - b) / abs(b)


def flat_range_pct(prices: Sequence[float]) -> float:
    """Relative range of ``prices`` around their midpoint (0 if midpoint <= 0)."""
    lo, hi = min(prices), max(prices)
    mid = (lo + hi) / 2
    return (hi - lo) / mid if mid > 0 else 0.0


def evaluate_stall(
    samples: Sequence[Sample],
    median_early: float | None,
    median_late: float | None,
    thresholds: Thresholds,
) -> StallEvaluation | None:
    """Classify the newest-first ``samples`` against the market medians.

    :param samples: At least three samples, newest first.
    :param median_early: Market median at the oldest judged sample.
    :param median_late: Market median at the newest judged sample.
    :param thresholds: Active thresholds.
    :returns: The evaluation, or None when there is not enough history to
        judge (fewer than 3 samples, span too short, or no usable market).
    """
    judged = list(samples[:SAMPLES_REQUIRED])
    if len(judged) < SAMPLES_REQUIRED:
        return None

    times = [s.observed_at for s in judged]
    span = max(times) - min(times)
    if span < thresholds.stall_min_span_sec:
        return None

    prices = finite(s.price for s in judged)
    if len(prices) < SAMPLES_REQUIRED:
        return None

    if median_early is None or median_late is None:
        return None
    if not (math.isfinite(median_early) and math.isfinite(median_late)) or median_early <= 0:
        return None

    flat = flat_range_pct(prices)
    move = abs(median_late - median_early) / median_early
    stalled = flat <= thresholds.stall_flat_pct and move >= thresholds.stall_market_move_pct

    return StallEvaluation(
        stalled=stalled,
        span_sec=span,
        flat_range_pct=flat,
        market_move_pct=move,
        mean_price=sum(prices) / len(prices),
        median_early=median_early,
        median_late=median_late,
    )


def format_pct(value: float | None, digits: int = 2) -> str:
    """Format a fraction as a percentage (``n/a`` when not finite)."""
    if value is None or not math.isfinite(value):
        return "n/a"
    return f"{value * 100:.{digits}f}%"


def format_span(seconds: float | None) -> str:
    """Format a duration as minutes below one hour, else hours."""
    if seconds is None or not math.isfinite(seconds):
        return "n/a"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    return f"{seconds / 3600:.1f}h"
