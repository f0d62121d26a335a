"""HealthRollup: Per-window health counters for datasources and oracle participants.

Windows are fixed-size and aligned to the epoch
(``window_start = floor(now / size) * size``). Every detector evaluation is
folded into one row per ``(window_start, pair, entity)``:

    - counters are additive (``ok_hits``, ``stalled_hits``, ``outlier_hits``,
      ``fetch_error_hits``)
    - ``last_*`` metrics and ``open_at_end`` are overwritten by the latest bump
    - ``first_seen_run_id`` is set once, ``last_seen_run_id`` always

Within one run an entity contributes either a single ``ok`` or its distinct
bad outcomes. Repeating an outcome already counted for the row's
``last_seen_run_id`` only refreshes the ``last_*`` fields, and a bad outcome
retracts an ``ok`` counted earlier in the same run. Replaying a run is
therefore idempotent.

.. code-block:: python

    >>> window_range(1_700_000_123, 14_400)
    (1699992000, 1700006400)
"""

from __future__ import annotations

import enum
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .PairKey import PairKey
from .Schema import (
    DatasourceHealthRollupModel,
    OracleHealthRollupModel,
    SummaryWindowModel,
)
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)

KIND_DATASOURCE = "datasource"
KIND_ORACLE = "oracle"

_MODELS = {
    KIND_DATASOURCE: DatasourceHealthRollupModel,
    KIND_ORACLE: OracleHealthRollupModel,
}


class Outcome(str, enum.Enum):
    """Result of one evaluation of one entity."""

    OK = "ok"
    STALLED = "stalled"
    OUTLIER = "outlier"
    FETCH_ERROR = "fetch_error"

    @property
    def counter(self) -> str:
        """Name of the rollup column this outcome increments."""
        return {
            Outcome.OK: "ok_hits",
            Outcome.STALLED: "stalled_hits",
            Outcome.OUTLIER: "outlier_hits",
            Outcome.FETCH_ERROR: "fetch_error_hits",
        }[self]


_ORACLE_OUTCOMES = {Outcome.OK, Outcome.STALLED}


@dataclass
class RollupMetrics:
    """Optional deviation metrics written to the ``last_*`` columns.

    :ivar dev_pct: Deviation of the entity price from the market median.
    :ivar span_sec: Time span of the samples judged.
    :ivar median: Market median at the newest sample.
    :ivar price: Entity price (or mean of its samples).
    """

    dev_pct: float | None = None
    span_sec: float | None = None
    median: float | None = None
    price: float | None = None


def _num_or_none(value: float | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def window_range(now: float, size_sec: int) -> tuple[int, int]:
    """Return ``(window_start, window_end)`` of the window containing ``now``.

    :param now: Epoch seconds.
    :param size_sec: Window size in seconds.
    :raises ValueError: If ``size_sec`` is not positive.
    """
    if size_sec <= 0:
        raise ValueError("Window size must be positive")
    start = int(now // size_sec) * size_sec
    return start, start + size_sec


def model_for(kind: str) -> type[DatasourceHealthRollupModel] | type[OracleHealthRollupModel]:
    """Return the rollup model class for a kind.

    :raises ValueError: If the kind is unknown.
    """
    try:
        return _MODELS[kind]
    except KeyError:
        raise ValueError(f"Unknown rollup kind '{kind}'") from None


def _is_older_run(run_id: int | None, last_seen: int | None) -> bool:
    return run_id is not None and last_seen is not None and run_id < last_seen


class HealthRollup:
    """Folds detector evaluations into window rows and ensures ledger rows.

    :ivar thresholds: Active thresholds (window size).
    """

    def __init__(self, thresholds: Thresholds, clock: Callable[[], float] = time.time) -> None:
        if thresholds.window_size_sec <= 0:
            raise ValueError("SUMMARY_WINDOW_MINUTES must be positive")
        self.thresholds = thresholds
        self._clock = clock

    def current_window(self, at: float | None = None) -> tuple[int, int]:
        """Window bounds for ``at`` (defaults to now)."""
        return window_range(self._clock() if at is None else at, self.thresholds.window_size_sec)

    def ensure_window(
        self,
        session: Session,
        window_start: int,
        window_end: int,
        run_id: int | None = None,
    ) -> SummaryWindowModel:
        """Create the ledger row for a window if missing."""
        row = session.get(SummaryWindowModel, window_start)
        if row is None:
            row = SummaryWindowModel(
                window_start=window_start,
                window_end=window_end,
                owners_done=False,
                admins_oracle_done=False,
                admins_ds_done=False,
                created_by_run_id=run_id,
            )
            session.add(row)
        elif row.window_end != window_end:
            row.window_end = window_end
        return row

    def bump(
        self,
        session: Session,
        kind: str,
        pair: PairKey,
        entity_id: str,
        outcome: Outcome | str,
        metrics: RollupMetrics | None = None,
        run_id: int | None = None,
        open_at_end: bool | None = None,
        at: float | None = None,
    ):
        """Fold one evaluation into the current window.

        :param session: Session of the calling evaluation.
        :param kind: ``datasource`` or ``oracle``.
        :param pair: Pair the entity belongs to.
        :param entity_id: Source name or participant address.
        :param outcome: Evaluation outcome.
        :param metrics: Deviation metrics (None fields are stored as NULL).
        :param run_id: Run that produced the evaluation.
        :param open_at_end: Alert state after this evaluation; defaults to
            ``outcome == STALLED``.
        :param at: Evaluation time (defaults to now).
        :returns: The updated rollup row.
        :raises ValueError: If the outcome is not valid for ``kind``.
        """
        model = model_for(kind)
        outcome = Outcome(outcome)
        if kind == KIND_ORACLE and outcome not in _ORACLE_OUTCOMES:
            raise ValueError(f"Outcome '{outcome.value}' is not tracked for oracle rollups")

        window_start, window_end = self.current_window(at)
        self.ensure_window(session, window_start, window_end, run_id)

        entity = str(entity_id).lower()
        key = (window_start, pair.chain_id, pair.contract_address, entity)
        row = session.get(model, key)
        if row is None:
            row = model(
                window_start=window_start,
                chain_id=pair.chain_id,
                contract_address=pair.contract_address,
                entity_id=entity,
                window_end=window_end,
                ok_hits=0,
                stalled_hits=0,
                outlier_hits=0,
                fetch_error_hits=0,
                open_at_end=False,
                first_seen_run_id=run_id,
                run_outcomes="",
            )
            session.add(row)
        elif _is_older_run(run_id, row.last_seen_run_id):
            logger.debug(
                f"[{kind}] {pair} {entity}: run {run_id} is older than run "
                f"{row.last_seen_run_id}; not counted"
            )
            return row

        self._count(row, outcome, run_id)

        metrics = metrics or RollupMetrics()
        row.window_end = window_end
        row.last_dev_pct = _num_or_none(metrics.dev_pct)
        row.last_span_sec = _num_or_none(metrics.span_sec)
        row.last_median = _num_or_none(metrics.median)
        row.last_price = _num_or_none(metrics.price)
        row.open_at_end = bool(outcome is Outcome.STALLED if open_at_end is None else open_at_end)
        if row.first_seen_run_id is None:
            row.first_seen_run_id = run_id
        if run_id is not None:
            row.last_seen_run_id = run_id

        session.flush()
        logger.debug(
            f"[{kind}] {pair} {entity}: {outcome.value} in window {window_start} "
            f"(ok={row.ok_hits} stalled={row.stalled_hits} "
            f"outlier={row.outlier_hits} ferr={row.fetch_error_hits})"
        )
        return row

    @staticmethod
    def _count(row, outcome: Outcome, run_id: int | None) -> None:
        """Apply the per-run counting rule to ``row``."""
        if run_id is None or row.last_seen_run_id != run_id:
            counted: set[str] = set()
        else:
            counted = {o for o in (row.run_outcomes or "").split(",") if o}

        if outcome.value in counted:
            return
        if outcome is Outcome.OK:
            if counted:
                # A bad outcome already stands for this run.
                return
        elif Outcome.OK.value in counted:
            row.ok_hits = max(0, row.ok_hits - 1)
            counted.discard(Outcome.OK.value)

        setattr(row, outcome.counter, getattr(row, outcome.counter) + 1)
        counted.add(outcome.value)
        row.run_outcomes = ",".join(sorted(counted))
