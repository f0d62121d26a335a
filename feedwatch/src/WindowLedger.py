"""WindowLedger: Decides which closed windows still owe a summary, and to whom.

Each window has three independent completion flags:

    - ``owners``: per-owner oracle digests
    - ``admins_oracle``: administrator oracle hotlist
    - ``admins_datasource``: administrator datasource hotlist

A window is due for an audience once its ``window_end`` has passed and the
flag is unset. It is complete when it has at least one rollup row of the
audience's kind and every such row has at least ``MIN_EVALS`` evaluations
(oracle rows count ``ok + stalled``; datasource rows count all four
outcomes). Flags are set exactly once and only by :meth:`mark_done`.

Only the last ``SUMMARY_LOOKBACK_WINDOWS`` closed windows are considered,
so a window that never completes eventually stops being retried.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .HealthRollup import KIND_DATASOURCE, KIND_ORACLE, model_for, window_range
from .Schema import SummaryWindowModel
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)


class Audience(str, enum.Enum):
    """Summary audience, one completion flag each."""

    OWNERS = "owners"
    ADMINS_ORACLE = "admins_oracle"
    ADMINS_DATASOURCE = "admins_datasource"

    @property
    def flag(self) -> str:
        """Ledger column holding this audience's completion flag."""
        return {
            Audience.OWNERS: "owners_done",
            Audience.ADMINS_ORACLE: "admins_oracle_done",
            Audience.ADMINS_DATASOURCE: "admins_ds_done",
        }[self]

    @property
    def kind(self) -> str:
        """Rollup kind the audience's digest is built from."""
        return KIND_DATASOURCE if self is Audience.ADMINS_DATASOURCE else KIND_ORACLE


def evaluations_for(kind: str, row) -> int:
    """Number of evaluations a rollup row counts toward completeness."""
    if kind == KIND_ORACLE:
        return (row.ok_hits or 0) + (row.stalled_hits or 0)
    return (
        (row.ok_hits or 0)
        + (row.stalled_hits or 0)
        + (row.outlier_hits or 0)
        + (row.fetch_error_hits or 0)
    )


def is_complete(kind: str, rows: Sequence, min_evals: int) -> bool:
    """Check that every row has at least ``min_evals`` evaluations.

    A window without rows is never complete.
    """
    if not rows:
        return False
    return all(evaluations_for(kind, row) >= min_evals for row in rows)


def has_events(kind: str, rows: Sequence) -> bool:
    """Check whether anything worth reporting happened in the rows."""
    for row in rows:
        if row.open_at_end or (row.stalled_hits or 0) > 0:
            return True
        if kind == KIND_DATASOURCE and ((row.outlier_hits or 0) > 0 or (row.fetch_error_hits or 0) > 0):
            return True
    return False


class WindowLedger:
    """Reads and updates the per-window completion flags.

    :ivar thresholds: Window size, lookback and completeness settings.
    """

    def __init__(self, thresholds: Thresholds, clock: Callable[[], float] = time.time) -> None:
        if thresholds.window_size_sec <= 0:
            raise ValueError("SUMMARY_WINDOW_MINUTES must be positive")
        if thresholds.summary_lookback_windows < 1:
            raise ValueError("SUMMARY_LOOKBACK_WINDOWS must be at least 1")
        self.thresholds = thresholds
        self._clock = clock

    def min_evals(self, audience: Audience) -> int:
        if audience.kind == KIND_ORACLE:
            return self.thresholds.summary_min_evals_oracle
        return self.thresholds.summary_min_evals_ds

    def due_windows(self, session: Session, now: float | None = None) -> list[SummaryWindowModel]:
        """Closed windows inside the lookback with at least one unset flag.

        The window immediately before the current one gets a ledger row if
        it has none yet, so an idle window is still visible to callers.

        :returns: Ledger rows, oldest first.
        """
        now = self._clock() if now is None else now
        size = self.thresholds.window_size_sec
        current_start, _ = window_range(now, size)
        oldest = current_start - self.thresholds.summary_lookback_windows * size

        previous_start = current_start - size
        if session.get(SummaryWindowModel, previous_start) is None:
            session.add(
                SummaryWindowModel(
                    window_start=previous_start,
                    window_end=current_start,
                    owners_done=False,
                    admins_oracle_done=False,
                    admins_ds_done=False,
                )
            )
            session.flush()

        rows = session.scalars(
            select(SummaryWindowModel)
            .where(
                SummaryWindowModel.window_start >= oldest,
                SummaryWindowModel.window_end <= now,
            )
            .order_by(SummaryWindowModel.window_start)
        ).all()
        return [row for row in rows if not all(self.is_done(row, a) for a in Audience)]

    @staticmethod
    def is_done(window: SummaryWindowModel, audience: Audience) -> bool:
        return bool(getattr(window, audience.flag))

    def rows(self, session: Session, window_start: int, kind: str) -> list:
        """All rollup rows of ``kind`` in one window."""
        model = model_for(kind)
        return list(
            session.scalars(
                select(model)
                .where(model.window_start == window_start)
                .order_by(model.chain_id, model.contract_address, model.entity_id)
            ).all()
        )

    def complete(self, audience: Audience, rows: Sequence) -> bool:
        """Apply the completeness gate, unless partial windows are allowed."""
        if not self.thresholds.summary_skip_partial_windows:
            return True
        return is_complete(audience.kind, rows, self.min_evals(audience))

    def mark_done(self, session: Session, window_start: int, audience: Audience) -> bool:
        """Set an audience's flag.

        :returns: True if the flag was set now, False if it already was or
            the window is unknown.
        """
        window = session.get(SummaryWindowModel, window_start)
        if window is None:
            logger.warning(f"Cannot mark unknown window {window_start} as done")
            return False
        if self.is_done(window, audience):
            return False
        setattr(window, audience.flag, True)
        if window.processed_at is None:
            window.processed_at = self._clock()
        logger.info(f"Window {window_start}: {audience.value} summary done")
        return True
