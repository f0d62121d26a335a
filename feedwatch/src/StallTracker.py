"""StallTracker: Persistent hysteresis counters for stall detection.

Each (kind, pair, entity) has one StallState row. A bad evaluation
increments ``consec_bad`` and resets ``consec_good``; a good one does the
opposite. The state flips to open only after ``open_consec`` consecutive
bad evaluations and back to closed only after ``clear_consec`` consecutive
good ones, so a single flip-flopping sample never opens or clears an alert.

An update for a ``run_id`` at or below the last one seen leaves the
counters untouched, which keeps replays of any earlier run idempotent.

.. code-block:: python

    >>> tracker = StallTracker(open_consec=3, clear_consec=2)
    >>> [tracker.update(session, "datasource", pair, "bitmart", True, run).opened
    ...  for run in (1, 2, 3)]
    [False, False, True]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .PairKey import PairKey
from .Schema import StallStateModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StallTransition:
    """Result of one hysteresis update.

    :ivar is_open: State after the update.
    :ivar opened: The update moved the state from closed to open.
    :ivar cleared: The update moved the state from open to closed.
    :ivar consec_bad: Consecutive bad evaluations after the update.
    :ivar consec_good: Consecutive good evaluations after the update.
    :ivar first_bad_run_id: First run of the current (or last) bad streak.
    :ivar replayed: The run (or a later one) had already been counted.
    """

    is_open: bool
    opened: bool
    cleared: bool
    consec_bad: int
    consec_good: int
    first_bad_run_id: int | None
    replayed: bool = False

    @property
    def status(self) -> str:
        """``stalled``, ``candidate`` (bad streak below threshold) or ``ok``."""
        if self.is_open:
            return "stalled"
        return "candidate" if self.consec_bad > 0 else "ok"


class StallTracker:
    """Applies open / clear hysteresis to StallState rows.

    :ivar open_consec: Consecutive bad evaluations required to open.
    :ivar clear_consec: Consecutive good evaluations required to clear.
    """

    def __init__(self, open_consec: int, clear_consec: int) -> None:
        """Initialize the tracker.

        :raises ValueError: If either threshold is below 1.
        """
        if open_consec < 1:
            raise ValueError("open_consec must be at least 1")
        if clear_consec < 1:
            raise ValueError("clear_consec must be at least 1")
        self.open_consec = open_consec
        self.clear_consec = clear_consec

    def get_state(
        self, session: Session, kind: str, pair: PairKey, entity_id: str
    ) -> StallStateModel | None:
        """Return the stored state row, or None before the first evaluation."""
        return session.get(
            StallStateModel,
            (kind, pair.chain_id, pair.contract_address, str(entity_id).lower()),
        )

    def update(
        self,
        session: Session,
        kind: str,
        pair: PairKey,
        entity_id: str,
        is_bad: bool,
        run_id: int | None,
    ) -> StallTransition:
        """Record one evaluation and return the resulting transition."""
        state = self.get_state(session, kind, pair, entity_id)
        if state is None:
            state = StallStateModel(
                kind=kind,
                chain_id=pair.chain_id,
                contract_address=pair.contract_address,
                entity_id=str(entity_id).lower(),
                consec_bad=0,
                consec_good=0,
                last_verdict_bad=False,
                is_open=False,
            )
            session.add(state)
        elif (
            run_id is not None
            and state.last_seen_run_id is not None
            and run_id <= state.last_seen_run_id
        ):
            return self._snapshot(state, replayed=True)

        was_open = state.is_open
        if is_bad:
            if state.consec_bad == 0 and not was_open:
                state.first_bad_run_id = run_id
            state.consec_bad += 1
            state.consec_good = 0
            if not was_open and state.consec_bad >= self.open_consec:
                state.is_open = True
        else:
            state.consec_good += 1
            state.consec_bad = 0
            if was_open and state.consec_good >= self.clear_consec:
                state.is_open = False

        state.last_verdict_bad = bool(is_bad)
        state.last_seen_run_id = run_id
        session.flush()

        transition = self._snapshot(
            state,
            opened=not was_open and state.is_open,
            cleared=was_open and not state.is_open,
        )
        if transition.opened or transition.cleared:
            logger.info(
                f"[{kind}] {pair} {entity_id}: "
                f"{'stalled' if transition.opened else 'cleared'} "
                f"(bad={state.consec_bad}, good={state.consec_good})"
            )
        return transition

    @staticmethod
    def _snapshot(
        state: StallStateModel,
        opened: bool = False,
        cleared: bool = False,
        replayed: bool = False,
    ) -> StallTransition:
        return StallTransition(
            is_open=state.is_open,
            opened=opened,
            cleared=cleared,
            consec_bad=state.consec_bad,
            consec_good=state.consec_good,
            first_bad_run_id=state.first_bad_run_id,
            replayed=replayed,
        )
