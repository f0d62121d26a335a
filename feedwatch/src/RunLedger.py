"""RunLedger: Monotonic ingest-run identifiers with guaranteed closure.

.. code-block:: python

    >>> ledger = RunLedger(store)
    >>> with ledger.run("datasource") as run_id:
    ...     fetch_and_record(run_id)   # may raise; the run is still closed
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from .Schema import IngestRunModel
from .Store import Store

logger = logging.getLogger(__name__)

RUN_LABELS = ("datasource", "oracle")


class RunLedger:
    """Creates and closes ingest runs.

    :ivar store: Backing store.
    """

    def __init__(self, store: Store, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def begin(self, label: str) -> int:
        """Open a new run.

        :param label: Producer label (``datasource`` or ``oracle``).
        :returns: The new run id.
        :raises ValueError: If the label is empty.
        """
        if not label:
            raise ValueError("Run label must not be empty")
        if label not in RUN_LABELS:
            logger.debug(f"Non-standard run label '{label}'")
        with self.store.session() as session:
            run = IngestRunModel(label=label, started_at=self._clock())
            session.add(run)
            session.flush()
            run_id = run.id
        logger.debug(f"Run {run_id} ({label}) started")
        return run_id

    def end(self, run_id: int) -> bool:
        """Close a run. Closing an already-closed run is a no-op.

        :param run_id: Run to close.
        :returns: True if this call closed the run.
        """
        with self.store.session() as session:
            run = session.get(IngestRunModel, run_id)
            if run is None:
                logger.warning(f"Cannot close unknown run {run_id}")
                return False
            if run.ended_at is not None:
                return False
            run.ended_at = self._clock()
            elapsed = run.ended_at - run.started_at
        logger.debug(f"Run {run_id} closed after {elapsed:.2f}s")
        return True

    @contextmanager
    def run(self, label: str) -> Iterator[int]:
        """Open a run for the duration of the block; always close it."""
        run_id = self.begin(label)
        try:
            yield run_id
        finally:
            self.end(run_id)

    def get(self, run_id: int) -> IngestRunModel | None:
        """Return the run row, or None."""
        with self.store.session() as session:
            return session.get(IngestRunModel, run_id)
