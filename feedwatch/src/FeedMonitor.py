"""FeedMonitor: Wires the components together and runs one sweep.

A sweep is:

    1. datasource run: fetch every (pair, source) and record snapshots or
       fetch errors, aggregate, then detect datasource stalls
    2. oracle run: read every participant submission, then detect oracle
       stalls (and send realtime messages when enabled)
    3. dispatch any window summaries that became due

Each run is opened and closed through the :class:`RunLedger`, so a run is
closed even when a step fails. Every step is isolated: a failure is logged
and the sweep moves on to the next step.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .AggregationEngine import AggregationEngine
from .AlertManager import AlertManager
from .BatchFetchCoordinator import BatchFetchCoordinator, FetchResult
from .DatasourceStallDetector import DatasourceStallDetector, DatasourceStallResult
from .HealthRollup import HealthRollup
from .Notifier import LogNotifier, Notifier
from .OracleReader import OracleReader
from .OracleStallDetector import OracleStallDetector, OracleStallResult
from .Registry import Registry
from .RunLedger import RunLedger
from .SnapshotRecorder import SnapshotRecorder
from .Store import Store
from .SummaryDispatcher import DispatchOutcome, SummaryDispatcher
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    datasource_run_id: int | None = None
    oracle_run_id: int | None = None
    fetches: list[FetchResult] = field(default_factory=list)
    aggregates_written: int = 0
    datasource_evaluations: list[DatasourceStallResult] = field(default_factory=list)
    oracle_snapshots: int = 0
    oracle_evaluations: list[OracleStallResult] = field(default_factory=list)
    summaries: list[DispatchOutcome] = field(default_factory=list)


class FeedMonitor:
    """The assembled monitor.

    :ivar store: Backing store.
    :ivar registry: Pairs, sources, participants and recipients.
    :ivar thresholds: Active thresholds.
    :ivar notifier: Notification transport.
    """

    def __init__(
        self,
        store: Store,
        registry: Registry,
        thresholds: Thresholds,
        notifier: Notifier | None = None,
        fetch_timeout: float = 10.0,
        fetch_concurrency: int = 8,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        coordinator: BatchFetchCoordinator | None = None,
        oracle_reader: OracleReader | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.thresholds = thresholds
        self.notifier = notifier or LogNotifier()

        self.runs = RunLedger(store, clock)
        self.alerts = AlertManager(clock)
        self.rollup = HealthRollup(thresholds, clock)
        self.recorder = SnapshotRecorder(store, registry, self.alerts, self.rollup, clock)
        self.aggregation = AggregationEngine(store, registry, self.alerts, self.rollup, thresholds, clock)
        self.datasource_stalls = DatasourceStallDetector(
            store, registry, self.alerts, self.rollup, thresholds, self.notifier, clock
        )
        self.oracle_stalls = OracleStallDetector(
            store, registry, self.alerts, self.rollup, thresholds, self.notifier, clock
        )
        self.summaries = SummaryDispatcher(store, registry, self.notifier, thresholds, clock)

        self.coordinator = coordinator or BatchFetchCoordinator(
            registry, fetch_timeout=fetch_timeout, concurrency=fetch_concurrency, environ=environ
        )
        self.oracle_reader = oracle_reader or OracleReader(registry, environ=environ)

    async def datasource_run(self, report: SweepReport) -> None:
        """Fetch, aggregate and detect datasource stalls in one run."""
        with self.runs.run("datasource") as run_id:
            report.datasource_run_id = run_id
            try:
                report.fetches = await self.coordinator.fetch_and_record(run_id, self.recorder)
            except Exception:
                logger.exception(f"Datasource fetch failed in run {run_id}")
            try:
                report.aggregates_written = self.aggregation.run(run_id)
            except Exception:
                logger.exception(f"Aggregation failed in run {run_id}")
            try:
                report.datasource_evaluations = await self.datasource_stalls.run(run_id)
            except Exception:
                logger.exception(f"Datasource stall detection failed in run {run_id}")

    async def oracle_run(self, report: SweepReport) -> None:
        """Read oracle submissions and detect oracle stalls in one run."""
        with self.runs.run("oracle") as run_id:
            report.oracle_run_id = run_id
            try:
                report.oracle_snapshots = await self.oracle_reader.read_and_record(run_id, self.recorder)
            except Exception:
                logger.exception(f"Oracle ingest failed in run {run_id}")
            try:
                report.oracle_evaluations = await self.oracle_stalls.run(run_id)
            except Exception:
                logger.exception(f"Oracle stall detection failed in run {run_id}")

    async def sweep(self) -> SweepReport:
        """Run the whole pipeline once."""
        report = SweepReport()
        try:
            await self.datasource_run(report)
        except Exception:
            logger.exception("Datasource run aborted")
        try:
            await self.oracle_run(report)
        except Exception:
            logger.exception("Oracle run aborted")
        try:
            report.summaries = await self.summaries.dispatch()
        except Exception:
            logger.exception("Summary dispatch failed")

        logger.info(
            f"Sweep done: runs {report.datasource_run_id}/{report.oracle_run_id}, "
            f"{sum(1 for f in report.fetches if f.ok)}/{len(report.fetches)} fetches ok, "
            f"{report.aggregates_written} aggregate(s), "
            f"{report.oracle_snapshots} oracle snapshot(s), "
            f"{len(report.summaries)} summary attempt(s)"
        )
        return report

    async def close(self) -> None:
        """Release HTTP clients and pooled connections."""
        try:
            await self.coordinator.close()
        finally:
            try:
                await self.notifier.close()
            finally:
                self.store.dispose()
