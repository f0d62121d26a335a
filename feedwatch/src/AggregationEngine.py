"""AggregationEngine: Per-pair consensus, outlier alerts and datasource health hits.

For every active pair the engine takes the newest fresh snapshot of each
datasource, runs :class:`PriceAggregator`, and then:

    - writes one PriceAggregate for ``(run_id, pair)`` when quorum is met
      (never rewritten on replay)
    - opens or resolves an ``OUTLIER:<source>`` alert per admin for every
      known source of the pair, with no hysteresis
    - feeds an ``ok`` or ``outlier`` hit into the datasource rollup for
      every evaluated source

Each pair is evaluated in its own transaction; a failure is logged and
the next pair is still evaluated.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .AlertManager import SEVERITY_WARNING, AlertManager
from .AlertPayloads import OutlierPayload
from .HealthRollup import KIND_DATASOURCE, HealthRollup, Outcome, RollupMetrics
from .PairKey import PairKey
from .PriceAggregator import AggregationResult, PriceAggregator
from .Registry import Registry
from .Schema import PriceAggregateModel, StallStateModel
from .SnapshotRecorder import fresh_datasource_snapshots
from .StallMath import format_pct, pct_diff
from .Store import Store
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)


def outlier_alert_type(source: str) -> str:
    return f"OUTLIER:{source.lower()}"


class AggregationEngine:
    """Aggregates datasource snapshots and manages outlier alerts.

    :ivar thresholds: Active thresholds.
    :ivar aggregator: Pure aggregation math.
    """

    def __init__(
        self,
        store: Store,
        registry: Registry,
        alerts: AlertManager,
        rollup: HealthRollup,
        thresholds: Thresholds,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.alerts = alerts
        self.rollup = rollup
        self.thresholds = thresholds
        self.aggregator = PriceAggregator(
            outlier_pct=thresholds.outlier_pct,
            quorum_min_used=thresholds.quorum_min_used,
        )
        self._clock = clock

    def run(self, run_id: int, pairs: list[PairKey] | None = None) -> int:
        """Aggregate every pair; returns the number of aggregates written."""
        written = 0
        for pair in pairs if pairs is not None else self.registry.active_pairs():
            try:
                if self.aggregate_pair(run_id, pair) is True:
                    written += 1
            except Exception:
                logger.exception(f"Aggregation failed for {pair}")
        logger.info(f"Aggregation complete: wrote {written} price aggregate(s) for run {run_id}")
        return written

    def aggregate_pair(self, run_id: int, pair: PairKey) -> bool | None:
        """Aggregate one pair.

        :returns: True if an aggregate was written, False if quorum failed or
            the aggregate already existed, None if there was nothing fresh.
        """
        now = self._clock()
        cutoff = now - self.thresholds.freshness_sec

        with self.store.session() as session:
            rows = fresh_datasource_snapshots(session, pair, cutoff)
            if not rows:
                logger.debug(f"{pair}: no fresh datasource snapshots")
                return None

            newest: dict[str, tuple[float, float]] = {}
            for row in rows:
                newest.setdefault(row.source, (row.price, row.observed_at))

            result = self.aggregator.aggregate({s: p for s, (p, _) in newest.items()})
            if result.median is None:
                return None

            self._feed_rollup(session, run_id, pair, result)

            written = False
            if result.success:
                written = self._write_aggregate(session, run_id, pair, result, newest)
            else:
                logger.warning(
                    f"Insufficient quorum after outlier filter for {self.registry.label_for(pair)}: "
                    f"used={result.used_count}, needed={self.thresholds.quorum_min_used}"
                )

            self._manage_outlier_alerts(session, run_id, pair, result)

        if result.outliers:
            details = ", ".join(
                f"{s} ({format_pct(o['deviation'])})" for s, o in sorted(result.outliers.items())
            )
            logger.warning(f"Outliers dropped for {pair}: {details}")
        return written

    def _write_aggregate(
        self,
        session: Session,
        run_id: int,
        pair: PairKey,
        result: AggregationResult,
        newest: dict[str, tuple[float, float]],
    ) -> bool:
        existing = session.scalars(
            select(PriceAggregateModel.id).where(
                PriceAggregateModel.run_id == run_id,
                PriceAggregateModel.chain_id == pair.chain_id,
                PriceAggregateModel.contract_address == pair.contract_address,
            )
        ).first()
        if existing is not None:
            logger.debug(f"{pair}: aggregate for run {run_id} already written")
            return False

        used_times = [newest[s][1] for s in result.used]
        session.add(
            PriceAggregateModel(
                run_id=run_id,
                chain_id=pair.chain_id,
                contract_address=pair.contract_address,
                window_start=min(used_times),
                window_end=max(used_times),
                median=result.median,
                mean=result.mean,
                source_count=result.source_count,
                used_count=result.used_count,
                discarded_sources=sorted(result.outliers),
            )
        )
        logger.debug(
            f"{pair}: median={result.median:.8g} mean={result.mean:.8g} "
            f"used={result.used_count}/{result.source_count}"
        )
        return True

    def _feed_rollup(
        self, session: Session, run_id: int, pair: PairKey, result: AggregationResult
    ) -> None:
        for source, price in result.used.items():
            stall = session.get(
                StallStateModel,
                (KIND_DATASOURCE, pair.chain_id, pair.contract_address, source.lower()),
            )
            self.rollup.bump(
                session,
                KIND_DATASOURCE,
                pair,
                source,
                Outcome.OK,
                RollupMetrics(dev_pct=pct_diff(price, result.median), median=result.median, price=price),
                run_id=run_id,
                open_at_end=bool(stall and stall.is_open),
            )
        for source, info in result.outliers.items():
            self.rollup.bump(
                session,
                KIND_DATASOURCE,
                pair,
                source,
                Outcome.OUTLIER,
                RollupMetrics(dev_pct=info["deviation"], median=result.median, price=info["price"]),
                run_id=run_id,
                open_at_end=False,
            )

    def _manage_outlier_alerts(
        self, session: Session, run_id: int, pair: PairKey, result: AggregationResult
    ) -> None:
        admins = self.registry.admins()
        if not admins:
            return
        known = set(self.registry.sources_for(pair)) | set(result.used) | set(result.outliers)
        label = self.registry.label_for(pair)
        for source in sorted(known):
            alert_type = outlier_alert_type(source)
            info = result.outliers.get(source)
            if info is None:
                for admin in admins:
                    self.alerts.resolve(session, admin, str(pair), alert_type)
                continue

            message = (
                f"Source {source} deviated > {format_pct(self.thresholds.outlier_pct)} "
                f"from median for {label} ({pair.contract_address})."
            )
            payload = OutlierPayload(
                run_id=run_id,
                source=source,
                price=info["price"],
                median=result.median,
                deviation_pct=info["deviation"],
                threshold_pct=self.thresholds.outlier_pct,
            )
            for admin in admins:
                self.alerts.open_or_refresh(
                    session, admin, str(pair), alert_type, SEVERITY_WARNING, message, payload
                )
