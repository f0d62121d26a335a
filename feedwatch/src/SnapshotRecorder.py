"""SnapshotRecorder: Intake of producer observations, plus snapshot queries.

Producers hand the monitor one observation at a time:

    - ``record_snapshot`` for a datasource price
    - ``record_fetch_error`` when a datasource could not be fetched or parsed
    - ``record_oracle_snapshot`` for an on-chain participant submission

Snapshots are immutable. A second observation for the same
``(run_id, pair, entity)`` is ignored, so replaying a run never duplicates
history. Fetch errors are health events: they count as a ``fetch_error``
rollup hit and open a ``DS_FETCH_ERROR:<source>`` alert per admin, which the
next successful snapshot of that (pair, source) resolves.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .AlertManager import SEVERITY_WARNING, AlertManager
from .AlertPayloads import FetchErrorPayload
from .HealthRollup import KIND_DATASOURCE, HealthRollup, Outcome
from .PairKey import PairKey, normalize_address
from .Registry import Registry
from .Schema import DatasourceSnapshotModel, OracleSnapshotModel
from .StallMath import Sample, median
from .Store import Store

logger = logging.getLogger(__name__)


def fetch_error_alert_type(source: str) -> str:
    return f"DS_FETCH_ERROR:{source.lower()}"


def _validate_price(price: float) -> float:
    value = float(price)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Price must be a positive finite number, got {price!r}")
    return value


class SnapshotRecorder:
    """Writes producer observations into the store.

    :ivar store: Backing store.
    :ivar registry: Registry (for admin recipients).
    """

    def __init__(
        self,
        store: Store,
        registry: Registry,
        alerts: AlertManager,
        rollup: HealthRollup,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.alerts = alerts
        self.rollup = rollup
        self._clock = clock

    def record_snapshot(
        self,
        run_id: int,
        pair: PairKey,
        source: str,
        price: float,
        observed_at: float | None = None,
    ) -> bool:
        """Store one datasource price and clear any open fetch-error alert.

        :param run_id: Current run.
        :param pair: Pair the price is for.
        :param source: Datasource name.
        :param price: Observed price (positive, finite).
        :param observed_at: Observation time (defaults to now).
        :returns: True if a new snapshot row was written.
        :raises ValueError: If the price is not usable.
        """
        value = _validate_price(price)
        source = source.lower()
        ts = self._clock() if observed_at is None else float(observed_at)

        with self.store.session() as session:
            exists = session.scalars(
                select(DatasourceSnapshotModel.id).where(
                    DatasourceSnapshotModel.run_id == run_id,
                    DatasourceSnapshotModel.chain_id == pair.chain_id,
                    DatasourceSnapshotModel.contract_address == pair.contract_address,
                    DatasourceSnapshotModel.source == source,
                )
            ).first()
            if exists is None:
                session.add(
                    DatasourceSnapshotModel(
                        run_id=run_id,
                        chain_id=pair.chain_id,
                        contract_address=pair.contract_address,
                        source=source,
                        price=value,
                        observed_at=ts,
                    )
                )

            alert_type = fetch_error_alert_type(source)
            for admin in self.registry.admins():
                self.alerts.resolve(session, admin, str(pair), alert_type)

        if exists is not None:
            logger.debug(f"[{source}] {pair}: snapshot for run {run_id} already recorded")
            return False
        logger.debug(f"[{source}] {pair}: {value} @ run {run_id}")
        return True

    def record_fetch_error(
        self,
        run_id: int,
        pair: PairKey,
        source: str,
        detail: str | None = None,
    ) -> None:
        """Record a failed fetch as a health hit and an admin alert."""
        source = source.lower()
        label = self.registry.label_for(pair)
        logger.warning(f"[{source}] {label}: fetch failed: {detail}")

        message = (
            f"Datasource {source} fetch/parse error for {label} "
            f"on contract {pair.contract_address}."
        )
        payload = FetchErrorPayload(run_id=run_id, source=source, detail=detail)
        with self.store.session() as session:
            self.rollup.bump(session, KIND_DATASOURCE, pair, source, Outcome.FETCH_ERROR, run_id=run_id)
            for admin in self.registry.admins():
                self.alerts.open_or_refresh(
                    session,
                    admin,
                    str(pair),
                    fetch_error_alert_type(source),
                    SEVERITY_WARNING,
                    message,
                    payload,
                )

    def record_oracle_snapshot(
        self,
        run_id: int,
        pair: PairKey,
        participant: str,
        price: float,
        observed_at: float | None = None,
    ) -> bool:
        """Store one participant submission.

        :returns: True if a new snapshot row was written.
        :raises ValueError: If the price or address is not usable.
        """
        value = _validate_price(price)
        participant = normalize_address(participant)
        ts = self._clock() if observed_at is None else float(observed_at)

        with self.store.session() as session:
            exists = session.scalars(
                select(OracleSnapshotModel.id).where(
                    OracleSnapshotModel.run_id == run_id,
                    OracleSnapshotModel.chain_id == pair.chain_id,
                    OracleSnapshotModel.contract_address == pair.contract_address,
                    OracleSnapshotModel.participant == participant,
                )
            ).first()
            if exists is not None:
                return False
            session.add(
                OracleSnapshotModel(
                    run_id=run_id,
                    chain_id=pair.chain_id,
                    contract_address=pair.contract_address,
                    participant=participant,
                    price=value,
                    observed_at=ts,
                )
            )
        logger.debug(f"[oracle] {pair} {participant}: {value} @ run {run_id}")
        return True


# Queries used by the detectors.


def fresh_datasource_snapshots(
    session: Session, pair: PairKey, cutoff: float
) -> list[DatasourceSnapshotModel]:
    """Datasource snapshots of a pair observed after ``cutoff``, newest first."""
    stmt = (
        select(DatasourceSnapshotModel)
        .where(
            DatasourceSnapshotModel.chain_id == pair.chain_id,
            DatasourceSnapshotModel.contract_address == pair.contract_address,
            DatasourceSnapshotModel.observed_at > cutoff,
        )
        .order_by(DatasourceSnapshotModel.observed_at.desc(), DatasourceSnapshotModel.id.desc())
    )
    return list(session.scalars(stmt))


def recent_datasource_samples(
    session: Session, pair: PairKey, source: str, limit: int = 3
) -> list[Sample]:
    """Last ``limit`` samples of one datasource, newest first."""
    stmt = (
        select(DatasourceSnapshotModel)
        .where(
            DatasourceSnapshotModel.chain_id == pair.chain_id,
            DatasourceSnapshotModel.contract_address == pair.contract_address,
            DatasourceSnapshotModel.source == source.lower(),
        )
        .order_by(DatasourceSnapshotModel.observed_at.desc(), DatasourceSnapshotModel.id.desc())
        .limit(limit)
    )
    return [Sample(r.run_id, r.price, r.observed_at) for r in session.scalars(stmt)]


def recent_oracle_samples(
    session: Session, pair: PairKey, participant: str, limit: int = 3
) -> list[Sample]:
    """Last ``limit`` submissions of one participant, newest first."""
    stmt = (
        select(OracleSnapshotModel)
        .where(
            OracleSnapshotModel.chain_id == pair.chain_id,
            OracleSnapshotModel.contract_address == pair.contract_address,
            OracleSnapshotModel.participant == participant.lower(),
        )
        .order_by(OracleSnapshotModel.observed_at.desc(), OracleSnapshotModel.id.desc())
        .limit(limit)
    )
    return [Sample(r.run_id, r.price, r.observed_at) for r in session.scalars(stmt)]


def datasource_run_medians(
    session: Session, pair: PairKey, run_ids: Iterable[int]
) -> dict[int, float]:
    """Median of all datasource prices of a pair, per run id.

    Runs without any datasource snapshot are absent from the result.
    """
    ids = sorted(set(run_ids))
    if not ids:
        return {}
    stmt = select(DatasourceSnapshotModel.run_id, DatasourceSnapshotModel.price).where(
        DatasourceSnapshotModel.chain_id == pair.chain_id,
        DatasourceSnapshotModel.contract_address == pair.contract_address,
        DatasourceSnapshotModel.run_id.in_(ids),
    )
    by_run: dict[int, list[float]] = {}
    for run_id, price in session.execute(stmt):
        by_run.setdefault(run_id, []).append(price)
    medians: dict[int, float] = {}
    for run_id, prices in by_run.items():
        value = median(prices)
        if value is not None:
            medians[run_id] = value
    return medians


def datasource_run_at(session: Session, pair: PairKey, ts: float) -> int | None:
    """Newest datasource run of a pair with a snapshot observed at or before ``ts``."""
    stmt = select(func.max(DatasourceSnapshotModel.run_id)).where(
        DatasourceSnapshotModel.chain_id == pair.chain_id,
        DatasourceSnapshotModel.contract_address == pair.contract_address,
        DatasourceSnapshotModel.observed_at <= ts,
    )
    return session.scalar(stmt)
