"""Schema: SQLAlchemy models for snapshots, runs, aggregates and health state.

All timestamps are Unix epoch seconds. Natural keys are declared as
primary keys or unique constraints so every mutable table can be upserted
idempotently when a run is replayed.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IngestRunModel(Base):
    """One sweep of a producer pipeline."""

    __tablename__ = "ingest_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[float] = mapped_column(Float, nullable=False)
    ended_at: Mapped[float | None] = mapped_column(Float, nullable=True)


class DatasourceSnapshotModel(Base):
    """Immutable price observation from an off-chain datasource."""

    __tablename__ = "datasource_price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    observed_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "run_id", "chain_id", "contract_address", "source",
            name="uq_ds_snapshot_run",
        ),
        Index("idx_ds_snapshot_pair_source_ts", "chain_id", "contract_address", "source", "observed_at"),
        Index("idx_ds_snapshot_pair_run", "chain_id", "contract_address", "run_id"),
    )


class OracleSnapshotModel(Base):
    """Immutable submission read from an on-chain oracle participant."""

    __tablename__ = "oracle_price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    participant: Mapped[str] = mapped_column(String(42), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    observed_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "run_id", "chain_id", "contract_address", "participant",
            name="uq_oracle_snapshot_run",
        ),
        Index("idx_oracle_snapshot_pair_participant_ts", "chain_id", "contract_address", "participant", "observed_at"),
    )


class PriceAggregateModel(Base):
    """Consensus price for one pair and run. Append-only."""

    __tablename__ = "price_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    window_start: Mapped[float] = mapped_column(Float, nullable=False)
    window_end: Mapped[float] = mapped_column(Float, nullable=False)
    median: Mapped[float] = mapped_column(Float, nullable=False)
    mean: Mapped[float] = mapped_column(Float, nullable=False)
    source_count: Mapped[int] = mapped_column(Integer, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False)
    discarded_sources: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("run_id", "chain_id", "contract_address", name="uq_aggregate_run_pair"),
    )


class StallStateModel(Base):
    """Hysteresis accumulator for one (kind, pair, entity). Never deleted."""

    __tablename__ = "stall_state"

    kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    consec_bad: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consec_good: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_bad_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_seen_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_verdict_bad: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AlertModel(Base):
    """Lifecycle-managed alert. Open while ``resolved_at`` is NULL."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(128), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(96), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    extra: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    opened_at: Mapped[float] = mapped_column(Float, nullable=False)
    resolved_at: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index(
            "uq_alerts_one_open",
            "recipient_id", "entity_key", "alert_type",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
        Index("idx_alerts_type_open", "alert_type", "resolved_at"),
    )


class _HealthRollupColumns:
    """Counters shared by both rollup variants."""

    window_start: Mapped[int] = mapped_column(Integer, primary_key=True)
    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_end: Mapped[int] = mapped_column(Integer, nullable=False)

    ok_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stalled_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outlier_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fetch_error_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    open_at_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_dev_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_span_sec: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_median: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_price: Mapped[float | None] = mapped_column(Float, nullable=True)

    first_seen_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_seen_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Outcomes already counted for last_seen_run_id, e.g. "ok,outlier".
    run_outcomes: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    @property
    def evaluations(self) -> int:
        return self.ok_hits + self.stalled_hits + self.outlier_hits + self.fetch_error_hits


class DatasourceHealthRollupModel(_HealthRollupColumns, Base):
    """Per-window health counters for one (pair, datasource)."""

    __tablename__ = "datasource_health_rollup"


class OracleHealthRollupModel(_HealthRollupColumns, Base):
    """Per-window health counters for one (pair, oracle participant)."""

    __tablename__ = "oracle_health_rollup"


class SummaryWindowModel(Base):
    """Window ledger: per-audience completion flags for one window."""

    __tablename__ = "summary_windows"

    window_start: Mapped[int] = mapped_column(Integer, primary_key=True)
    window_end: Mapped[int] = mapped_column(Integer, nullable=False)
    owners_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admins_oracle_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admins_ds_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[float | None] = mapped_column(Float, nullable=True)
