"""Unit tests for SnapshotRecorder."""

import pytest
from sqlalchemy import select

from feedwatch.src.Schema import DatasourceHealthRollupModel, DatasourceSnapshotModel, OracleSnapshotModel
from feedwatch.src.SnapshotRecorder import (
    datasource_run_at,
    datasource_run_medians,
    fetch_error_alert_type,
    recent_datasource_samples,
)
from feedwatch.tests.conftest import ADMIN, VALIDATOR


class TestRecordSnapshot:
    """Test datasource snapshot intake."""

    def test_duplicate_ignored(self, recorder, runs, store, pair) -> None:
        """A second snapshot for the same run and source is ignored."""
        run_id = runs.begin("datasource")
        assert recorder.record_snapshot(run_id, pair, "A", 100.0) is True
        assert recorder.record_snapshot(run_id, pair, "a", 101.0) is False

        with store.session() as session:
            rows = session.scalars(select(DatasourceSnapshotModel)).all()
        assert len(rows) == 1
        assert rows[0].price == 100.0
        assert rows[0].source == "a"

    @pytest.mark.parametrize("price", [0.0, -1.0, float("nan"), float("inf")])
    def test_invalid_price(self, recorder, runs, pair, price) -> None:
        """Unusable prices raise ValueError."""
        with pytest.raises(ValueError):
            recorder.record_snapshot(runs.begin("datasource"), pair, "a", price)

    def test_oracle_duplicate_ignored(self, recorder, runs, store, pair) -> None:
        """Oracle snapshots are also unique per run and participant."""
        run_id = runs.begin("oracle")
        assert recorder.record_oracle_snapshot(run_id, pair, VALIDATOR.upper().replace("0X", "0x"), 1.0)
        assert not recorder.record_oracle_snapshot(run_id, pair, VALIDATOR, 2.0)

        with store.session() as session:
            row = session.scalars(select(OracleSnapshotModel)).one()
        assert row.participant == VALIDATOR


class TestFetchErrors:
    """Test fetch error handling."""

    def test_opens_alert_and_counts(self, recorder, runs, store, alerts, pair) -> None:
        """A fetch error opens an admin alert and counts a fetch_error hit."""
        run_id = runs.begin("datasource")
        recorder.record_fetch_error(run_id, pair, "b", "HTTP 500: oops")

        with store.session() as session:
            alert = alerts.get_open(session, ADMIN, str(pair), fetch_error_alert_type("b"))
            row = session.scalars(select(DatasourceHealthRollupModel)).one()
        assert alert is not None
        assert alert.extra["detail"] == "HTTP 500: oops"
        assert "XDC/USD" in alert.message
        assert row.fetch_error_hits == 1
        assert row.entity_id == "b"

    def test_repeated_error_keeps_one_alert(self, recorder, runs, store, alerts, pair) -> None:
        """Errors in later runs refresh the same alert."""
        for _ in range(3):
            recorder.record_fetch_error(runs.begin("datasource"), pair, "b", "timeout")

        with store.session() as session:
            assert len(alerts.list_open(session, alert_type=fetch_error_alert_type("b"))) == 1

    def test_snapshot_resolves_alert(self, recorder, runs, store, alerts, pair) -> None:
        """The next successful snapshot resolves the fetch error alert."""
        recorder.record_fetch_error(runs.begin("datasource"), pair, "b", "timeout")
        recorder.record_snapshot(runs.begin("datasource"), pair, "b", 100.0)

        with store.session() as session:
            assert alerts.get_open(session, ADMIN, str(pair), fetch_error_alert_type("b")) is None


class TestQueries:
    """Test the detector queries."""

    def test_recent_samples_newest_first(self, recorder, runs, store, clock, pair) -> None:
        """Samples come back newest first, limited."""
        for price in (1.0, 2.0, 3.0, 4.0):
            recorder.record_snapshot(runs.begin("datasource"), pair, "a", price)
            clock.advance(60)

        with store.session() as session:
            samples = recent_datasource_samples(session, pair, "a", limit=3)
        assert [s.price for s in samples] == [4.0, 3.0, 2.0]

    def test_run_medians_and_lookup(self, recorder, runs, store, clock, pair) -> None:
        """Per-run medians and the run in effect at a timestamp."""
        first = runs.begin("datasource")
        for source, price in {"a": 1.0, "b": 2.0, "c": 9.0}.items():
            recorder.record_snapshot(first, pair, source, price)
        at_first = clock.now
        clock.advance(600)
        second = runs.begin("datasource")
        recorder.record_snapshot(second, pair, "a", 5.0)

        with store.session() as session:
            assert datasource_run_medians(session, pair, [first, second, 999]) == {first: 2.0, second: 5.0}
            assert datasource_run_at(session, pair, at_first + 1) == first
            assert datasource_run_at(session, pair, clock.now) == second
            assert datasource_run_at(session, pair, at_first - 1) is None
