"""Unit tests for OracleStallDetector."""

import dataclasses

import pytest
from sqlalchemy import select

from feedwatch.src.HealthRollup import KIND_ORACLE
from feedwatch.src.OracleStallDetector import (
    ORACLE_STALL,
    REASON_FLAT,
    REASON_INACTIVITY,
    OracleStallDetector,
    oracle_entity_key,
)
from feedwatch.src.Schema import AlertModel, OracleHealthRollupModel
from feedwatch.tests.conftest import OWNER, VALIDATOR

STEP = 9000


@pytest.fixture
def detector(store, registry, alerts, rollup, thresholds, notifier, clock) -> OracleStallDetector:
    return OracleStallDetector(store, registry, alerts, rollup, thresholds, notifier, clock)


def _round(recorder, runs, pair, market, submission) -> int:
    """One datasource run at ``market`` followed by one oracle run."""
    ds_run = runs.begin("datasource")
    for source in ("a", "b", "c", "d"):
        recorder.record_snapshot(ds_run, pair, source, market)
    runs.end(ds_run)

    oracle_run = runs.begin("oracle")
    if submission is not None:
        recorder.record_oracle_snapshot(oracle_run, pair, VALIDATOR, submission)
    runs.end(oracle_run)
    return oracle_run


def _open_alert(store, alerts, pair):
    with store.session() as session:
        return alerts.get_open(session, OWNER, oracle_entity_key(pair, VALIDATOR), ORACLE_STALL)


class TestInactivity:
    """Test the freshness check."""

    def test_never_submitted(self, detector, runs, store, alerts, pair) -> None:
        """Scenario C: no submission is inactive at once; the alert opens on the second run."""
        first = detector.evaluate(runs.begin("oracle"), pair, VALIDATOR)

        assert first.reason == REASON_INACTIVITY
        assert first.age_sec is None
        assert first.transition.consec_bad == 1
        assert not first.transition.is_open
        assert _open_alert(store, alerts, pair) is None

        second = detector.evaluate(runs.begin("oracle"), pair, VALIDATOR)

        assert second.transition.opened
        assert second.opened_for == [OWNER]
        alert = _open_alert(store, alerts, pair)
        assert alert is not None
        assert alert.extra["reason"] == REASON_INACTIVITY
        assert alert.extra["validator"] == VALIDATOR
        assert "last_seen_ts" not in alert.extra

    def test_old_submission_is_inactive(self, detector, recorder, runs, clock, pair) -> None:
        """A submission older than the freshness window is inactive."""
        _round(recorder, runs, pair, 100.0, 100.0)
        clock.advance(4 * 3600)

        result = detector.evaluate(runs.begin("oracle"), pair, VALIDATOR)

        assert result.reason == REASON_INACTIVITY
        assert result.age_sec == pytest.approx(4 * 3600)

    def test_inactivity_rollup(self, detector, runs, store, pair) -> None:
        """Inactive evaluations count as stalled hits; open_at_end follows the alert."""
        detector.evaluate(runs.begin("oracle"), pair, VALIDATOR)
        with store.session() as session:
            row = session.scalars(select(OracleHealthRollupModel)).one()
            assert row.stalled_hits == 1
            assert row.open_at_end is False

        detector.evaluate(runs.begin("oracle"), pair, VALIDATOR)
        with store.session() as session:
            row = session.scalars(select(OracleHealthRollupModel)).one()
            assert row.stalled_hits == 2
            assert row.open_at_end is True

    def test_fresh_but_short_history(self, detector, recorder, runs, pair) -> None:
        """A fresh participant with fewer than three submissions is not judged."""
        run_id = _round(recorder, runs, pair, 100.0, 100.0)
        assert detector.evaluate(run_id, pair, VALIDATOR) is None


class TestFlatStall:
    """Test the flat-vs-market classification for participants."""

    def _flat_rounds(self, recorder, runs, clock, pair) -> list[int]:
        run_ids = []
        for market, submission in ((100.0, 100.0), (105.0, 100.01), (110.0, 100.0)):
            run_ids.append(_round(recorder, runs, pair, market, submission))
            clock.advance(STEP)
        clock.advance(-STEP)
        return run_ids

    def test_flat_participant_is_stalled(self, detector, recorder, runs, clock, pair) -> None:
        """Flat submissions against a 10% datasource move are stalled."""
        run_ids = self._flat_rounds(recorder, runs, clock, pair)

        result = detector.evaluate(run_ids[-1], pair, VALIDATOR)

        assert result.reason == REASON_FLAT
        assert result.evaluation.stalled
        assert result.evaluation.market_move_pct == pytest.approx(0.10)
        assert result.evaluation.median_late == pytest.approx(110.0)
        assert not result.transition.is_open

    def test_opens_then_clears_with_final_metrics(
        self, detector, recorder, runs, clock, store, alerts, pair
    ) -> None:
        """Two flat evaluations open the alert; one healthy one resolves it with final metrics."""
        run_ids = self._flat_rounds(recorder, runs, clock, pair)
        detector.evaluate(run_ids[-1], pair, VALIDATOR)

        clock.advance(STEP)
        run_id = _round(recorder, runs, pair, 115.0, 100.0)
        opened = detector.evaluate(run_id, pair, VALIDATOR)

        assert opened.transition.opened
        assert opened.opened_for == [OWNER]
        alert = _open_alert(store, alerts, pair)
        assert alert.extra["reason"] == REASON_FLAT
        assert alert.extra["first_bad_run_id"] == run_ids[-1]

        clock.advance(STEP)
        clear_run = _round(recorder, runs, pair, 120.0, 120.0)
        cleared = detector.evaluate(clear_run, pair, VALIDATOR)

        assert cleared.transition.cleared
        assert _open_alert(store, alerts, pair) is None
        with store.session() as session:
            resolved = session.scalars(select(AlertModel)).one()
            assert resolved.resolved_at == clock.now
            assert resolved.extra["resolved_run_id"] == clear_run
            assert resolved.extra["reason"] == REASON_FLAT
            assert "last_dev_pct" in resolved.extra

    def test_no_market_for_samples(self, detector, recorder, runs, clock, pair) -> None:
        """Submissions without any datasource run before them are not judged."""
        for submission in (100.0, 100.0, 100.0):
            run_id = runs.begin("oracle")
            recorder.record_oracle_snapshot(run_id, pair, VALIDATOR, submission)
            clock.advance(STEP / 2)
        clock.advance(-STEP / 2)

        assert detector.evaluate(run_id, pair, VALIDATOR) is None


class TestRealtimeNotify:
    """Test the realtime notification switch."""

    async def test_silent_by_default(self, detector, runs, notifier) -> None:
        """Without ORACLE_REALTIME_NOTIFY owners hear nothing on open."""
        await detector.run(runs.begin("oracle"))
        results = await detector.run(runs.begin("oracle"))

        assert results[0].transition.opened
        assert results[0].messages
        assert notifier.sent == []

    async def test_notifies_owner_once(self, detector, runs, notifier) -> None:
        """With ORACLE_REALTIME_NOTIFY the owner is told once, when the alert opens."""
        detector.thresholds = dataclasses.replace(detector.thresholds, oracle_realtime_notify=True)

        for _ in range(3):
            await detector.run(runs.begin("oracle"))

        texts = notifier.texts_for(OWNER)
        assert len(texts) == 1
        assert "Oracle Stalled (Inactive)" in texts[0]
        assert "alice" in texts[0]

    async def test_unowned_participant_opens_nothing(self, detector, registry, runs, store, alerts, pair) -> None:
        """A stalled participant without owners is tracked but alerts nobody."""
        other = registry.add_participant(pair, "0x" + "44" * 20)

        for _ in range(2):
            results = await detector.run(runs.begin("oracle"))

        by_participant = {r.participant: r for r in results}
        assert by_participant[other].transition.is_open
        assert by_participant[other].opened_for == []
        with store.session() as session:
            keys = {a.entity_key for a in alerts.list_open(session, alert_type=ORACLE_STALL)}
        assert keys == {oracle_entity_key(pair, VALIDATOR)}
        with store.session() as session:
            assert detector.tracker.get_state(session, KIND_ORACLE, pair, other).is_open
