"""Unit tests for DatasourceStallDetector."""

import dataclasses

import pytest
from sqlalchemy import select

from feedwatch.src.DatasourceStallDetector import DatasourceStallDetector, stall_alert_type
from feedwatch.src.Schema import DatasourceHealthRollupModel

from feedwatch.tests.conftest import ADMIN, CONTRACT

STEP = 9000  # 2.5h between runs


@pytest.fixture
def detector(store, registry, alerts, rollup, thresholds, notifier, clock) -> DatasourceStallDetector:
    return DatasourceStallDetector(store, registry, alerts, rollup, thresholds, notifier, clock)


def _round(recorder, runs, clock, pair, prices) -> int:
    run_id = runs.begin("datasource")
    for source, price in prices.items():
        recorder.record_snapshot(run_id, pair, source, price)
    runs.end(run_id)
    return run_id


def _flat_source_rounds(recorder, runs, clock, pair) -> list[int]:
    """Source 'a' stays at ~100 while the others move 100 -> 110 over 5h."""
    run_ids = []
    for a, market in ((100.00, 100.0), (100.01, 105.0), (100.00, 110.0)):
        run_ids.append(_round(recorder, runs, clock, pair, {"a": a, "b": market, "c": market, "d": market}))
        clock.advance(STEP)
    return run_ids


class TestStallClassification:
    """Test the flat-vs-market classification."""

    def test_flat_source_is_stalled(self, detector, recorder, runs, clock, pair) -> None:
        """Scenario B: flat source against a 10% market move is stalled."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)

        result = detector.evaluate(run_ids[-1], pair, "a")

        assert result is not None
        assert result.evaluation.stalled
        assert result.evaluation.span_sec == pytest.approx(2 * STEP)
        assert result.evaluation.market_move_pct == pytest.approx(0.10)
        assert result.transition.consec_bad == 1
        assert not result.transition.is_open

    def test_moving_source_is_ok(self, detector, recorder, runs, clock, pair) -> None:
        """A source that follows the market is not stalled."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)

        result = detector.evaluate(run_ids[-1], pair, "b")

        assert result is not None
        assert not result.evaluation.stalled

    def test_short_history_not_judged(self, detector, recorder, runs, clock, pair) -> None:
        """Fewer than three samples yields no evaluation."""
        run_id = _round(recorder, runs, clock, pair, {"a": 100.0, "b": 100.0})
        assert detector.evaluate(run_id, pair, "a") is None

    def test_span_too_short_not_judged(self, detector, recorder, runs, clock, pair) -> None:
        """Samples closer together than the minimum span are not judged."""
        detector.thresholds = dataclasses.replace(detector.thresholds, stall_min_span_sec=86400)
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)
        assert detector.evaluate(run_ids[-1], pair, "a") is None


class TestStallHysteresis:
    """Test alert opening and clearing."""

    async def test_opens_on_third_consecutive(self, detector, recorder, runs, clock, store, alerts, pair) -> None:
        """No alert until the third consecutive stalled evaluation."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)
        await detector.run(run_ids[-1])

        for a, market in ((100.00, 115.0), (100.01, 120.0)):
            with store.session() as session:
                assert alerts.get_open(session, ADMIN, str(pair), stall_alert_type("a")) is None
            run_id = _round(recorder, runs, clock, pair, {"a": a, "b": market, "c": market, "d": market})
            results = {r.source: r for r in await detector.run(run_id)}
            clock.advance(STEP)

        assert results["a"].transition.opened
        with store.session() as session:
            alert = alerts.get_open(session, ADMIN, str(pair), stall_alert_type("a"))
            assert alert is not None
            assert alert.extra["consecutive"] == 3
            assert alert.extra["first_bad_run_id"] == run_ids[-1]

    async def test_clears_after_good_streak(self, detector, recorder, runs, clock, store, alerts, pair) -> None:
        """The alert resolves after STALL_CLEAR_CONSEC good evaluations."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)
        await detector.run(run_ids[-1])
        for a, market in ((100.00, 115.0), (100.01, 120.0)):
            run_id = _round(recorder, runs, clock, pair, {"a": a, "b": market, "c": market, "d": market})
            await detector.run(run_id)
            clock.advance(STEP)

        cleared = []
        for price in (125.0, 130.0, 135.0):
            run_id = _round(recorder, runs, clock, pair, {"a": price, "b": price, "c": price, "d": price})
            cleared.append({r.source: r for r in await detector.run(run_id)}["a"].transition.cleared)
            clock.advance(STEP)

        assert cleared == [False, False, True]
        with store.session() as session:
            assert alerts.get_open(session, ADMIN, str(pair), stall_alert_type("a")) is None

    def test_replayed_run_is_not_counted(self, detector, recorder, runs, clock, pair) -> None:
        """Evaluating the same run twice leaves the streak unchanged."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)

        first = detector.evaluate(run_ids[-1], pair, "a")
        second = detector.evaluate(run_ids[-1], pair, "a")

        assert first.transition.consec_bad == 1
        assert second.transition.consec_bad == 1
        assert second.transition.replayed


class TestStallRollup:
    """Test rollup hits from stall evaluations."""

    def test_stalled_hit_counted_once(self, detector, recorder, runs, clock, store, pair) -> None:
        """A stalled evaluation adds one stalled hit, even when replayed."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)
        detector.evaluate(run_ids[-1], pair, "a")
        detector.evaluate(run_ids[-1], pair, "a")

        with store.session() as session:
            rows = session.scalars(
                select(DatasourceHealthRollupModel).where(DatasourceHealthRollupModel.entity_id == "a")
            ).all()
        assert sum(r.stalled_hits for r in rows) == 1
        assert all(r.entity_id == "a" for r in rows)


async def _open_stall(detector, recorder, runs, clock, pair) -> None:
    """Three stalled runs in a row for source 'a'."""
    run_ids = _flat_source_rounds(recorder, runs, clock, pair)
    await detector.run(run_ids[-1])
    for a, market in ((100.00, 115.0), (100.01, 120.0)):
        run_id = _round(recorder, runs, clock, pair, {"a": a, "b": market, "c": market, "d": market})
        await detector.run(run_id)
        clock.advance(STEP)


class TestStallNotification:
    """Test the per-run admin stall message."""

    async def test_sent_once_on_open(self, detector, recorder, runs, clock, notifier, pair) -> None:
        """Admins hear about a stall when it opens, not on later refreshes."""
        await _open_stall(detector, recorder, runs, clock, pair)

        texts = notifier.texts_for(ADMIN)
        assert len(texts) == 1
        assert texts[0].startswith("🚨 **Datasource stalls detected (new this run)**")
        assert "**a**: 1 new stall(s):" in texts[0]
        assert CONTRACT.lower() in texts[0]
        assert "XDC/USD" in texts[0]

        run_id = _round(recorder, runs, clock, pair, {"a": 100.00, "b": 125.0, "c": 125.0, "d": 125.0})
        results = {r.source: r for r in await detector.run(run_id)}

        assert results["a"].transition.is_open
        assert results["a"].opened_for == []
        assert len(notifier.texts_for(ADMIN)) == 1

    async def test_no_message_before_open(self, detector, recorder, runs, clock, notifier, pair) -> None:
        """A stall candidate below the open threshold stays silent."""
        run_ids = _flat_source_rounds(recorder, runs, clock, pair)
        await detector.run(run_ids[-1])
        assert notifier.sent == []

    async def test_without_notifier(self, store, registry, alerts, rollup, thresholds, clock, recorder, runs, pair) -> None:
        """Without a notifier the alert still opens but nothing is sent."""
        silent = DatasourceStallDetector(store, registry, alerts, rollup, thresholds, clock=clock)
        await _open_stall(silent, recorder, runs, clock, pair)

        with store.session() as session:
            assert alerts.get_open(session, ADMIN, str(pair), stall_alert_type("a")) is not None
