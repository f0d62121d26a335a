"""Integration tests for FeedMonitor with fake producers."""

import pytest

from feedwatch.src.BatchFetchCoordinator import FetchResult
from feedwatch.src.FeedMonitor import FeedMonitor
from feedwatch.src.SummaryDispatcher import DispatchStatus
from feedwatch.src.WindowLedger import Audience
from feedwatch.tests.conftest import OWNER, T0, VALIDATOR


class FakeCoordinator:
    """Records a fixed price per source, or raises."""

    def __init__(self, prices: dict, fail: bool = False) -> None:
        self.prices = prices
        self.fail = fail
        self.closed = False

    async def fetch_and_record(self, run_id, recorder, pairs=None):
        if self.fail:
            raise RuntimeError("network down")
        results = []
        for pair in recorder.registry.active_pairs():
            for source, price in self.prices.items():
                recorder.record_snapshot(run_id, pair, source, price)
                results.append(FetchResult(pair, source, price=price))
        return results

    async def close(self) -> None:
        self.closed = True


class FakeReader:
    """Records one submission for the validator, unless silent."""

    def __init__(self, price: float | None) -> None:
        self.price = price

    async def read_and_record(self, run_id, recorder, pairs=None) -> int:
        if self.price is None:
            return 0
        written = 0
        for pair in recorder.registry.active_pairs():
            written += recorder.record_oracle_snapshot(run_id, pair, VALIDATOR, self.price)
        return written


@pytest.fixture
def make_monitor(store, registry, thresholds, notifier, clock):
    def make(coordinator, reader) -> FeedMonitor:
        return FeedMonitor(
            store,
            registry,
            thresholds,
            notifier=notifier,
            clock=clock,
            coordinator=coordinator,
            oracle_reader=reader,
        )

    return make


class TestSweep:
    """Test one full sweep."""

    async def test_sweep(self, make_monitor) -> None:
        """Both runs are recorded, aggregated and closed."""
        monitor = make_monitor(FakeCoordinator({"a": 100.0, "b": 101.0, "c": 99.0}), FakeReader(100.0))

        report = await monitor.sweep()

        assert report.aggregates_written == 1
        assert report.oracle_snapshots == 1
        assert len(report.fetches) == 3
        assert report.oracle_run_id > report.datasource_run_id
        assert monitor.runs.get(report.datasource_run_id).ended_at is not None
        assert monitor.runs.get(report.oracle_run_id).ended_at is not None

    async def test_failing_step_isolated(self, make_monitor) -> None:
        """A failing fetch still closes the run and lets the oracle run go ahead."""
        monitor = make_monitor(FakeCoordinator({}, fail=True), FakeReader(100.0))

        report = await monitor.sweep()

        assert report.fetches == []
        assert report.oracle_snapshots == 1
        assert monitor.runs.get(report.datasource_run_id).ended_at is not None

    async def test_close(self, make_monitor) -> None:
        """Closing releases the producers."""
        coordinator = FakeCoordinator({})
        monitor = make_monitor(coordinator, FakeReader(None))
        await monitor.close()
        assert coordinator.closed


class TestEndToEnd:
    """Test sweeps over a whole window."""

    async def test_silent_validator_summarised(self, make_monitor, notifier, clock) -> None:
        """A validator that never submits is alerted and reported in the next window."""
        monitor = make_monitor(FakeCoordinator({"a": 100.0, "b": 101.0}), FakeReader(None))

        for _ in range(4):
            await monitor.sweep()
            clock.advance(3600)

        report = await monitor.sweep()

        with monitor.store.session() as session:
            assert len(monitor.alerts.list_open(session, recipient_id=OWNER)) == 1
        outcomes = {(o.window_start, o.audience): o.status for o in report.summaries}
        assert outcomes[(int(T0), Audience.OWNERS)] is DispatchStatus.SENT
        assert any("Oracle Health Summary" in text for text in notifier.texts_for(OWNER))
