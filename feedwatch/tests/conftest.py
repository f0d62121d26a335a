"""Shared fixtures: in-memory store, static registry, fixed clock, recording notifier."""

from __future__ import annotations

import pytest

from feedwatch.src.AlertManager import AlertManager
from feedwatch.src.HealthRollup import HealthRollup
from feedwatch.src.Notifier import Delivery, Notifier
from feedwatch.src.Registry import StaticRegistry
from feedwatch.src.RunLedger import RunLedger
from feedwatch.src.SnapshotRecorder import SnapshotRecorder
from feedwatch.src.Store import Store
from feedwatch.src.Thresholds import Thresholds

CONTRACT = "0x" + "11" * 20
VALIDATOR = "0x" + "22" * 20
OTHER_VALIDATOR = "0x" + "33" * 20
ADMIN = "100"
OWNER = "200"

# 2023-11-14T20:00:00Z, aligned to a 4h window.
T0 = 1_699_992_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingNotifier(Notifier):
    """Records every send; recipients in ``unreachable`` are undeliverable."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.unreachable: set[str] = set()
        self.failing: set[str] = set()

    async def send(self, recipient_id: str, text: str) -> Delivery:
        if recipient_id in self.failing:
            raise RuntimeError("transport down")
        if recipient_id in self.unreachable:
            return Delivery.UNDELIVERABLE
        self.sent.append((recipient_id, text))
        return Delivery.DELIVERED

    def texts_for(self, recipient_id: str) -> list[str]:
        return [text for rid, text in self.sent if rid == recipient_id]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store():
    s = Store("sqlite://")
    s.create_all()
    yield s
    s.dispose()


@pytest.fixture
def registry() -> StaticRegistry:
    reg = StaticRegistry()
    reg.add_recipient(ADMIN, "ops", is_admin=True)
    reg.add_recipient(OWNER, "alice")
    pair = reg.add_pair(50, CONTRACT, label="XDC/USD")
    for source in ("a", "b", "c", "d"):
        reg.add_source(pair, source, url=f"https://{source}.example/price", response_path="price")
    reg.add_participant(pair, VALIDATOR, owners=[OWNER])
    return reg


@pytest.fixture
def pair(registry):
    return registry.active_pairs()[0]


@pytest.fixture
def thresholds() -> Thresholds:
    return Thresholds(
        outlier_pct=0.05,
        freshness_sec=10800,
        stall_flat_pct=0.001,
        stall_market_move_pct=0.02,
        stall_min_span_sec=3600,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def alerts(clock) -> AlertManager:
    return AlertManager(clock)


@pytest.fixture
def rollup(thresholds, clock) -> HealthRollup:
    return HealthRollup(thresholds, clock)


@pytest.fixture
def recorder(store, registry, alerts, rollup, clock) -> SnapshotRecorder:
    return SnapshotRecorder(store, registry, alerts, rollup, clock)


@pytest.fixture
def runs(store, clock) -> RunLedger:
    return RunLedger(store, clock)
