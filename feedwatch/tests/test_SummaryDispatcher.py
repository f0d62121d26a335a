"""Unit tests for SummaryDispatcher."""

import dataclasses

import pytest

from feedwatch.src.HealthRollup import KIND_DATASOURCE, KIND_ORACLE, Outcome
from feedwatch.src.Schema import SummaryWindowModel
from feedwatch.src.SummaryDispatcher import DispatchStatus, SummaryDispatcher
from feedwatch.src.WindowLedger import Audience
from feedwatch.tests.conftest import ADMIN, OTHER_VALIDATOR, OWNER, T0, VALIDATOR

SIZE = 14400


@pytest.fixture
def dispatcher(store, registry, notifier, thresholds, clock) -> SummaryDispatcher:
    return SummaryDispatcher(store, registry, notifier, thresholds, clock)


def _oracle(store, rollup, pair, outcomes) -> None:
    with store.session() as session:
        for run_id, outcome in enumerate(outcomes, start=1):
            rollup.bump(session, KIND_ORACLE, pair, VALIDATOR, outcome, run_id=run_id, at=T0 + run_id * 60)


def _datasource(store, rollup, pair, outcomes) -> None:
    with store.session() as session:
        for run_id, outcome in enumerate(outcomes, start=1):
            rollup.bump(session, KIND_DATASOURCE, pair, "a", outcome, run_id=run_id, at=T0 + run_id * 60)


def _flags(store) -> tuple[bool, bool, bool]:
    with store.session() as session:
        window = session.get(SummaryWindowModel, int(T0))
        return window.owners_done, window.admins_oracle_done, window.admins_ds_done


def _by_audience(outcomes) -> dict:
    return {(o.window_start, o.audience): o for o in outcomes}


class TestDispatch:
    """Test eligibility and flags."""

    async def test_sends_and_sets_flags(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """Windows with events reach owners and admins once; quiet audiences wait."""
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.OK])
        _datasource(store, rollup, pair, [Outcome.OK, Outcome.OK])
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())

        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.SENT
        assert outcomes[(int(T0), Audience.ADMINS_ORACLE)].status is DispatchStatus.SENT
        assert outcomes[(int(T0), Audience.ADMINS_DATASOURCE)].status is DispatchStatus.QUIET
        assert _flags(store) == (True, True, False)
        owner_texts = notifier.texts_for(OWNER)
        assert owner_texts[0].startswith("🧭 Oracle Health Summary")
        assert any("(1/1)" in text for text in owner_texts)
        admin_texts = notifier.texts_for(ADMIN)
        assert admin_texts[0].startswith("📊 Health Summary (Admin)")
        assert admin_texts[-1].startswith("✅ All-green rollup")

        sent = len(notifier.sent)
        again = _by_audience(await dispatcher.dispatch())
        assert (int(T0), Audience.OWNERS) not in again
        assert again[(int(T0), Audience.ADMINS_DATASOURCE)].status is DispatchStatus.QUIET
        assert len(notifier.sent) == sent

    async def test_incomplete_window_retried(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """Scenario D: an incomplete window is skipped until it gains evaluations."""
        _oracle(store, rollup, pair, [Outcome.STALLED])
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())
        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.INCOMPLETE
        assert outcomes[(int(T0), Audience.ADMINS_ORACLE)].status is DispatchStatus.INCOMPLETE
        assert _flags(store) == (False, False, False)
        assert notifier.sent == []

        with store.session() as session:
            rollup.bump(session, KIND_ORACLE, pair, VALIDATOR, Outcome.STALLED, run_id=2, at=T0 + 600)

        outcomes = _by_audience(await dispatcher.dispatch())
        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.SENT
        assert _flags(store)[:2] == (True, True)

    async def test_window_not_closed(self, dispatcher, store, rollup, notifier, pair) -> None:
        """Nothing is sent for the window still in progress."""
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.STALLED])

        outcomes = await dispatcher.dispatch()

        assert all(o.window_start != int(T0) for o in outcomes)
        assert notifier.sent == []

    async def test_quiet_owner_window(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """An all-ok window sends nothing and leaves the owners flag unset."""
        _oracle(store, rollup, pair, [Outcome.OK, Outcome.OK])
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())

        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.QUIET
        assert outcomes[(int(T0), Audience.ADMINS_ORACLE)].status is DispatchStatus.QUIET
        assert _flags(store)[:2] == (False, False)
        assert notifier.sent == []

    async def test_send_without_events(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """With SUMMARY_ONLY_IF_EVENTS off quiet windows are sent too."""
        dispatcher.thresholds = dataclasses.replace(dispatcher.thresholds, summary_only_if_events=False)
        _oracle(store, rollup, pair, [Outcome.OK, Outcome.OK])
        _datasource(store, rollup, pair, [Outcome.OK, Outcome.OK])
        clock.advance(SIZE + 60)

        await dispatcher.dispatch()

        assert _flags(store) == (True, True, True)
        assert any("All-green rollup: 1 sources" in text for text in notifier.texts_for(ADMIN))

    async def test_partial_windows_allowed(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """With SUMMARY_SKIP_PARTIAL_WINDOWS off the completeness gate is bypassed."""
        dispatcher.ledger.thresholds = dataclasses.replace(
            dispatcher.ledger.thresholds, summary_skip_partial_windows=False
        )
        _oracle(store, rollup, pair, [Outcome.STALLED])
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())

        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.SENT

    async def test_unowned_window_completes(self, dispatcher, registry, store, rollup, notifier, clock, pair) -> None:
        """A window whose participants have no owner sets the owners flag without sending."""
        dispatcher.thresholds = dataclasses.replace(dispatcher.thresholds, summary_only_if_events=False)
        registry.add_participant(pair, OTHER_VALIDATOR)
        with store.session() as session:
            for run_id in (1, 2):
                rollup.bump(session, KIND_ORACLE, pair, OTHER_VALIDATOR, Outcome.OK, run_id=run_id, at=T0 + run_id * 60)
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())

        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.UNOWNED
        assert _flags(store)[0] is True
        assert notifier.texts_for(OWNER) == []
        again = _by_audience(await dispatcher.dispatch())
        assert (int(T0), Audience.OWNERS) not in again


class TestDeliveryPolicy:
    """Test per-recipient delivery handling."""

    async def test_unreachable_owner_disabled(self, dispatcher, registry, store, rollup, notifier, clock, pair) -> None:
        """An unreachable owner is disabled; the window still completes."""
        notifier.unreachable.add(OWNER)
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.STALLED])
        clock.advance(SIZE + 60)

        await dispatcher.dispatch()

        assert not registry.accepts_notifications(OWNER)
        assert _flags(store)[0] is True

    async def test_unreachable_admin_kept(self, dispatcher, registry, store, rollup, notifier, clock, pair) -> None:
        """Administrators are never disabled."""
        notifier.unreachable.add(ADMIN)
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.STALLED])
        clock.advance(SIZE + 60)

        await dispatcher.dispatch()

        assert registry.accepts_notifications(ADMIN)

    async def test_failure_does_not_block_others(self, dispatcher, store, rollup, notifier, clock, pair) -> None:
        """A failing send for one recipient still lets the others through."""
        notifier.failing.add(ADMIN)
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.STALLED])
        clock.advance(SIZE + 60)

        await dispatcher.dispatch()

        assert notifier.texts_for(OWNER)
        assert _flags(store)[:2] == (True, True)

    async def test_opted_out_owner_skipped(self, dispatcher, registry, store, rollup, notifier, clock, pair) -> None:
        """Owners who opted out get nothing, and the owners flag stays unset."""
        registry.disable_notifications(OWNER)
        _oracle(store, rollup, pair, [Outcome.STALLED, Outcome.STALLED])
        clock.advance(SIZE + 60)

        outcomes = _by_audience(await dispatcher.dispatch())

        assert outcomes[(int(T0), Audience.OWNERS)].status is DispatchStatus.QUIET
        assert notifier.texts_for(OWNER) == []
        assert notifier.texts_for(ADMIN)
