"""OracleStallDetector: Detects inactive or frozen oracle participants.

Per (pair, participant):

1. **Inactivity.** If the newest submission is older than ``FRESHNESS_SEC``
   (or none exists) the evaluation is bad with reason ``inactivity``,
   regardless of prices.
2. **Flat vs market.** Otherwise the participant's last three submissions
   are judged with :func:`evaluate_stall`. The market basis is the
   datasource median at the datasource runs in effect when the oldest and
   newest of those submissions were observed; oracle participants are
   compared against the datasource layer, not against each other.

Hysteresis uses ``ORACLE_OPEN_CONSEC`` / ``ORACLE_CLEAR_CONSEC``. On the
transition into stalled an ``ORACLE_STALL`` alert is opened for every owner
of the participant; on the transition out, final deviation metrics are
stamped into each owner's payload before it is resolved. Owners are
notified immediately only when ``ORACLE_REALTIME_NOTIFY`` is set; otherwise
the window summaries are the notification path.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .AlertManager import SEVERITY_WARNING, AlertManager
from .AlertPayloads import OracleStallPayload
from .HealthRollup import KIND_ORACLE, HealthRollup, Outcome, RollupMetrics
from .Notifier import Notifier, deliver
from .PairKey import PairKey
from .Registry import Registry
from .SnapshotRecorder import datasource_run_at, datasource_run_medians, recent_oracle_samples
from .StallMath import (
    SAMPLES_REQUIRED,
    Sample,
    StallEvaluation,
    evaluate_stall,
    format_pct,
    format_span,
)
from .StallTracker import StallTracker, StallTransition
from .Store import Store
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)

ORACLE_STALL = "ORACLE_STALL"
REASON_INACTIVITY = "inactivity"
REASON_FLAT = "flat"


def oracle_entity_key(pair: PairKey, participant: str) -> str:
    return f"{pair}:{participant.lower()}"


@dataclass
class OracleStallResult:
    """One judged evaluation of one (pair, participant).

    :ivar reason: ``inactivity`` or ``flat``; None when healthy.
    :ivar opened_for: Owners whose alert was opened by this evaluation.
    :ivar messages: Realtime messages queued per owner.
    """

    pair: PairKey
    participant: str
    transition: StallTransition
    reason: str | None = None
    evaluation: StallEvaluation | None = None
    age_sec: float | None = None
    opened_for: list[str] = field(default_factory=list)
    messages: list[tuple[str, str]] = field(default_factory=list)


class OracleStallDetector:
    """Stall and inactivity detection for oracle participants."""

    def __init__(
        self,
        store: Store,
        registry: Registry,
        alerts: AlertManager,
        rollup: HealthRollup,
        thresholds: Thresholds,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.alerts = alerts
        self.rollup = rollup
        self.thresholds = thresholds
        self.notifier = notifier
        self.tracker = StallTracker(thresholds.oracle_open_consec, thresholds.oracle_clear_consec)
        self._clock = clock

    async def run(self, run_id: int, pairs: list[PairKey] | None = None) -> list[OracleStallResult]:
        """Evaluate every (pair, participant), then send realtime messages."""
        results: list[OracleStallResult] = []
        for pair in pairs if pairs is not None else self.registry.active_pairs():
            for participant in self.registry.participants_for(pair):
                try:
                    result = self.evaluate(run_id, pair, participant)
                except Exception:
                    logger.exception(f"Oracle evaluation failed for {participant} on {pair}")
                    continue
                if result is not None:
                    results.append(result)

        if self.thresholds.oracle_realtime_notify and self.notifier is not None:
            for result in results:
                for recipient_id, text in result.messages:
                    await deliver(self.notifier, self.registry, recipient_id, text)

        logger.debug(f"Oracle sweep done: {len(results)} participant evaluation(s)")
        return results

    def evaluate(self, run_id: int, pair: PairKey, participant: str) -> OracleStallResult | None:
        """Judge one participant; None when there is not enough history."""
        participant = participant.lower()
        now = self._clock()
        with self.store.session() as session:
            samples = recent_oracle_samples(session, pair, participant, SAMPLES_REQUIRED)
            age = now - samples[0].observed_at if samples else math.inf

            if age > self.thresholds.freshness_sec:
                return self._inactive(session, run_id, pair, participant, samples, age)

            if len(samples) < SAMPLES_REQUIRED:
                return None
            early_run = datasource_run_at(session, pair, samples[-1].observed_at)
            late_run = datasource_run_at(session, pair, samples[0].observed_at)
            if early_run is None or late_run is None:
                logger.debug(f"[oracle] {pair} {participant}: no datasource market for samples")
                return None
            medians = datasource_run_medians(session, pair, (early_run, late_run))
            evaluation = evaluate_stall(
                samples, medians.get(early_run), medians.get(late_run), self.thresholds
            )
            if evaluation is None:
                return None

            logger.debug(
                f"[oracle] {pair} {participant}: span={evaluation.span_sec:.0f}s "
                f"flat={evaluation.flat_range_pct:.6f} move={evaluation.market_move_pct:.6f} "
                f"stalled={evaluation.stalled}"
            )
            if evaluation.stalled:
                return self._flat(session, run_id, pair, participant, evaluation)
            return self._healthy(session, run_id, pair, participant, evaluation)

    def _inactive(
        self,
        session: Session,
        run_id: int,
        pair: PairKey,
        participant: str,
        samples: list[Sample],
        age: float,
    ) -> OracleStallResult:
        transition = self.tracker.update(session, KIND_ORACLE, pair, participant, True, run_id)
        self.rollup.bump(
            session, KIND_ORACLE, pair, participant, Outcome.STALLED,
            RollupMetrics(), run_id=run_id, open_at_end=transition.is_open,
        )
        result = OracleStallResult(
            pair, participant, transition, reason=REASON_INACTIVITY,
            age_sec=age if math.isfinite(age) else None,
        )
        if not transition.is_open:
            return result

        last = samples[0] if samples else None
        label = self.registry.label_for(pair)
        age_text = f"{round(age / 3600)}h ago" if math.isfinite(age) else "never"
        payload = OracleStallPayload(
            run_id=run_id,
            validator=participant,
            reason=REASON_INACTIVITY,
            last_seen_ts=last.observed_at if last else None,
            last_seen_run_id=last.run_id if last else None,
            age_sec=result.age_sec,
            first_bad_run_id=transition.first_bad_run_id,
            consecutive=transition.consec_bad,
        )
        message = f"Oracle inactive for {label}; last submission {age_text}."
        for owner in self._open_for_owners(session, pair, participant, message, payload, result):
            result.messages.append((
                owner,
                "\n".join([
                    "🚨 **Oracle Stalled (Inactive)**",
                    f"• Pair: {label}",
                    f"• Validator: `{participant}` ({self.registry.display_name(owner)})",
                    f"• Last submission: {age_text}",
                ]),
            ))
        return result

    def _flat(
        self,
        session: Session,
        run_id: int,
        pair: PairKey,
        participant: str,
        evaluation: StallEvaluation,
    ) -> OracleStallResult:
        transition = self.tracker.update(session, KIND_ORACLE, pair, participant, True, run_id)
        self.rollup.bump(
            session, KIND_ORACLE, pair, participant, Outcome.STALLED,
            self._metrics(evaluation), run_id=run_id, open_at_end=transition.is_open,
        )
        result = OracleStallResult(pair, participant, transition, reason=REASON_FLAT, evaluation=evaluation)
        if not transition.is_open:
            return result

        label = self.registry.label_for(pair)
        payload = OracleStallPayload(
            run_id=run_id,
            validator=participant,
            reason=REASON_FLAT,
            stalled_price=evaluation.mean_price,
            median_now=evaluation.median_late,
            dev_pct=evaluation.dev_pct,
            span_sec=evaluation.span_sec,
            first_bad_run_id=transition.first_bad_run_id,
            last_seen_run_id=run_id,
            consecutive=transition.consec_bad,
        )
        message = (
            f"Oracle stalled for {label} over ~{format_span(evaluation.span_sec)}; "
            f"market moved {format_pct(evaluation.market_move_pct)}."
        )
        for owner in self._open_for_owners(session, pair, participant, message, payload, result):
            result.messages.append((
                owner,
                "\n".join([
                    "🚨 **Oracle Stalled**",
                    f"• Pair: {label}",
                    f"• Validator: `{participant}` ({self.registry.display_name(owner)})",
                    f"• Span: ~{format_span(evaluation.span_sec)} | "
                    f"Market move: {format_pct(evaluation.market_move_pct)}",
                    f"• Price vs median: {format_pct(evaluation.dev_pct)} off",
                ]),
            ))
        return result

    def _healthy(
        self,
        session: Session,
        run_id: int,
        pair: PairKey,
        participant: str,
        evaluation: StallEvaluation,
    ) -> OracleStallResult:
        transition = self.tracker.update(session, KIND_ORACLE, pair, participant, False, run_id)
        self.rollup.bump(
            session, KIND_ORACLE, pair, participant, Outcome.OK,
            self._metrics(evaluation), run_id=run_id, open_at_end=transition.is_open,
        )
        result = OracleStallResult(pair, participant, transition, evaluation=evaluation)
        if not transition.cleared:
            return result

        label = self.registry.label_for(pair)
        final = OracleStallPayload(
            last_dev_pct=evaluation.dev_pct,
            last_span_sec=evaluation.span_sec,
            resolved_run_id=run_id,
            resolved_at=self._clock(),
        )
        entity_key = oracle_entity_key(pair, participant)
        for owner in self.registry.owners_of(pair, participant):
            if self.alerts.resolve(session, owner, entity_key, ORACLE_STALL, final):
                result.messages.append((
                    owner,
                    "\n".join([
                        "✅ **Oracle Stall Cleared**",
                        f"• Pair: {label}",
                        f"• Validator: `{participant}` ({self.registry.display_name(owner)})",
                    ]),
                ))
        return result

    def _open_for_owners(
        self,
        session: Session,
        pair: PairKey,
        participant: str,
        message: str,
        payload: OracleStallPayload,
        result: OracleStallResult,
    ) -> list[str]:
        """Open or refresh each owner's alert; returns owners newly opened for."""
        entity_key = oracle_entity_key(pair, participant)
        owners = self.registry.owners_of(pair, participant)
        if not owners and result.transition.opened:
            logger.info(f"[oracle] {pair} {participant} stalled but has no registered owner")
        for owner in owners:
            if self.alerts.open_or_refresh(
                session, owner, entity_key, ORACLE_STALL, SEVERITY_WARNING, message, payload
            ):
                result.opened_for.append(owner)
        return list(result.opened_for)

    @staticmethod
    def _metrics(evaluation: StallEvaluation) -> RollupMetrics:
        return RollupMetrics(
            dev_pct=evaluation.dev_pct,
            span_sec=evaluation.span_sec,
            median=evaluation.median_late,
            price=evaluation.mean_price,
        )
