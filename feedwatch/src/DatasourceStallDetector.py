"""DatasourceStallDetector: Flags a datasource that holds flat while its peers move.

Per (pair, source) the last three snapshots are judged with
:func:`evaluate_stall`. The "market" is the median across **all**
datasources of the pair at the runs of the oldest and newest judged sample.
Hysteresis (``STALL_OPEN_CONSEC`` / ``STALL_CLEAR_CONSEC``) decides when a
``DS_STALL:<source>`` alert opens for each admin and when it resolves;
while open, its payload is refreshed on every evaluation. Every judged
evaluation feeds an ``ok`` or ``stalled`` hit into the datasource rollup.

After the run each admin gets one message listing the stalls newly opened
for them, grouped by source. Refreshed alerts are not repeated.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .AlertManager import SEVERITY_WARNING, AlertManager
from .AlertPayloads import DatasourceStallPayload
from .HealthRollup import KIND_DATASOURCE, HealthRollup, Outcome, RollupMetrics
from .Notifier import Notifier, deliver
from .PairKey import PairKey
from .Registry import Registry
from .SnapshotRecorder import datasource_run_medians, recent_datasource_samples
from .StallMath import SAMPLES_REQUIRED, StallEvaluation, evaluate_stall, format_pct, format_span
from .StallTracker import StallTracker, StallTransition
from .Store import Store
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)


def stall_alert_type(source: str) -> str:
    return f"DS_STALL:{source.lower()}"


def _price(value: float | None) -> str:
    if value is None or not math.isfinite(value):
        return "n/a"
    return f"{value:.6f}"


@dataclass
class DatasourceStallResult:
    """One judged evaluation of one (pair, source).

    :ivar opened_for: Admins whose alert was opened by this evaluation.
    """

    pair: PairKey
    source: str
    evaluation: StallEvaluation
    transition: StallTransition
    opened_for: list[str] = field(default_factory=list)


def render_stall_message(
    results: Sequence[DatasourceStallResult], registry: Registry, thresholds: Thresholds
) -> str:
    """One admin's message for the stalls newly opened in a run, grouped by source.

    .. code-block:: text

        🚨 **Datasource stalls detected (new this run)**
        ...
        **bitmart**: 1 new stall(s):
        ```
        chain  pair        contract_address                             stalled      median_now   dev%   span   market
        50     XDC/USD     0x...                                        0.041200     0.043100     4.41%  12.0h  4.60%
        ```
    """
    by_source: dict[str, list[DatasourceStallResult]] = {}
    for result in results:
        by_source.setdefault(result.source, []).append(result)

    lines = [
        "🚨 **Datasource stalls detected (new this run)**",
        f"These sources held (nearly) flat while the market moved ≥ "
        f"{format_pct(thresholds.stall_market_move_pct)}.",
        f"(Flat range ≤ {format_pct(thresholds.stall_flat_pct)}, "
        f"span ≥ {format_span(thresholds.stall_min_span_sec)})",
    ]
    for source, items in by_source.items():
        lines.append(f"\n**{source}**: {len(items)} new stall(s):")
        lines.append("```")
        lines.append(
            "chain  pair        contract_address                             "
            "stalled      median_now   dev%   span   market"
        )
        for item in items:
            ev = item.evaluation
            lines.append(" ".join([
                str(item.pair.chain_id).ljust(6),
                registry.label_for(item.pair)[:11].ljust(11),
                item.pair.contract_address.ljust(44),
                _price(ev.mean_price).ljust(12),
                _price(ev.median_late).ljust(12),
                format_pct(ev.dev_pct).ljust(6),
                format_span(ev.span_sec).ljust(6),
                format_pct(ev.market_move_pct),
            ]))
        lines.append("```")
    return "\n".join(lines)


class DatasourceStallDetector:
    """Stall detection for datasources.

    :ivar tracker: Hysteresis with the datasource open / clear thresholds.
    :ivar notifier: Where the per-run admin stall messages go; None keeps
        the alerts silent.
    """

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
        self.tracker = StallTracker(thresholds.stall_open_consec, thresholds.stall_clear_consec)
        self._clock = clock

    async def run(self, run_id: int, pairs: list[PairKey] | None = None) -> list[DatasourceStallResult]:
        """Evaluate every (pair, source), then message admins about new stalls."""
        results: list[DatasourceStallResult] = []
        for pair in pairs if pairs is not None else self.registry.active_pairs():
            for source in self.registry.sources_for(pair):
                try:
                    result = self.evaluate(run_id, pair, source)
                except Exception:
                    logger.exception(f"[{source}] stall evaluation failed for {pair}")
                    continue
                if result is not None:
                    results.append(result)

        opened = [r for r in results if r.transition.opened]
        if opened:
            logger.info(
                f"New datasource stalls this run: "
                f"{', '.join(f'{r.source}@{r.pair}' for r in opened)}"
            )
        await self.notify_admins(results)
        return results

    async def notify_admins(self, results: Sequence[DatasourceStallResult]) -> int:
        """Send each admin one message with the stalls newly opened for them.

        :returns: Number of admins a message was attempted for.
        """
        by_admin: dict[str, list[DatasourceStallResult]] = {}
        for result in results:
            for admin in result.opened_for:
                by_admin.setdefault(admin, []).append(result)
        if not by_admin:
            if any(r.transition.is_open for r in results):
                logger.debug("Datasource stalls open but no new admin alerts this run")
            return 0
        if self.notifier is None:
            logger.debug(f"No notifier; {len(by_admin)} admin stall message(s) not sent")
            return 0

        for admin, items in by_admin.items():
            text = render_stall_message(items, self.registry, self.thresholds)
            await deliver(self.notifier, self.registry, admin, text)
        return len(by_admin)

    def evaluate(self, run_id: int, pair: PairKey, source: str) -> DatasourceStallResult | None:
        """Judge one (pair, source); None when there is not enough history."""
        source = source.lower()
        with self.store.session() as session:
            samples = recent_datasource_samples(session, pair, source, SAMPLES_REQUIRED)
            if len(samples) < SAMPLES_REQUIRED:
                return None

            early_run, late_run = samples[-1].run_id, samples[0].run_id
            medians = datasource_run_medians(session, pair, (early_run, late_run))
            evaluation = evaluate_stall(
                samples, medians.get(early_run), medians.get(late_run), self.thresholds
            )
            if evaluation is None:
                logger.debug(f"[{source}] {pair}: not enough history to judge")
                return None

            logger.debug(
                f"[{source}] {pair}: span={evaluation.span_sec:.0f}s "
                f"flat={evaluation.flat_range_pct:.6f} move={evaluation.market_move_pct:.6f} "
                f"stalled={evaluation.stalled}"
            )

            transition = self.tracker.update(
                session, KIND_DATASOURCE, pair, source, evaluation.stalled, run_id
            )
            opened_for = self._manage_alerts(session, run_id, pair, source, evaluation, transition)

            self.rollup.bump(
                session,
                KIND_DATASOURCE,
                pair,
                source,
                Outcome.STALLED if evaluation.stalled else Outcome.OK,
                RollupMetrics(
                    dev_pct=evaluation.dev_pct,
                    span_sec=evaluation.span_sec,
                    median=evaluation.median_late,
                    price=evaluation.mean_price,
                ),
                run_id=run_id,
                open_at_end=transition.is_open,
            )

        return DatasourceStallResult(pair, source, evaluation, transition, opened_for)

    def _manage_alerts(
        self,
        session,
        run_id: int,
        pair: PairKey,
        source: str,
        evaluation: StallEvaluation,
        transition: StallTransition,
    ) -> list[str]:
        """Open, refresh or resolve each admin's alert; returns admins newly opened for."""
        alert_type = stall_alert_type(source)
        admins = self.registry.admins()

        if transition.cleared:
            for admin in admins:
                self.alerts.resolve(session, admin, str(pair), alert_type)
            return []
        if not transition.is_open:
            return []

        payload = DatasourceStallPayload(
            run_id=run_id,
            source=source,
            stalled_price=evaluation.mean_price,
            median_now=evaluation.median_late,
            dev_pct=evaluation.dev_pct,
            span_sec=evaluation.span_sec,
            consecutive=transition.consec_bad,
            first_bad_run_id=transition.first_bad_run_id,
        )
        message = (
            f"Source {source} appears stalled for {self.registry.label_for(pair)} "
            f"over ~{format_span(evaluation.span_sec)}; "
            f"market moved {format_pct(evaluation.market_move_pct)}."
        )
        return [
            admin
            for admin in admins
            if self.alerts.open_or_refresh(
                session, admin, str(pair), alert_type, SEVERITY_WARNING, message, payload
            )
        ]
