"""SummaryDispatcher: Sends window digests at most once per audience per window.

For every due window (see :class:`WindowLedger`) and every audience whose
flag is still unset:

    1. load the audience's rollup rows
    2. skip without setting the flag when the window is incomplete, or
       when nothing happened and ``SUMMARY_ONLY_IF_EVENTS`` is set
    3. otherwise render and deliver the digests, then set the flag

Delivery is fire-and-forget per recipient. A failed send is logged by
:func:`deliver` and never prevents the next recipient, and the flag is set
once the attempt for the whole audience has completed. The owners flag is
set only when at least one owner digest qualified for sending, or when no
participant in the window has a registered owner at all (status
``UNOWNED``).
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .Digest import Digest
from .HealthRollup import KIND_ORACLE
from .Notifier import Notifier, deliver
from .PairKey import PairKey
from .Registry import Registry
from .Store import Store
from .Thresholds import Thresholds
from .WindowLedger import Audience, WindowLedger, has_events

logger = logging.getLogger(__name__)


class DispatchStatus(str, enum.Enum):
    """What happened to one (window, audience)."""

    SENT = "sent"
    INCOMPLETE = "incomplete"
    QUIET = "quiet"
    UNOWNED = "unowned"


@dataclass
class DispatchOutcome:
    """Result of one (window, audience) dispatch attempt.

    :ivar recipients: Recipients a digest was attempted for.
    """

    window_start: int
    audience: Audience
    status: DispatchStatus
    recipients: int = 0


class SummaryDispatcher:
    """Dispatches owner and administrator window digests.

    :ivar ledger: Window eligibility and completion flags.
    :ivar digest: Message renderer.
    """

    def __init__(
        self,
        store: Store,
        registry: Registry,
        notifier: Notifier,
        thresholds: Thresholds,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.thresholds = thresholds
        self.ledger = WindowLedger(thresholds, clock)
        self.digest = Digest(registry, thresholds)
        self._clock = clock

    async def dispatch(self) -> list[DispatchOutcome]:
        """Attempt every pending (window, audience).

        :returns: One outcome per attempted (window, audience).
        """
        with self.store.session() as session:
            pending = [
                (w.window_start, w.window_end, [a for a in Audience if not self.ledger.is_done(w, a)])
                for w in self.ledger.due_windows(session)
            ]

        outcomes: list[DispatchOutcome] = []
        for window_start, window_end, audiences in pending:
            for audience in audiences:
                try:
                    outcome = await self.dispatch_window(window_start, window_end, audience)
                except Exception:
                    logger.exception(f"Summary dispatch failed for window {window_start} ({audience.value})")
                    continue
                outcomes.append(outcome)
        return outcomes

    async def dispatch_window(self, window_start: int, window_end: int, audience: Audience) -> DispatchOutcome:
        """Gate, render and send one audience's digests for one window."""
        with self.store.session() as session:
            rows = self.ledger.rows(session, window_start, audience.kind)

        if not self.ledger.complete(audience, rows):
            logger.info(
                f"Window {window_start} ({audience.value}): incomplete "
                f"({len(rows)} row(s), min evals {self.ledger.min_evals(audience)}); will retry"
            )
            return DispatchOutcome(window_start, audience, DispatchStatus.INCOMPLETE)

        if audience is Audience.OWNERS:
            if not any(self._owners_of_row(row) for row in rows):
                logger.info(f"Window {window_start} (owners): no owned participants; nothing to send")
                with self.store.session() as session:
                    self.ledger.mark_done(session, window_start, audience)
                return DispatchOutcome(window_start, audience, DispatchStatus.UNOWNED)
            messages = self._owner_messages(rows, window_start, window_end)
            if not messages:
                logger.info(f"Window {window_start} (owners): no owner digest qualified")
                return DispatchOutcome(window_start, audience, DispatchStatus.QUIET)
        else:
            if self.thresholds.summary_only_if_events and not has_events(audience.kind, rows):
                logger.info(f"Window {window_start} ({audience.value}): quiet window, not sending")
                return DispatchOutcome(window_start, audience, DispatchStatus.QUIET)
            messages = self._admin_messages(audience, rows, window_start, window_end)

        for recipient_id, parts in messages.items():
            for part in parts:
                await deliver(self.notifier, self.registry, recipient_id, part)

        with self.store.session() as session:
            self.ledger.mark_done(session, window_start, audience)
        return DispatchOutcome(window_start, audience, DispatchStatus.SENT, recipients=len(messages))

    def _owner_messages(self, rows: list, window_start: int, window_end: int) -> dict[str, list[str]]:
        by_owner: dict[str, list] = {}
        for row in rows:
            for owner in self._owners_of_row(row):
                by_owner.setdefault(owner, []).append(row)

        messages: dict[str, list[str]] = {}
        for owner, owned in by_owner.items():
            if not self.registry.accepts_notifications(owner):
                continue
            if self.thresholds.summary_only_if_events and not has_events(KIND_ORACLE, owned):
                continue
            messages[owner] = self.digest.owner_digest(owned, window_start, window_end, owner)
        return messages

    def _owners_of_row(self, row) -> list[str]:
        return self.registry.owners_of(PairKey(row.chain_id, row.contract_address), row.entity_id)

    def _admin_messages(
        self, audience: Audience, rows: list, window_start: int, window_end: int
    ) -> dict[str, list[str]]:
        messages: dict[str, list[str]] = {}
        for admin in self.registry.admins():
            if not self.registry.accepts_notifications(admin):
                continue
            if audience is Audience.ADMINS_ORACLE:
                messages[admin] = self.digest.admin_oracle_digest(rows, window_start, window_end, admin)
            else:
                messages[admin] = self.digest.admin_datasource_digest(rows, window_start, window_end, admin)
        return messages
