"""AlertManager: Open / refresh / resolve primitive shared by all detectors.

An alert is open while ``resolved_at`` is NULL. At most one open alert
exists per ``(recipient_id, entity_key, alert_type)``; the manager is the
only writer of the ``alerts`` table. It never sends notifications itself:
callers use the boolean returned by :meth:`AlertManager.open_or_refresh`
to tell a fresh transition from a refresh.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .AlertPayloads import AlertPayload, merge_payload
from .Schema import AlertModel

logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


class AlertManager:
    """Relational alert lifecycle.

    All methods take the caller's session so the alert change commits or
    rolls back together with the evaluation that caused it.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def get_open(
        self,
        session: Session,
        recipient_id: str,
        entity_key: str,
        alert_type: str,
    ) -> AlertModel | None:
        """Return the open alert for the exact key, or None."""
        stmt = select(AlertModel).where(
            AlertModel.recipient_id == recipient_id,
            AlertModel.entity_key == entity_key,
            AlertModel.alert_type == alert_type,
            AlertModel.resolved_at.is_(None),
        )
        return session.scalars(stmt).first()

    def open_or_refresh(
        self,
        session: Session,
        recipient_id: str,
        entity_key: str,
        alert_type: str,
        severity: str,
        message: str,
        payload: AlertPayload | Mapping[str, Any] | None = None,
    ) -> bool:
        """Open an alert, or merge ``payload`` into the one already open.

        Refreshing keeps ``opened_at`` and the original message.

        :returns: True if a new alert was inserted.
        """
        existing = self.get_open(session, recipient_id, entity_key, alert_type)
        if existing is not None:
            existing.extra = merge_payload(existing.extra, payload)
            session.flush()
            return False

        session.add(
            AlertModel(
                recipient_id=recipient_id,
                entity_key=entity_key,
                alert_type=alert_type,
                severity=severity,
                message=message,
                extra=merge_payload(None, payload),
                opened_at=self._clock(),
            )
        )
        session.flush()
        logger.info(f"Opened {alert_type} for {recipient_id} on {entity_key}")
        return True

    def resolve(
        self,
        session: Session,
        recipient_id: str,
        entity_key: str,
        alert_type: str,
        payload: AlertPayload | Mapping[str, Any] | None = None,
    ) -> bool:
        """Resolve the open alert for the key, stamping ``payload`` first.

        :returns: True if an open alert was resolved, False for a no-op.
        """
        existing = self.get_open(session, recipient_id, entity_key, alert_type)
        if existing is None:
            return False
        if payload is not None:
            existing.extra = merge_payload(existing.extra, payload)
        existing.resolved_at = self._clock()
        session.flush()
        logger.info(f"Resolved {alert_type} for {recipient_id} on {entity_key}")
        return True

    def list_open(
        self,
        session: Session,
        alert_type: str | None = None,
        recipient_id: str | None = None,
    ) -> list[AlertModel]:
        """List open alerts, optionally filtered."""
        stmt = select(AlertModel).where(AlertModel.resolved_at.is_(None))
        if alert_type is not None:
            stmt = stmt.where(AlertModel.alert_type == alert_type)
        if recipient_id is not None:
            stmt = stmt.where(AlertModel.recipient_id == recipient_id)
        return list(session.scalars(stmt.order_by(AlertModel.id)))
