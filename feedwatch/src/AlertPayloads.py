"""AlertPayloads: Typed, versioned structured payloads stored in ``alerts.extra``.

Each alert family has its own dataclass tagged by ``kind``. Payloads are
stored as plain dicts (``None`` fields omitted) and refreshed with
:func:`merge_payload`, a shallow merge in which newly provided keys win.

.. code-block:: python

    >>> first = OutlierPayload(source="bitmart", price=150.0, median=100.5)
    >>> stored = first.to_dict()
    >>> merged = merge_payload(stored, OutlierPayload(source="bitmart", price=151.0))
    >>> merged["price"], merged["median"]
    (151.0, 100.5)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar

PAYLOAD_VERSION = 1

_PAYLOAD_TYPES: dict[str, type[AlertPayload]] = {}


def _register_payload(cls: type[AlertPayload]) -> type[AlertPayload]:
    if not cls.kind:
        raise ValueError(f"Payload {cls.__name__} must define a 'kind' class variable")
    _PAYLOAD_TYPES[cls.kind] = cls
    return cls


@dataclass
class AlertPayload:
    """Base payload. Subclasses add fields and a ``kind`` tag.

    :cvar kind: Tag stored alongside the fields.
    :ivar run_id: Run that produced this evaluation.
    """

    kind: ClassVar[str] = ""

    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict, omitting unset fields."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["kind"] = self.kind
        data["version"] = PAYLOAD_VERSION
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> AlertPayload:
        """Rebuild a typed payload from a stored dict.

        Unknown keys are dropped; the ``kind`` tag picks the class.

        :raises ValueError: If ``kind`` is missing or unknown.
        """
        kind = data.get("kind")
        cls = _PAYLOAD_TYPES.get(kind) if kind else None
        if cls is None:
            raise ValueError(f"Unknown alert payload kind: {kind!r}")
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@_register_payload
@dataclass
class OutlierPayload(AlertPayload):
    """``OUTLIER:<source>``: one source strayed from the cross-source median."""

    kind: ClassVar[str] = "outlier"

    source: str | None = None
    price: float | None = None
    median: float | None = None
    deviation_pct: float | None = None
    threshold_pct: float | None = None


@_register_payload
@dataclass
class DatasourceStallPayload(AlertPayload):
    """``DS_STALL:<source>``: a source is flat while the market moved."""

    kind: ClassVar[str] = "ds_stall"

    source: str | None = None
    stalled_price: float | None = None
    median_now: float | None = None
    dev_pct: float | None = None
    span_sec: float | None = None
    consecutive: int | None = None
    first_bad_run_id: int | None = None


@_register_payload
@dataclass
class OracleStallPayload(AlertPayload):
    """``ORACLE_STALL``: a participant is inactive or flat.

    ``reason`` is ``inactivity`` or ``flat``. Clearing stamps the
    ``last_*`` and ``resolved_*`` fields before the alert is resolved.
    """

    kind: ClassVar[str] = "oracle_stall"

    validator: str | None = None
    reason: str | None = None
    last_seen_ts: float | None = None
    last_seen_run_id: int | None = None
    age_sec: float | None = None
    stalled_price: float | None = None
    median_now: float | None = None
    dev_pct: float | None = None
    span_sec: float | None = None
    first_bad_run_id: int | None = None
    consecutive: int | None = None
    last_dev_pct: float | None = None
    last_span_sec: float | None = None
    resolved_run_id: int | None = None
    resolved_at: float | None = None


@_register_payload
@dataclass
class FetchErrorPayload(AlertPayload):
    """``DS_FETCH_ERROR:<source>``: a producer failed to fetch or parse."""

    kind: ClassVar[str] = "fetch_error"

    source: str | None = None
    detail: str | None = None


def merge_payload(
    stored: Mapping[str, Any] | None,
    update: AlertPayload | Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Shallow-merge ``update`` into ``stored``; keys in ``update`` win.

    :param stored: Payload currently persisted (may be None or empty).
    :param update: New payload or raw dict.
    :returns: A new dict; neither input is mutated.
    """
    merged = dict(stored or {})
    if update is None:
        return merged
    if isinstance(update, AlertPayload):
        update = update.to_dict()
    merged.update(update)
    return merged
