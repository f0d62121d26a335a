"""Thresholds: Immutable detector configuration loaded from the environment.

Every tunable has a documented default and an optional ``TEST_``-prefixed
override. When the ``TEST_`` variable is present (non-blank) it wins, so an
integration test can run with a private set of thresholds without touching
the operational ones. Overrides are resolved once, at load time.

.. code-block:: python

    >>> cfg = Thresholds.load({"OUTLIER_PCT": "0.05", "TEST_QUORUM_MIN_USED": "3"})
    >>> cfg.outlier_pct
    0.05
    >>> cfg.quorum_min_used
    3
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _raw(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def _to_number(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value {raw!r}; using default {default}")
        return default


def _to_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    try:
        return float(raw) != 0
    except ValueError:
        return default


# Older variable names still honoured when the current name is unset
ALIASES: dict[str, tuple[str, ...]] = {
    "ORACLE_REALTIME_NOTIFY": ("ORACLE_REALTIME_DM",),
    "SUMMARY_MIN_EVALS_ORACLE": ("SUMMARY_MIN_EVALS_PER_ROW_ORACLE",),
    "SUMMARY_MIN_EVALS_DS": ("SUMMARY_MIN_EVALS_PER_ROW_DS",),
}


def _pick(environ: Mapping[str, str], name: str) -> str | None:
    """Return the TEST_ override for ``name`` if set, else the base value.

    Aliases of ``name`` are consulted, in the same order, only when neither
    ``TEST_<name>`` nor ``<name>`` is set.
    """
    for candidate in (name, *ALIASES.get(name, ())):
        for key in (f"TEST_{candidate}", candidate):
            value = _raw(environ, key)
            if value is not None:
                return value
    return None


def _overridden(environ: Mapping[str, str], name: str) -> bool:
    return any(
        _raw(environ, f"TEST_{candidate}") is not None
        for candidate in (name, *ALIASES.get(name, ()))
    )


@dataclass(frozen=True)
class Thresholds:
    """All numeric and boolean tunables of the detectors and summaries.

    Field names map to environment variables by upper-casing them, e.g.
    ``stall_open_consec`` is read from ``STALL_OPEN_CONSEC`` (or
    ``TEST_STALL_OPEN_CONSEC``).
    """

    # Aggregation
    outlier_pct: float = 0.01
    freshness_sec: float = 10800
    quorum_min_used: int = 2

    # Stall classification
    stall_flat_pct: float = 0.0005
    stall_market_move_pct: float = 0.005
    stall_min_span_sec: float = 43200

    # Hysteresis
    stall_open_consec: int = 3
    stall_clear_consec: int = 3
    oracle_open_consec: int = 2
    oracle_clear_consec: int = 1
    oracle_realtime_notify: bool = False

    # Windows and summaries
    summary_window_minutes: int = 240
    summary_only_if_events: bool = True
    summary_skip_partial_windows: bool = True
    summary_min_evals_oracle: int = 2
    summary_min_evals_ds: int = 2
    summary_lookback_windows: int = 6
    summary_uptime_yellow: float = 0.95
    summary_uptime_red: float = 0.80
    unowned_label_default: str = "unassigned"
    unowned_label_map: str = ""

    @property
    def window_size_sec(self) -> int:
        """Window size in seconds."""
        return int(self.summary_window_minutes) * 60

    @classmethod
    def load(cls, environ: Mapping[str, str] | None = None) -> Thresholds:
        """Build thresholds from ``environ`` (defaults to ``os.environ``).

        Invariant violations are logged as warnings and never raise.

        :param environ: Mapping of environment variables.
        :returns: Frozen Thresholds instance.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = _pick(env, f.name.upper())
            default = f.default
            if isinstance(default, bool):
                values[f.name] = _to_bool(raw, default)
            elif isinstance(default, int):
                values[f.name] = int(_to_number(raw, default))
            elif isinstance(default, float):
                values[f.name] = _to_number(raw, default)
            else:
                values[f.name] = raw if raw is not None else default

        cfg = cls(**values)  # type: ignore[arg-type]
        for warning in cfg.validate():
            logger.warning(warning)
        return cfg

    def validate(self) -> list[str]:
        """Cross-check tuning invariants.

        :returns: Human-readable warnings (empty when all invariants hold).
        """
        warnings: list[str] = []
        if self.stall_min_span_sec > self.freshness_sec:
            warnings.append(
                f"STALL_MIN_SPAN_SEC ({self.stall_min_span_sec:g}s) > FRESHNESS_SEC "
                f"({self.freshness_sec:g}s): datasource stall detection will never trigger"
            )
        if self.quorum_min_used < 2:
            warnings.append(
                f"QUORUM_MIN_USED = {self.quorum_min_used}: values < 2 yield fragile aggregates"
            )
        if self.summary_window_minutes <= 0:
            warnings.append(
                f"SUMMARY_WINDOW_MINUTES = {self.summary_window_minutes}: windows are disabled"
            )
        if self.summary_uptime_red > self.summary_uptime_yellow:
            warnings.append(
                "SUMMARY_UPTIME_RED is above SUMMARY_UPTIME_YELLOW; yellow will never be shown"
            )
        return warnings

    def log_active(self, environ: Mapping[str, str] | None = None) -> None:
        """Log the active configuration at DEBUG, marking TEST_ overrides."""
        env = os.environ if environ is None else environ
        lines = ["Active thresholds:"]
        for f in fields(self):
            name = f.name.upper()
            marker = " (TEST*)" if _overridden(env, name) else ""
            lines.append(f"  {name:<30} = {getattr(self, f.name)}{marker}")
        logger.debug("\n".join(lines))
