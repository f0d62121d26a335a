"""Digest: Renders window rollups into summary messages.

Three layouts:

    - owner digest: every participant the owner runs, with uptime
    - admin oracle hotlist: only non-green participants, worst first,
      followed by an all-green rollup line
    - admin datasource hotlist: only non-green sources

Uptime is ``ok / (ok + stalled)``. A row is red when its alert was open at
the end of the window or uptime is below ``SUMMARY_UPTIME_RED``, yellow
below ``SUMMARY_UPTIME_YELLOW`` or when it has no stall evaluations at all,
green otherwise.

Tables are wrapped in code fences and split so every message stays below
:data:`MAX_MESSAGE` characters.
"""

from __future__ import annotations

import enum
import logging
import math
from collections.abc import Sequence
from datetime import datetime, timezone

from .PairKey import PairKey, short_address
from .Registry import Registry
from .Thresholds import Thresholds

logger = logging.getLogger(__name__)

MAX_MESSAGE = 1800
FENCE = "```"


class Light(enum.Enum):
    """Traffic-light status of one row."""

    RED = "🔴"
    YELLOW = "🟡"
    GREEN = "🟢"


def uptime(row) -> float:
    """``ok / (ok + stalled)``, NaN without stall evaluations."""
    ok = row.ok_hits or 0
    total = ok + (row.stalled_hits or 0)
    return ok / total if total > 0 else math.nan


def classify(value: float, open_at_end: bool, thresholds: Thresholds) -> Light:
    """Traffic light for an uptime value.

    .. code-block:: python

        >>> classify(0.9, False, Thresholds()).name
        'YELLOW'
        >>> classify(1.0, True, Thresholds()).name
        'RED'
    """
    if open_at_end:
        return Light.RED
    if not math.isfinite(value):
        return Light.YELLOW
    if value < thresholds.summary_uptime_red:
        return Light.RED
    if value < thresholds.summary_uptime_yellow:
        return Light.YELLOW
    return Light.GREEN


def parse_unowned_label_map(raw: str) -> dict[str, str]:
    """Parse ``"50:0xabc=ops-sydney;51:0xdef=ops-eu"`` into ``{"50:0xabc": "ops-sydney", ...}``.

    Malformed parts are skipped.
    """
    labels: dict[str, str] = {}
    for part in (raw or "").split(";"):
        part = part.strip()
        if "=" not in part:
            continue
        lhs, label = part.split("=", 1)
        if ":" not in lhs:
            continue
        chain, address = lhs.split(":", 1)
        try:
            chain_id = int(chain.strip())
        except ValueError:
            continue
        address = address.strip().lower()
        if address and label.strip():
            labels[f"{chain_id}:{address}"] = label.strip()
    return labels


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%" if math.isfinite(value) else "n/a"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _cell(text: str, width: int) -> str:
    return f"{text[:width]:<{width}}"


def fence_chunks(lines: Sequence[str], title: str, max_len: int = MAX_MESSAGE) -> list[str]:
    """Group table lines into fenced blocks no longer than ``max_len``.

    Multi-block output gets ``i/n (cont.)`` / ``i/n (end)`` footers.
    """

    def wrap(block: list[str]) -> str:
        return "\n".join([title, FENCE, *block, FENCE])

    chunks: list[str] = []
    current: list[str] = []
    for line in lines:
        if len(wrap([*current, line])) <= max_len:
            current.append(line)
            continue
        if current:
            chunks.append(wrap(current))
        current = [line]
    if current:
        chunks.append(wrap(current))

    total = len(chunks)
    if total <= 1:
        return chunks
    return [
        f"{chunk}\n\n{i}/{total} {'(cont.)' if i < total else '(end)'}"
        for i, chunk in enumerate(chunks, start=1)
    ]


class Digest:
    """Builds summary messages from rollup rows.

    :ivar registry: Pair labels and participant ownership.
    :ivar thresholds: Uptime colours and unowned labels.
    """

    def __init__(self, registry: Registry, thresholds: Thresholds) -> None:
        self.registry = registry
        self.thresholds = thresholds
        self.unowned_labels = parse_unowned_label_map(thresholds.unowned_label_map)

    def _legend(self) -> str:
        yellow = _pct(self.thresholds.summary_uptime_yellow)
        red = _pct(self.thresholds.summary_uptime_red)
        return f"Legend: 🟢 ≥ {yellow}  |  🟡 < {yellow}  |  🔴 < {red} or open at end"

    def _header(self, title: str, window_start: int, window_end: int, who: str | None) -> list[str]:
        lines = [title, f"Window: {_iso(window_start)} → {_iso(window_end)}"]
        if who:
            lines.append(who)
        lines.append(self._legend())
        return lines

    def pair_label(self, row) -> str:
        pair = PairKey(row.chain_id, row.contract_address)
        label = self.registry.label_for(pair)
        return label if label and label != str(pair) else short_address(row.contract_address)

    def owner_label(self, row) -> str:
        """First owner's name, ``(+n)`` for more, else the unowned label."""
        pair = PairKey(row.chain_id, row.contract_address)
        owners = self.registry.owners_of(pair, row.entity_id)
        if owners:
            first = self.registry.display_name(owners[0])
            return f"{first} (+{len(owners) - 1})" if len(owners) > 1 else first
        key = f"{row.chain_id}:{row.entity_id.lower()}"
        return self.unowned_labels.get(key) or self.thresholds.unowned_label_default or "unassigned"

    def owner_digest(self, rows: Sequence, window_start: int, window_end: int, owner_id: str) -> list[str]:
        """Per-owner table of every participant row the owner runs."""
        header = self._header(
            "🧭 Oracle Health Summary",
            window_start,
            window_end,
            f"Owner: {self.registry.display_name(owner_id)}",
        )
        if not rows:
            return ["\n".join([*header, "", "All green ✅"])]

        table = [
            f"{'pair':<12}  {'validator':<18}  {'uptime':<8}  {'(ok/stalled)':<13}  open"
        ]
        for row in rows:
            up = uptime(row)
            light = classify(up, row.open_at_end, self.thresholds)
            table.append("  ".join([
                _cell(self.pair_label(row), 12),
                _cell(short_address(row.entity_id), 18),
                _cell(f"{light.value} {_pct(up if math.isfinite(up) else 0.0)}", 8),
                _cell(f"({row.ok_hits}/{row.stalled_hits})", 13),
                "yes" if row.open_at_end else "no",
            ]))
        return ["\n".join([*header, ""]), *fence_chunks(table, "Oracle Validators")]

    def admin_oracle_digest(
        self, rows: Sequence, window_start: int, window_end: int, admin_id: str | None = None
    ) -> list[str]:
        """Oracle hotlist for administrators."""
        classified = []
        for row in rows:
            up = uptime(row)
            classified.append((row, up, classify(up, row.open_at_end, self.thresholds)))

        pairs = {(r.chain_id, r.contract_address) for r, _, _ in classified}
        validators = {r.entity_id for r, _, _ in classified}
        counts = {light: sum(1 for _, _, l in classified if l is light) for light in Light}
        green_pairs = {(r.chain_id, r.contract_address) for r, _, l in classified if l is Light.GREEN}

        header = self._header(
            "📊 Health Summary (Admin)",
            window_start,
            window_end,
            f"Admin: {self.registry.display_name(admin_id)}" if admin_id else None,
        )
        header += [
            "",
            f"Summary: pairs {len(pairs)} | validators {len(validators)} | "
            f"🔴 {counts[Light.RED]} | 🟡 {counts[Light.YELLOW]} | 🟢 {counts[Light.GREEN]}",
        ]
        rollup_line = (
            f"✅ All-green rollup: {counts[Light.GREEN]} validators across {len(green_pairs)} pairs."
        )

        hot = [c for c in classified if c[2] is not Light.GREEN]
        hot.sort(key=lambda c: (c[2] is not Light.RED, c[1] if math.isfinite(c[1]) else 1.01))

        table = [
            f"{'pair':<12}  {'validator':<18}  {'owner':<16}  {'uptime':<8}  {'(ok/stalled)':<13}  open"
        ]
        for row, up, light in hot:
            table.append("  ".join([
                _cell(self.pair_label(row), 12),
                _cell(short_address(row.entity_id), 18),
                _cell(self.owner_label(row)[:14], 16),
                _cell(f"{light.value} {_pct(up if math.isfinite(up) else 0.0)}", 8),
                _cell(f"({row.ok_hits}/{row.stalled_hits})", 13),
                "yes" if row.open_at_end else "no",
            ]))

        chunks = fence_chunks(table, "Oracle Validators")
        first = "\n".join([*header, "", "🔥 Hotlist (non-green only)", "", chunks[0]])
        return [first, *chunks[1:], rollup_line]

    def admin_datasource_digest(
        self, rows: Sequence, window_start: int, window_end: int, admin_id: str | None = None
    ) -> list[str]:
        """Datasource hotlist for administrators."""
        header = self._header(
            "📊 Datasource Health (Admin)",
            window_start,
            window_end,
            f"Admin: {self.registry.display_name(admin_id)}" if admin_id else None,
        )

        pairs: set[tuple[int, str]] = set()
        sources: set[str] = set()
        counts = {light: 0 for light in Light}
        hot: list[str] = []
        for row in rows:
            up = uptime(row)
            light = classify(up, row.open_at_end, self.thresholds)
            pairs.add((row.chain_id, row.contract_address))
            sources.add(row.entity_id.lower())
            counts[light] += 1
            if light is Light.GREEN:
                continue
            hot.append("  ".join([
                _cell(self.pair_label(row), 12),
                _cell(row.entity_id, 10),
                _cell(f"{light.value} {_pct(up if math.isfinite(up) else 0.0)}", 8),
                _cell(
                    f"({row.ok_hits}/{row.stalled_hits}/{row.outlier_hits}/{row.fetch_error_hits})",
                    19,
                ),
                "yes" if row.open_at_end else "no",
            ]))

        summary = (
            f"Summary: pairs {len(pairs)} | sources {len(sources)} | "
            f"🔴 {counts[Light.RED]} | 🟡 {counts[Light.YELLOW]} | 🟢 {counts[Light.GREEN]}"
        )
        if not hot:
            return ["\n".join([
                *header,
                "",
                summary,
                "",
                f"✅ All-green rollup: {counts[Light.GREEN]} sources across {len(pairs)} pairs.",
            ])]

        table = [
            f"{'pair':<12}  {'datasource':<10}  {'uptime':<8}  {'(ok/stall/out/ferr)':<19}  open",
            *hot,
        ]
        return [
            "\n".join([*header, "", summary, "", "🔥 Hotlist (non-green only)"]),
            *fence_chunks(table, "Datasources"),
        ]
