"""Registry: Tracked pairs, their sources and participants, and recipients.

The registry is owned by an external collaborator (the interface through
which people register contracts and validators). The monitor only reads
it, except for notification preferences, which the delivery policy may
switch off for recipients that cannot be reached.

:class:`StaticRegistry` is an in-memory implementation, loadable from a JSON
document:

.. code-block:: json

    {
      "recipients": [
        {"id": "100", "name": "ops", "admin": true},
        {"id": "200", "name": "alice"}
      ],
      "pairs": [
        {
          "chain_id": 50,
          "contract": "0x...",
          "label": "XDC/USD",
          "sources": {
            "coingecko": {
              "url": "https://api.coingecko.com/api/v3/simple/price?ids=xdce-crypto-token&vs_currencies=usd",
              "path": "xdce-crypto-token.usd"
            }
          },
          "participants": [{"address": "0x...", "owners": ["200"]}]
        }
      ]
    }
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .PairKey import PairKey, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class SourceConfig:
    """How a datasource is queried for one pair.

    :ivar name: Source identifier (lowercase).
    :ivar url: Request URL.
    :ivar response_path: Dotted path to the price in the JSON response
        (integer segments index into lists).
    :ivar headers: Extra request headers; ${api_key} is substituted.
    :ivar fetcher: Registered fetcher that handles this source.
    """

    name: str
    url: str
    response_path: str
    headers: dict[str, str] = field(default_factory=dict)
    fetcher: str = "json"


@dataclass
class Recipient:
    """A notification recipient.

    :ivar recipient_id: Stable identifier used as alert recipient.
    :ivar display_name: Human-readable name.
    :ivar is_admin: Administrators are never auto-disabled.
    :ivar accepts_notifications: Preference flag.
    """

    recipient_id: str
    display_name: str = ""
    is_admin: bool = False
    accepts_notifications: bool = True


@dataclass
class PairEntry:
    """Registry entry for one tracked pair."""

    key: PairKey
    label: str = ""
    active: bool = True
    sources: dict[str, SourceConfig] = field(default_factory=dict)
    participants: dict[str, list[str]] = field(default_factory=dict)


class Registry(ABC):
    """Read-only view over pairs and owners, plus notification preferences."""

    @abstractmethod
    def active_pairs(self) -> list[PairKey]:
        """Pairs the monitor should evaluate."""

    @abstractmethod
    def label_for(self, pair: PairKey) -> str:
        """Display label of a pair (falls back to the pair key)."""

    @abstractmethod
    def sources_for(self, pair: PairKey) -> list[str]:
        """Datasources mapped to a pair."""

    @abstractmethod
    def source_config(self, pair: PairKey, source: str) -> SourceConfig | None:
        """Request configuration of one source for one pair."""

    @abstractmethod
    def participants_for(self, pair: PairKey) -> list[str]:
        """Oracle participants submitting to a pair."""

    @abstractmethod
    def owners_of(self, pair: PairKey, participant: str) -> list[str]:
        """Recipients owning a participant on the pair's chain."""

    @abstractmethod
    def admins(self) -> list[str]:
        """Administrator recipients."""

    @abstractmethod
    def is_admin(self, recipient_id: str) -> bool:
        """Whether the recipient is an administrator."""

    @abstractmethod
    def display_name(self, recipient_id: str) -> str:
        """Display name of a recipient (falls back to its id)."""

    @abstractmethod
    def accepts_notifications(self, recipient_id: str) -> bool:
        """Whether the recipient currently accepts notifications."""

    @abstractmethod
    def disable_notifications(self, recipient_id: str) -> None:
        """Stop notifying a recipient."""

    def owned_participants(self, recipient_id: str) -> list[tuple[PairKey, str]]:
        """All (pair, participant) combinations owned by a recipient."""
        owned: list[tuple[PairKey, str]] = []
        for pair in self.active_pairs():
            for participant in self.participants_for(pair):
                if recipient_id in self.owners_of(pair, participant):
                    owned.append((pair, participant))
        return owned

    def all_owners(self) -> list[str]:
        """Every recipient owning at least one participant of an active pair."""
        seen: dict[str, None] = {}
        for pair in self.active_pairs():
            for participant in self.participants_for(pair):
                for owner in self.owners_of(pair, participant):
                    seen.setdefault(owner, None)
        return list(seen)


class StaticRegistry(Registry):
    """In-memory registry.

    .. code-block:: python

        >>> registry = StaticRegistry()
        >>> pair = registry.add_pair(50, "0x" + "11" * 20, label="XDC/USD")
        >>> _ = registry.add_recipient("100", "ops", is_admin=True)
        >>> registry.admins()
        ['100']
    """

    def __init__(self) -> None:
        self._pairs: dict[PairKey, PairEntry] = {}
        self._recipients: dict[str, Recipient] = {}

    def add_recipient(
        self,
        recipient_id: str,
        display_name: str = "",
        is_admin: bool = False,
        accepts_notifications: bool = True,
    ) -> Recipient:
        """Register (or replace) a recipient."""
        recipient = Recipient(
            recipient_id=str(recipient_id),
            display_name=display_name,
            is_admin=is_admin,
            accepts_notifications=accepts_notifications,
        )
        self._recipients[recipient.recipient_id] = recipient
        return recipient

    def add_pair(
        self,
        chain_id: int,
        contract_address: str,
        label: str = "",
        active: bool = True,
    ) -> PairKey:
        """Register a pair; returns its key."""
        key = PairKey(chain_id, contract_address)
        entry = self._pairs.get(key)
        if entry is None:
            self._pairs[key] = PairEntry(key=key, label=label, active=active)
        else:
            entry.label = label or entry.label
            entry.active = active
        return key

    def add_source(
        self,
        pair: PairKey,
        name: str,
        url: str = "",
        response_path: str = "",
        headers: dict[str, str] | None = None,
        fetcher: str = "json",
    ) -> None:
        """Map a datasource to a pair."""
        self._entry(pair).sources[name.lower()] = SourceConfig(
            name=name.lower(),
            url=url,
            response_path=response_path,
            headers=dict(headers or {}),
            fetcher=fetcher,
        )

    def add_participant(self, pair: PairKey, address: str, owners: list[str] | None = None) -> str:
        """Attach a participant (and its owners) to a pair."""
        participant = normalize_address(address)
        current = self._entry(pair).participants.setdefault(participant, [])
        for owner in owners or []:
            if str(owner) not in current:
                current.append(str(owner))
        return participant

    def _entry(self, pair: PairKey) -> PairEntry:
        try:
            return self._pairs[pair]
        except KeyError:
            raise ValueError(f"Unknown pair {pair}") from None

    def active_pairs(self) -> list[PairKey]:
        return sorted(k for k, e in self._pairs.items() if e.active)

    def label_for(self, pair: PairKey) -> str:
        entry = self._pairs.get(pair)
        return entry.label if entry and entry.label else str(pair)

    def sources_for(self, pair: PairKey) -> list[str]:
        entry = self._pairs.get(pair)
        return sorted(entry.sources) if entry else []

    def source_config(self, pair: PairKey, source: str) -> SourceConfig | None:
        entry = self._pairs.get(pair)
        return entry.sources.get(source.lower()) if entry else None

    def participants_for(self, pair: PairKey) -> list[str]:
        entry = self._pairs.get(pair)
        return sorted(entry.participants) if entry else []

    def owners_of(self, pair: PairKey, participant: str) -> list[str]:
        # Ownership is per chain: the same validator owns all its feeds there.
        owners: list[str] = []
        participant = participant.lower()
        for key, entry in self._pairs.items():
            if key.chain_id != pair.chain_id:
                continue
            for owner in entry.participants.get(participant, []):
                if owner not in owners:
                    owners.append(owner)
        return owners

    def admins(self) -> list[str]:
        return [r.recipient_id for r in self._recipients.values() if r.is_admin]

    def is_admin(self, recipient_id: str) -> bool:
        recipient = self._recipients.get(str(recipient_id))
        return bool(recipient and recipient.is_admin)

    def display_name(self, recipient_id: str) -> str:
        recipient = self._recipients.get(str(recipient_id))
        return recipient.display_name if recipient and recipient.display_name else str(recipient_id)

    def accepts_notifications(self, recipient_id: str) -> bool:
        recipient = self._recipients.get(str(recipient_id))
        return recipient.accepts_notifications if recipient else True

    def disable_notifications(self, recipient_id: str) -> None:
        recipient = self._recipients.get(str(recipient_id))
        if recipient is None:
            recipient = self.add_recipient(str(recipient_id))
        recipient.accepts_notifications = False
        logger.info(f"Notifications disabled for {recipient_id}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StaticRegistry:
        """Build a registry from the JSON document layout shown above.

        :raises ValueError: If a pair or participant address is malformed.
        """
        registry = cls()
        for r in data.get("recipients", []):
            registry.add_recipient(
                str(r["id"]),
                r.get("name", ""),
                is_admin=bool(r.get("admin", False)),
                accepts_notifications=bool(r.get("accepts_notifications", True)),
            )
        for p in data.get("pairs", []):
            key = registry.add_pair(
                int(p["chain_id"]),
                p["contract"],
                label=p.get("label", ""),
                active=bool(p.get("active", True)),
            )
            for name, cfg in (p.get("sources") or {}).items():
                registry.add_source(
                    key,
                    name,
                    url=cfg.get("url", ""),
                    response_path=cfg.get("path", ""),
                    headers=cfg.get("headers"),
                    fetcher=cfg.get("fetcher", "json"),
                )
            for participant in p.get("participants", []):
                registry.add_participant(key, participant["address"], participant.get("owners", []))
        return registry

    @classmethod
    def from_file(cls, path: str | Path) -> StaticRegistry:
        """Load a registry from a JSON file."""
        with open(path, "r") as file:
            data = json.load(file)
        registry = cls.from_dict(data)
        logger.info(
            f"Loaded registry from {path}: {len(registry.active_pairs())} active pairs, "
            f"{len(registry.admins())} admins"
        )
        return registry
