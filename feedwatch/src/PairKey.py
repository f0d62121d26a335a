"""PairKey: Stable (chain, contract) identity of a tracked price feed.

A tracked pair is identified by the aggregator contract that publishes it,
not by its symbols, so two feeds quoting the same symbols on different
chains stay distinct. Addresses are normalised to lowercase ``0x`` form;
XDC-style ``xdc`` prefixes are accepted and rewritten.

.. code-block:: python

    >>> key = PairKey(50, "0xAbC0000000000000000000000000000000000001")
    >>> str(key)
    '50:0xabc0000000000000000000000000000000000001'
    >>> PairKey.from_string(str(key)) == key
    True
"""

from __future__ import annotations

from web3 import Web3


def normalize_address(address: str) -> str:
    """Normalise an EVM address to lowercase ``0x`` hex.

    :param address: Address in ``0x`` or ``xdc`` form, any case.
    :returns: Lowercase ``0x``-prefixed address.
    :raises ValueError: If the value is not a 20-byte hex address.
    """
    value = str(address or "").strip()
    if value[:3].lower() == "xdc":
        value = "0x" + value[3:]
    # Checksum casing is not enforced.
    value = value.lower()
    if not Web3.is_address(value):
        raise ValueError(f"Invalid address '{address}'")
    return value


class PairKey:
    """A tracked feed, keyed by chain id and aggregator contract address.

    :ivar chain_id: EVM chain id.
    :ivar contract_address: Lowercase aggregator contract address.
    """

    __slots__ = ("chain_id", "contract_address")

    def __init__(self, chain_id: int, contract_address: str) -> None:
        """Initialize a pair key.

        :param chain_id: EVM chain id (e.g., 50 for XDC mainnet).
        :param contract_address: Aggregator contract address.
        :raises ValueError: If the address is malformed.
        """
        self.chain_id = int(chain_id)
        self.contract_address = normalize_address(contract_address)

    def __str__(self) -> str:
        """Return the ``chain:address`` form used as an entity key."""
        return f"{self.chain_id}:{self.contract_address}"

    def __repr__(self) -> str:
        """Return a developer-friendly string representation."""
        return f"PairKey({self.chain_id!r}, {self.contract_address!r})"

    def __hash__(self) -> int:
        """Return hash for use in dicts and sets."""
        return hash((self.chain_id, self.contract_address))

    def __eq__(self, other: object) -> bool:
        """Check equality on chain id and address."""
        if not isinstance(other, PairKey):
            return NotImplemented
        return (self.chain_id, self.contract_address) == (
            other.chain_id,
            other.contract_address,
        )

    def __lt__(self, other: PairKey) -> bool:
        """Order by chain id, then address (stable iteration in sweeps)."""
        return (self.chain_id, self.contract_address) < (
            other.chain_id,
            other.contract_address,
        )

    @property
    def short_address(self) -> str:
        """Return an abbreviated address for tables (``0xabcd…1234``)."""
        return short_address(self.contract_address)

    @classmethod
    def from_string(cls, key: str) -> PairKey:
        """Parse a ``chain:address`` string.

        :param key: String like ``"50:0xabc..."``.
        :returns: New PairKey instance.
        :raises ValueError: If the format is invalid.
        """
        chain, sep, address = str(key).partition(":")
        if not sep or not chain.strip().isdigit():
            raise ValueError(
                f"Invalid pair key '{key}'. Expected 'chain_id:address' (e.g., '50:0xabc...')"
            )
        return cls(int(chain), address.strip())


def short_address(address: str | None) -> str:
    """Abbreviate an address to ``0xabcd…1234``."""
    if not address:
        return ""
    return f"{address[:6]}…{address[-4:]}"
