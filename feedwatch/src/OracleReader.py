"""OracleReader: Reads participant submissions from FluxAggregator feeds.

For each pair the reader asks the aggregator contract for its decimals and
the latest round, then calls ``oracleRoundState(participant, round)`` for
every participant registered on the pair and scales ``_latestSubmission``
by ``10 ** decimals``.

The RPC endpoint for a chain comes from ``RPCURL_<chain_id>``. A
participant whose read fails is logged and skipped; the missing submission
is what eventually surfaces as inactivity.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from web3 import Web3

from .PairKey import PairKey
from .Registry import Registry

if TYPE_CHECKING:
    from web3.contract import Contract

    from .SnapshotRecorder import SnapshotRecorder

logger = logging.getLogger(__name__)

# Subset of the FluxAggregator ABI used for reads.
FLUX_AGGREGATOR_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"internalType": "uint80", "name": "roundId", "type": "uint80"},
            {"internalType": "int256", "name": "answer", "type": "int256"},
            {"internalType": "uint256", "name": "startedAt", "type": "uint256"},
            {"internalType": "uint256", "name": "updatedAt", "type": "uint256"},
            {"internalType": "uint80", "name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "_oracle", "type": "address"},
            {"internalType": "uint32", "name": "_queriedRoundId", "type": "uint32"},
        ],
        "name": "oracleRoundState",
        "outputs": [
            {"internalType": "bool", "name": "_eligibleToSubmit", "type": "bool"},
            {"internalType": "uint32", "name": "_roundId", "type": "uint32"},
            {"internalType": "int256", "name": "_latestSubmission", "type": "int256"},
            {"internalType": "uint64", "name": "_startedAt", "type": "uint64"},
            {"internalType": "uint64", "name": "_timeout", "type": "uint64"},
            {"internalType": "uint128", "name": "_availableFunds", "type": "uint128"},
            {"internalType": "uint8", "name": "_oracleCount", "type": "uint8"},
            {"internalType": "uint128", "name": "_paymentAmount", "type": "uint128"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

_LATEST_SUBMISSION = 2
_MAX_ROUND_ID = 2**32 - 1


class OracleReadError(Exception):
    """Raised when a feed cannot be read at all."""

    pass


@dataclass
class Submission:
    """Latest submission of one participant."""

    participant: str
    price: float
    round_id: int


def scale_submission(raw: int, decimals: int) -> float:
    """Scale an integer submission by the feed decimals.

    .. code-block:: python

        >>> scale_submission(4_123_000_000, 8)
        41.23
    """
    return float(Decimal(int(raw)) / (Decimal(10) ** int(decimals)))


class OracleReader:
    """Reads submissions for every registered participant.

    :ivar registry: Pairs and their participants.
    """

    def __init__(
        self,
        registry: Registry,
        environ: Mapping[str, str] | None = None,
        web3_factory: Callable[[str], Web3] | None = None,
    ) -> None:
        """Initialize the reader.

        :param registry: Registry of pairs and participants.
        :param environ: Where ``RPCURL_<chain_id>`` is looked up (default: os.environ).
        :param web3_factory: Builds a Web3 for an RPC URL (default: HTTPProvider).
        """
        self.registry = registry
        self._environ = os.environ if environ is None else environ
        self._web3_factory = web3_factory or (lambda url: Web3(Web3.HTTPProvider(url)))
        self._web3: dict[int, Web3] = {}
        self._decimals: dict[PairKey, int] = {}

    def web3_for(self, chain_id: int) -> Web3:
        """Return the (cached) Web3 instance for a chain.

        :raises OracleReadError: If ``RPCURL_<chain_id>`` is not set.
        """
        if chain_id not in self._web3:
            url = self._environ.get(f"RPCURL_{chain_id}")
            if not url:
                raise OracleReadError(f"Missing RPCURL_{chain_id} in environment")
            self._web3[chain_id] = self._web3_factory(url)
        return self._web3[chain_id]

    def contract_for(self, pair: PairKey) -> Contract:
        w3 = self.web3_for(pair.chain_id)
        return w3.eth.contract(
            address=Web3.to_checksum_address(pair.contract_address),
            abi=FLUX_AGGREGATOR_ABI,
        )

    def read_pair(self, pair: PairKey) -> list[Submission]:
        """Read every registered participant of one feed.

        :returns: Submissions that could be read.
        :raises OracleReadError: If the feed itself cannot be read.
        """
        participants = self.registry.participants_for(pair)
        if not participants:
            return []

        try:
            contract = self.contract_for(pair)
            if pair not in self._decimals:
                self._decimals[pair] = int(contract.functions.decimals().call())
            decimals = self._decimals[pair]
            round_data = contract.functions.latestRoundData().call()
        except OracleReadError:
            raise
        except Exception as e:
            raise OracleReadError(f"Cannot read feed {pair}: {e}") from e

        round_id = int(round_data[0])
        if not 0 <= round_id <= _MAX_ROUND_ID:
            round_id = 0

        submissions: list[Submission] = []
        for participant in participants:
            try:
                state = contract.functions.oracleRoundState(
                    Web3.to_checksum_address(participant), round_id
                ).call()
                price = scale_submission(state[_LATEST_SUBMISSION], decimals)
            except Exception as e:
                logger.warning(f"oracleRoundState failed for {participant} on {pair}: {e}")
                continue
            submissions.append(Submission(participant, price, round_id))

        logger.debug(f"{pair}: read {len(submissions)}/{len(participants)} submissions (round {round_id})")
        return submissions

    async def read_and_record(
        self,
        run_id: int,
        recorder: SnapshotRecorder,
        pairs: list[PairKey] | None = None,
    ) -> int:
        """Read all feeds and record the submissions.

        :returns: Number of snapshots written.
        """
        written = 0
        failed = 0
        for pair in pairs if pairs is not None else self.registry.active_pairs():
            try:
                submissions = await asyncio.to_thread(self.read_pair, pair)
            except Exception as e:
                logger.error(f"Oracle ingest failed for {pair}: {e}")
                failed += 1
                continue
            for submission in submissions:
                try:
                    if recorder.record_oracle_snapshot(run_id, pair, submission.participant, submission.price):
                        written += 1
                except ValueError as e:
                    logger.warning(f"Skipping submission of {submission.participant} on {pair}: {e}")
        logger.info(f"Oracle ingest complete: {written} submission(s) recorded, {failed} feed(s) failed")
        return written
