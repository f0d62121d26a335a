"""BatchFetchCoordinator: Concurrent datasource fetching for one run.

Every (pair, source) configured in the registry is fetched concurrently,
bounded by a semaphore, and each fetch has its own timeout. A failure is
returned as an error detail for that (pair, source) only; it never aborts
the other fetches.

API keys are read from ``API_KEY_<SOURCE>`` (e.g. ``API_KEY_COINMARKETCAP``)
and substituted into ``${api_key}`` header placeholders.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .fetchers import BaseFetcher, get_fetcher
from .PairKey import PairKey
from .Registry import Registry, SourceConfig

if TYPE_CHECKING:
    from .SnapshotRecorder import SnapshotRecorder

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Outcome of one (pair, source) fetch.

    :ivar price: Fetched price, or None on failure.
    :ivar error: Failure detail, or None on success.
    """

    pair: PairKey
    source: str
    price: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.price is not None and self.error is None


class BatchFetchCoordinator:
    """Fetches all configured datasources with bounded concurrency.

    :ivar registry: Source configurations per pair.
    :ivar fetch_timeout: Timeout for one fetch in seconds.
    :ivar concurrency: Maximum fetches in flight.
    """

    def __init__(
        self,
        registry: Registry,
        fetch_timeout: float = 10.0,
        concurrency: int = 8,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the coordinator.

        :param registry: Registry holding the source configurations.
        :param fetch_timeout: Per-fetch timeout (default: 10.0).
        :param concurrency: Max concurrent fetches (default: 8).
        :param environ: Where ``API_KEY_<SOURCE>`` is looked up (default: os.environ).
        :raises ValueError: If timeout or concurrency are not positive.
        """
        if fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.registry = registry
        self.fetch_timeout = fetch_timeout
        self.concurrency = concurrency
        self._environ = os.environ if environ is None else environ
        self._fetchers: dict[tuple[str, str], BaseFetcher] = {}

    def fetcher_for(self, config: SourceConfig) -> BaseFetcher:
        """Return the (cached) fetcher instance for a source.

        :raises ValueError: If the configured fetcher is unknown.
        """
        key = (config.fetcher, config.name)
        if key not in self._fetchers:
            api_key = self._environ.get(f"API_KEY_{config.name.upper()}")
            self._fetchers[key] = get_fetcher(config.fetcher, api_key=api_key, timeout=self.fetch_timeout)
        return self._fetchers[key]

    async def fetch_all(self, pairs: list[PairKey] | None = None) -> list[FetchResult]:
        """Fetch every (pair, source).

        :param pairs: Pairs to fetch (default: all active pairs).
        :returns: One FetchResult per configured (pair, source).
        """
        jobs: list[tuple[PairKey, SourceConfig]] = []
        for pair in pairs if pairs is not None else self.registry.active_pairs():
            for source in self.registry.sources_for(pair):
                config = self.registry.source_config(pair, source)
                if config is not None:
                    jobs.append((pair, config))

        if not jobs:
            logger.info("No datasources configured; nothing to fetch")
            return []

        semaphore = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(
            *(self._fetch_one(semaphore, pair, config) for pair, config in jobs),
            return_exceptions=True,
        )

        merged: list[FetchResult] = []
        for (pair, config), result in zip(jobs, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"[{config.name}] Fetch exception for {pair}: {result}")
                merged.append(FetchResult(pair, config.name, error=str(result) or type(result).__name__))
            else:
                merged.append(result)

        ok = sum(1 for r in merged if r.ok)
        logger.info(f"Fetched {ok}/{len(merged)} datasource prices")
        return merged

    async def _fetch_one(
        self,
        semaphore: asyncio.Semaphore,
        pair: PairKey,
        config: SourceConfig,
    ) -> FetchResult:
        """Fetch one (pair, source) with timeout.

        :returns: FetchResult with either a price or an error detail.
        """
        async with semaphore:
            try:
                fetcher = self.fetcher_for(config)
                price = await asyncio.wait_for(fetcher.fetch(config), timeout=self.fetch_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[{config.name}] Timeout fetching {pair}")
                return FetchResult(pair, config.name, error=f"timeout after {self.fetch_timeout:g}s")
            except Exception as e:
                logger.warning(f"[{config.name}] Error fetching {pair}: {e}")
                return FetchResult(pair, config.name, error=str(e) or type(e).__name__)
        return FetchResult(pair, config.name, price=price)

    async def fetch_and_record(
        self,
        run_id: int,
        recorder: SnapshotRecorder,
        pairs: list[PairKey] | None = None,
    ) -> list[FetchResult]:
        """Fetch everything and hand each result to the recorder."""
        results = await self.fetch_all(pairs)
        for result in results:
            try:
                if result.ok:
                    recorder.record_snapshot(run_id, result.pair, result.source, result.price)
                else:
                    recorder.record_fetch_error(run_id, result.pair, result.source, result.error)
            except Exception:
                logger.exception(f"[{result.source}] Could not record result for {result.pair}")
        return results

    async def close(self) -> None:
        """Close the shared HTTP client."""
        await BaseFetcher.close_shared_client()
