"""Generic JSON fetcher.

Most price APIs answer a GET with a JSON document holding the price at a
fixed location. The source configuration carries the URL and a dotted
``response_path`` to that location; list indices may be written either as
``tickers.0.last`` or ``tickers[0].last``.

.. code-block:: python

    >>> extract({"data": {"tickers": [{"last": "0.0412"}]}}, "data.tickers[0].last")
    '0.0412'
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from .base import BaseFetcher, FetcherConfigError, FetcherError, register_fetcher

if TYPE_CHECKING:
    from ..Registry import SourceConfig

logger = logging.getLogger(__name__)

_INDEX = re.compile(r"\[(\d+)\]")


def extract(document: Any, path: str) -> Any:
    """Walk ``path`` through ``document``.

    :param document: Decoded JSON.
    :param path: Dotted path with optional ``[n]`` indices.
    :returns: The value found.
    :raises FetcherError: If a segment does not exist.
    """
    current = document
    for segment in _INDEX.sub(r".\1", path).split("."):
        if segment == "":
            continue
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise FetcherError(f"Path '{path}' not found at segment '{segment}'")
    return current


@register_fetcher
class JsonPathFetcher(BaseFetcher):
    """Fetches ``config.url`` and reads the price at ``config.response_path``."""

    name = "json"

    async def fetch(self, config: SourceConfig) -> float:
        if not config.url or not config.url.strip():
            raise FetcherConfigError(f"{config.name}: url missing")
        if not config.response_path or not config.response_path.strip():
            raise FetcherConfigError(f"{config.name}: response path missing")

        document = await self.get_json(config.url, headers=self.headers_for(config))
        value = extract(document, config.response_path)
        price = self.to_price(value)
        logger.debug(f"[{config.name}] {config.response_path} = {price}")
        return price
