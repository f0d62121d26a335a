"""
Price fetchers for configured datasources.

Usage:
    from feedwatch.src.fetchers import get_fetcher

    fetcher = get_fetcher("json", api_key=os.environ.get("API_KEY_COINMARKETCAP"))
    price = await fetcher.fetch(registry.source_config(pair, "coinmarketcap"))
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .jsonpath import JsonPathFetcher, extract

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherConfigError",
    "FetcherHTTPError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "JsonPathFetcher",
    "extract",
]
