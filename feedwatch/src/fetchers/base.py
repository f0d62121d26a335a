"""Base fetcher interface and shared HTTP client management.

A fetcher turns one :class:`SourceConfig` (URL, response path, headers)
into a price. All fetchers share one ``httpx.AsyncClient`` to avoid
connection overhead, and report every failure as a :class:`FetcherError`
so the caller can record a fetch error for that (pair, source).

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"

        async def fetch(self, config: SourceConfig) -> float:
            document = await self.get_json(config.url, headers=self.headers_for(config))
            return self.to_price(document["quote"]["last"])
"""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

if TYPE_CHECKING:
    from ..Registry import SourceConfig

logger = logging.getLogger(__name__)

API_KEY_PLACEHOLDER = "${api_key}"


class FetcherError(Exception):
    """Base exception for fetcher errors."""

    pass


class FetcherConfigError(FetcherError):
    """Raised when a source configuration is unusable (e.g., no URL)."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class BaseFetcher(ABC):
    """A way of reading one price out of a datasource.

    Which fetcher a source uses is its ``fetcher`` setting; the fetcher
    gets the source's URL, response path and headers at call time, so one
    instance serves every pair of that source.

    :cvar name: Registry name.
    :cvar DEFAULT_TIMEOUT: Request timeout when none is given, in seconds.
    :ivar api_key: Value for ``${api_key}`` header placeholders, if any.
    :ivar timeout: Request timeout in seconds.
    """

    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key or None
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @property
    def has_api_key(self) -> bool:
        return self.api_key is not None

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared client (tests install one with a MockTransport)."""
        BaseFetcher._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    @abstractmethod
    async def fetch(self, config: SourceConfig) -> float:
        """Fetch the current price described by ``config``.

        :param config: Source configuration for one pair.
        :returns: Positive, finite price.
        :raises FetcherError: If the request fails or no valid price is found.
        """
        pass

    def headers_for(self, config: SourceConfig) -> dict[str, str]:
        """Request headers with ``${api_key}`` substituted.

        :raises FetcherConfigError: If a header needs a key and none is set.
        """
        headers: dict[str, str] = {}
        for key, value in (config.headers or {}).items():
            value = str(value)
            if API_KEY_PLACEHOLDER in value:
                if not self.has_api_key:
                    raise FetcherConfigError(f"{config.name}: header '{key}' needs an API key")
                value = value.replace(API_KEY_PLACEHOLDER, self.api_key or "")
            headers[key] = value
        return headers

    @staticmethod
    def to_price(value: Any) -> float:
        """Convert a raw JSON value to a valid price.

        :raises FetcherError: If the value is missing, non-numeric, non-finite
            or not positive.
        """
        try:
            price = float(value)
        except (TypeError, ValueError):
            raise FetcherError(f"Invalid price value: {value!r}") from None
        if not math.isfinite(price) or price <= 0:
            raise FetcherError(f"Invalid price value: {value!r}")
        return price

    async def get_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """GET ``url`` on the shared client and decode the JSON body.

        Transport failures, non-2xx statuses and undecodable bodies all
        surface as :class:`FetcherError` so each (pair, source) can record
        its own fetch error.

        :param url: Request URL.
        :param headers: Request headers, already substituted.
        :returns: Decoded JSON document.
        :raises FetcherHTTPError: On a non-2xx status.
        :raises FetcherError: On timeouts, connection errors or a non-JSON body.
        """
        try:
            response = await self.get_shared_client().get(url, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

        if response.status_code >= 300:
            body = response.text[:200]
            logger.debug(f"[{self.name}] GET {url} -> {response.status_code}: {body}")
            raise FetcherHTTPError(response.status_code, body)

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise FetcherError(f"Response is not JSON: {e}") from e


# Fetcher name (SourceConfig.fetcher) -> class, filled by @register_fetcher
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Make ``cls`` selectable from a source's ``fetcher`` setting.

    :raises ValueError: If the class has no ``name`` or the name is taken.
    """
    if not cls.name:
        raise ValueError(f"{cls.__name__} has no fetcher name")
    existing = FETCHER_REGISTRY.get(cls.name)
    if existing is not None and existing is not cls:
        raise ValueError(f"Fetcher name '{cls.name}' already used by {existing.__name__}")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, api_key: str | None = None, timeout: float | None = None) -> BaseFetcher:
    """Instantiate the fetcher registered as ``name``.

    :raises ValueError: If nothing is registered under ``name``.
    """
    try:
        fetcher_cls = FETCHER_REGISTRY[name]
    except KeyError:
        known = ", ".join(get_available_fetchers())
        raise ValueError(f"Unknown fetcher '{name}'. Available: {known}") from None
    return fetcher_cls(api_key=api_key, timeout=timeout)


def get_available_fetchers() -> list[str]:
    """Registered fetcher names, sorted."""
    return sorted(FETCHER_REGISTRY)
