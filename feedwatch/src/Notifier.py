"""Notifier: One-method notification interface, webhook transport and delivery policy.

The monitor only ever calls ``await notifier.send(recipient_id, text)`` and
receives a :class:`Delivery`. Length limits and chunking belong to the
transport; :class:`WebhookNotifier` posts each chunk as JSON through the
shared ``httpx.AsyncClient`` pattern used by the fetchers.

:func:`deliver` applies the policy around a send: skip recipients who opted
out, log failures, and disable future notifications for non-admin
recipients that turned out to be unreachable. Administrators are never
auto-disabled.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .Registry import Registry

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
CHUNK_TARGET = 1900
CODE_FENCE = "```"

# Status codes meaning the recipient cannot be reached at all.
UNDELIVERABLE_STATUS = frozenset({403, 404, 410})


class Delivery(enum.Enum):
    """Outcome of one send."""

    DELIVERED = "delivered"
    UNDELIVERABLE = "undeliverable"


class NotifierError(Exception):
    """Raised on transport failures that say nothing about the recipient."""

    pass


def chunk_text(text: str, max_len: int = CHUNK_TARGET) -> list[str]:
    """Split ``text`` into chunks of at most ``max_len`` characters.

    Cuts prefer a paragraph break, then a line break, then a space. A
    boundary in the first 40% of the window is ignored in favour of a hard
    cut so chunks do not become tiny.

    .. code-block:: python

        >>> chunk_text("aaaa bbbb", max_len=6)
        ['aaaa', 'bbbb']
    """
    if max_len < 1:
        raise ValueError("max_len must be positive")
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_len:
        head = remaining[:max_len]
        cut = -1
        for boundary in ("\n\n", "\n", " "):
            cut = head.rfind(boundary)
            if cut != -1:
                break
        if cut < int(max_len * 0.4):
            cut = max_len
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def with_counters(chunks: list[str]) -> list[str]:
    """Append ``_i/n_`` to each chunk of a multi-part message.

    Chunks holding a code fence are left untouched so the fence renders.
    """
    total = len(chunks)
    if total <= 1:
        return list(chunks)
    return [
        body if CODE_FENCE in body else f"{body}\n_{i}/{total}_"
        for i, body in enumerate(chunks, start=1)
    ]


class Notifier(ABC):
    """Sends a text message to one recipient."""

    @abstractmethod
    async def send(self, recipient_id: str, text: str) -> Delivery:
        """Send ``text`` to ``recipient_id``.

        :returns: DELIVERED, or UNDELIVERABLE when the recipient cannot be
            reached.
        :raises NotifierError: On other transport failures.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


class LogNotifier(Notifier):
    """Writes messages to the log instead of sending them."""

    async def send(self, recipient_id: str, text: str) -> Delivery:
        logger.info(f"[notify:{recipient_id}]\n{text}")
        return Delivery.DELIVERED


class WebhookNotifier(Notifier):
    """Posts messages to an HTTP webhook, one request per chunk.

    Each request body is ``{"recipient_id": ..., "content": ...}``.

    :ivar url: Webhook URL.
    :ivar chunk_size: Maximum characters per request before counters.
    :ivar send_delay: Pause between chunks of one message, in seconds.
    """

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        url: str,
        *,
        chunk_size: int = CHUNK_TARGET,
        send_delay: float = 0.35,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the notifier.

        :param url: Webhook URL.
        :param chunk_size: Max characters per chunk.
        :param send_delay: Pause between chunks.
        :param timeout: Request timeout in seconds (default: 10).
        :param headers: Extra request headers (e.g. authorization).
        :param client: Optional pre-built client (tests pass a MockTransport).
        :raises NotifierError: If the URL is empty.
        """
        if not url:
            raise NotifierError("Webhook URL is required")
        self.url = url
        self.chunk_size = chunk_size
        self.send_delay = send_delay
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def send(self, recipient_id: str, text: str) -> Delivery:
        chunks = with_counters(
            [c[:MESSAGE_LIMIT] for c in chunk_text(text, self.chunk_size)]
        )
        client = self._get_client()
        for i, body in enumerate(chunks):
            try:
                response = await client.post(
                    self.url,
                    json={"recipient_id": recipient_id, "content": body},
                    headers=self.headers,
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as e:
                raise NotifierError(f"Request timeout: {e}") from e
            except httpx.RequestError as e:
                raise NotifierError(f"Request failed: {e}") from e

            if response.status_code in UNDELIVERABLE_STATUS:
                logger.debug(
                    f"Webhook refused {recipient_id} with {response.status_code}: "
                    f"{response.text[:200]}"
                )
                return Delivery.UNDELIVERABLE
            if not response.is_success:
                raise NotifierError(f"HTTP {response.status_code}: {response.text[:200]}")

            if i < len(chunks) - 1 and self.send_delay > 0:
                await asyncio.sleep(self.send_delay)
        return Delivery.DELIVERED

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


async def deliver(
    notifier: Notifier,
    registry: Registry,
    recipient_id: str,
    text: str,
) -> Delivery | None:
    """Send with the monitor's delivery policy.

    :returns: The delivery outcome, or None when the recipient opted out
        or the transport failed.
    """
    who = f"{registry.display_name(recipient_id)} ({recipient_id})"
    if not registry.accepts_notifications(recipient_id):
        logger.info(f"Not notifying {who}: notifications disabled")
        return None

    try:
        result = await notifier.send(recipient_id, text)
    except Exception as e:
        logger.warning(f"Could not notify {who}: {e}")
        return None

    if result is Delivery.UNDELIVERABLE:
        if registry.is_admin(recipient_id):
            logger.warning(f"Could not notify admin {who}; admins are never disabled")
        else:
            logger.warning(f"Could not notify {who}; disabling notifications")
            registry.disable_notifications(recipient_id)
    else:
        logger.info(f"Notified {who}")
    return result
