"""Unit tests for Notifier."""

import json

import httpx
import pytest

from feedwatch.src.Notifier import (
    Delivery,
    LogNotifier,
    NotifierError,
    WebhookNotifier,
    chunk_text,
    deliver,
    with_counters,
)
from feedwatch.tests.conftest import ADMIN, OWNER

URL = "https://hooks.example/notify"


def _webhook(status: int, posted: list) -> WebhookNotifier:
    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(status, text="nope" if status >= 400 else "ok")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(URL, chunk_size=50, send_delay=0, client=client)


class TestChunkText:
    """Test message splitting."""

    def test_short_text_untouched(self) -> None:
        """Text within the limit is one chunk."""
        assert chunk_text("hello", max_len=10) == ["hello"]

    def test_prefers_paragraph_break(self) -> None:
        """Cuts happen at a paragraph break when one is available."""
        text = "x" * 10 + "\n\n" + "y" * 5 + "\n" + "z" * 5
        assert chunk_text(text, max_len=20) == ["x" * 10, "yyyyy\nzzzzz"]

    def test_hard_cut(self) -> None:
        """Without boundaries the text is cut at the limit."""
        assert chunk_text("a" * 10, max_len=4) == ["aaaa", "aaaa", "aa"]

    def test_early_boundary_ignored(self) -> None:
        """A boundary in the first 40% of the window is not used."""
        assert chunk_text("a " + "b" * 10, max_len=6) == ["a bbbb", "bbbbbb"]

    def test_invalid_limit(self) -> None:
        """A non-positive limit raises ValueError."""
        with pytest.raises(ValueError):
            chunk_text("x", max_len=0)

    def test_counters(self) -> None:
        """Multi-part messages get counters, except fenced chunks."""
        assert with_counters(["a"]) == ["a"]
        assert with_counters(["a", "```b```", "c"]) == ["a\n_1/3_", "```b```", "c\n_3/3_"]


class TestWebhookNotifier:
    """Test the webhook transport."""

    async def test_delivered(self) -> None:
        """A 2xx response is a delivery; long text is posted in chunks."""
        posted: list = []
        notifier = _webhook(200, posted)

        result = await notifier.send(OWNER, "word " * 30)

        assert result is Delivery.DELIVERED
        assert len(posted) > 1
        assert all(p["recipient_id"] == OWNER for p in posted)
        assert posted[0]["content"].endswith(f"_1/{len(posted)}_")
        await notifier.close()

    async def test_forbidden_is_undeliverable(self) -> None:
        """403 means the recipient cannot be reached."""
        posted: list = []
        notifier = _webhook(403, posted)
        assert await notifier.send(OWNER, "hi") is Delivery.UNDELIVERABLE

    async def test_server_error_raises(self) -> None:
        """Other failures raise NotifierError."""
        notifier = _webhook(500, [])
        with pytest.raises(NotifierError, match="HTTP 500"):
            await notifier.send(OWNER, "hi")

    async def test_connection_error_raises(self) -> None:
        """Transport errors raise NotifierError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier(URL, client=client)
        with pytest.raises(NotifierError, match="Request failed"):
            await notifier.send(OWNER, "hi")

    def test_requires_url(self) -> None:
        """An empty URL is rejected."""
        with pytest.raises(NotifierError):
            WebhookNotifier("")


class TestDeliver:
    """Test the delivery policy."""

    async def test_log_notifier(self, registry) -> None:
        """LogNotifier always delivers."""
        assert await deliver(LogNotifier(), registry, OWNER, "hi") is Delivery.DELIVERED

    async def test_opted_out(self, registry, notifier) -> None:
        """Recipients who opted out are skipped."""
        registry.disable_notifications(OWNER)
        assert await deliver(notifier, registry, OWNER, "hi") is None
        assert notifier.sent == []

    async def test_failure_logged(self, registry, notifier, caplog) -> None:
        """Transport failures are logged, not raised."""
        notifier.failing.add(OWNER)
        assert await deliver(notifier, registry, OWNER, "hi") is None
        assert "Could not notify alice" in caplog.text
        assert registry.accepts_notifications(OWNER)

    async def test_unreachable_owner_disabled(self, registry, notifier) -> None:
        """Unreachable non-admins are disabled."""
        notifier.unreachable.add(OWNER)
        assert await deliver(notifier, registry, OWNER, "hi") is Delivery.UNDELIVERABLE
        assert not registry.accepts_notifications(OWNER)

    async def test_unreachable_admin_kept(self, registry, notifier) -> None:
        """Unreachable admins are never disabled."""
        notifier.unreachable.add(ADMIN)
        assert await deliver(notifier, registry, ADMIN, "hi") is Delivery.UNDELIVERABLE
        assert registry.accepts_notifications(ADMIN)
