"""Tests for Telegram alerts."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from copybot.alerts.telegram import (
    MAX_MESSAGE_LENGTH,
    NoopAlertSink,
    TelegramAlertSink,
    format_new_signal,
    format_take_profit_executed,
    format_take_profit_failed,
    format_trade_executed,
    truncate,
    tx_link,
)
from copybot.core.errors import UpstreamUnavailableError
from copybot.core.types import TakeProfitOrder, TradeDirection

SEND_URL = "https://api.telegram.org/bottest_token_123/sendMessage"


def telegram_reply(body: dict) -> MagicMock:
    response = MagicMock()
    response.json.return_value = body
    return response


@pytest.fixture
def session():
    mock = AsyncMock(spec=httpx.AsyncClient)
    mock.post.return_value = telegram_reply({"ok": True, "result": {"message_id": 1}})
    return mock


@pytest.fixture
def sink(session):
    return TelegramAlertSink(
        bot_token="test_token_123", admin_user_ids=[12345, 67890], session=session
    )


@pytest.fixture
def order():
    return TakeProfitOrder(
        id="tp_1_abc",
        token_mint="BonkMint",
        token_symbol="BONK",
        entry_price=0.002,
        target_price=0.003,
        target_percentage=50,
        sell_percentage=25,
        amount=1000,
        created_at=1,
    )


class TestFormatting:
    """Test alert message formatting."""

    def test_new_signal_escapes_names(self):
        """Whale labels and token symbols are HTML escaped."""
        text = format_new_signal("<Big> & Fish", TradeDirection.BUY, "B<NK", 1.23456)

        assert "&lt;Big&gt; &amp; Fish" in text
        assert "B&lt;NK" in text
        assert "1.235 SOL" in text
        assert "BUY" in text

    def test_tx_link(self):
        """Signatures link to Solscan; missing ones are marked."""
        assert tx_link("5abcdefghijk") == (
            '<a href="https://solscan.io/tx/5abcdefghijk">5abcdefg...</a>'
        )
        assert tx_link(None) == "n/a"

    def test_trade_executed(self):
        """Executed trades show amount and a transaction link."""
        text = format_trade_executed("BONK", 0.1, "sig123")

        assert "0.1 SOL" in text
        assert "solscan.io/tx/sig123" in text

    def test_take_profit_messages(self, order):
        """Take-profit alerts carry the order's percentages or the error."""
        assert "Sold 25% at +50%" in format_take_profit_executed(order, "sig")
        assert "Wallet &lt;offline&gt;" in format_take_profit_failed(
            order, "Wallet <offline>"
        )

    def test_truncate(self):
        """Oversized messages are cut with a marker."""
        assert truncate("short") == "short"
        text = truncate("x" * 5000)
        assert text.endswith("... (truncated)")
        assert len(text) == MAX_MESSAGE_LENGTH + len("\n... (truncated)")


class TestTelegramAlertSink:
    """Test delivering alerts through the Bot API."""

    @pytest.mark.asyncio
    async def test_push_to_every_admin(self, sink, session):
        """Every admin chat receives the HTML message."""
        await sink.push("🐋 Big Fish BUY BONK")

        assert session.post.call_count == 2
        url, kwargs = session.post.call_args_list[0][0][0], session.post.call_args_list[0][1]
        assert url == SEND_URL
        assert kwargs["json"]["chat_id"] == 12345
        assert kwargs["json"]["parse_mode"] == "HTML"
        assert kwargs["json"]["disable_web_page_preview"] is True
        assert session.post.call_args_list[1][1]["json"]["chat_id"] == 67890

    @pytest.mark.asyncio
    async def test_push_truncates(self, sink, session):
        """Long messages are truncated before sending."""
        await sink.push("x" * 5000)

        text = session.post.call_args_list[0][1]["json"]["text"]
        assert text.endswith("... (truncated)")

    @pytest.mark.asyncio
    async def test_no_admins(self, session):
        """Nothing is sent without admin chats."""
        sink = TelegramAlertSink("test_token_123", [], session=session)

        await sink.push("hello")

        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_chat_failing(self, sink, session):
        """A failing chat does not stop delivery to the rest."""
        failing = MagicMock()
        failing.raise_for_status.side_effect = httpx.HTTPStatusError(
            "Forbidden", request=MagicMock(), response=MagicMock()
        )
        session.post.side_effect = [failing, telegram_reply({"ok": True})]

        await sink.push("hello")

        assert session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_api_error(self, sink, session):
        """A not-ok reply raises UpstreamUnavailableError."""
        session.post.return_value = telegram_reply(
            {"ok": False, "description": "Bad Request"}
        )

        with pytest.raises(UpstreamUnavailableError, match="telegram: Bad Request"):
            await sink._send(12345, "hello")

    @pytest.mark.asyncio
    async def test_api_error_swallowed_by_push(self, sink, session):
        """push never raises on API errors."""
        session.post.return_value = telegram_reply({"ok": False})

        await sink.push("hello")

    @pytest.mark.asyncio
    async def test_context_manager(self, session):
        """Leaving the context closes the session."""
        async with TelegramAlertSink("test_token_123", [1], session) as sink:
            assert isinstance(sink, TelegramAlertSink)

        session.aclose.assert_awaited_once()


class TestNoopAlertSink:
    """Test the fallback sink."""

    @pytest.mark.asyncio
    async def test_push_does_not_raise(self):
        """The noop sink only logs."""
        await NoopAlertSink().push("anything")
