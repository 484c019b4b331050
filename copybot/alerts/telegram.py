"""Telegram alerts for copy-trading events."""

from html import escape

import httpx
import structlog

from ..core.errors import UpstreamUnavailableError
from ..core.interfaces import AlertSink
from ..core.types import PreparedTrade, TakeProfitOrder, TradeDirection

logger = structlog.get_logger(__name__)

# Telegram rejects messages longer than 4096 characters
MAX_MESSAGE_LENGTH = 4000
SOLSCAN_TX_URL = "https://solscan.io/tx/"


def tx_link(signature: str | None) -> str:
    """Solscan link for a transaction signature."""
    if not signature:
        return "n/a"
    return f'<a href="{SOLSCAN_TX_URL}{signature}">{signature[:8]}...</a>'


def format_new_signal(
    whale_label: str, direction: TradeDirection, token: str, sol_amount: float
) -> str:
    icon = "🟢" if direction == TradeDirection.BUY else "🔴"
    return (
        f"🐋 <b>{escape(whale_label)}</b> {icon} {direction.value} "
        f"<b>{escape(token)}</b> ({sol_amount:.3f} SOL)"
    )


def format_trade_ready(prepared: PreparedTrade) -> str:
    return (
        f"🎯 <b>Trade ready</b>: {escape(prepared.token_symbol)}\n"
        f"Whale: {escape(prepared.whale_label)}\n"
        f"Score: {prepared.risk_score}/100 ({prepared.risk_level})\n"
        f"Amount: {prepared.sol_amount} SOL\n"
        f"Signal: {prepared.signal_id}"
    )


def format_trade_executed(token_symbol: str, sol_amount: float, signature: str | None) -> str:
    return (
        f"✅ <b>Copy trade executed</b>: {escape(token_symbol)}\n"
        f"Amount: {sol_amount} SOL\n"
        f"Tx: {tx_link(signature)}"
    )


def format_take_profit_executed(order: TakeProfitOrder, signature: str) -> str:
    return (
        f"💰 <b>Take-profit executed</b>: {escape(order.token_symbol)}\n"
        f"Sold {order.sell_percentage:g}% at +{order.target_percentage:g}%\n"
        f"Tx: {tx_link(signature)}"
    )


def format_take_profit_failed(order: TakeProfitOrder, error: str) -> str:
    return (
        f"⚠️ <b>Take-profit failed</b>: {escape(order.token_symbol)}\n"
        f"{escape(error)}"
    )


def truncate(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[:MAX_MESSAGE_LENGTH] + "\n... (truncated)"


class NoopAlertSink(AlertSink):
    """Logs alerts instead of sending them; used when Telegram is not configured."""

    async def push(self, message: str) -> None:
        logger.info("Alert (noop)", message=message)


class TelegramAlertSink(AlertSink):
    """Sends copy-trading alerts to the operator chats of a Telegram bot."""

    def __init__(
        self,
        bot_token: str,
        admin_user_ids: list[int],
        session: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Telegram alert sink.

        Args:
            bot_token: Telegram bot token
            admin_user_ids: Chat ids that receive every alert
            session: Optional HTTP session for requests
            timeout: Request timeout in seconds
        """
        self.admin_user_ids = admin_user_ids
        self.session = session or httpx.AsyncClient(timeout=timeout)
        self.send_url = f"https://api.telegram.org/bot{bot_token}/sendMessage"

        logger.info("Telegram alert sink initialized", admin_count=len(admin_user_ids))

    async def push(self, message: str) -> None:
        """Deliver an HTML alert to every admin chat. Never raises.

        A failure for one chat is logged and does not stop the others.
        """
        if not self.admin_user_ids:
            logger.warning("No admin users configured, skipping alert")
            return

        text = truncate(message)
        delivered = 0
        for chat_id in self.admin_user_ids:
            try:
                await self._send(chat_id, text)
            except Exception as e:
                logger.error("Failed to send alert", chat_id=chat_id, error=str(e))
            else:
                delivered += 1

        logger.debug(
            "Alert delivered", chats=len(self.admin_user_ids), delivered=delivered
        )

    async def _send(self, chat_id: int, text: str) -> None:
        response = await self.session.post(
            self.send_url,
            json={
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
        )
        response.raise_for_status()

        body = response.json()
        if not body.get("ok"):
            raise UpstreamUnavailableError(
                "telegram", body.get("description", "Unknown error")
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.session.aclose()
        logger.info("Telegram alert sink closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
