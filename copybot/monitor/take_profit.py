"""Take-profit orders: creation, price monitoring and execution."""

import asyncio
import inspect
import math
import secrets
import string
import time
from collections.abc import Callable
from typing import Any, Literal

import structlog

from ..core.interfaces import MarketDataSource, Persistence, QuoteProvider, Wallet
from ..core.types import (
    SOL_MINT,
    OrderStatus,
    PnL,
    SwapResult,
    TakeProfitOrder,
    TradeHistoryEntry,
)

logger = structlog.get_logger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0
TAKE_PROFIT_SLIPPAGE_BPS = 100

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


def generate_order_id() -> str:
    """Unique order id of the form ``tp_<ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"tp_{now_ms()}_{suffix}"


def create_take_profit_order(
    token_mint: str,
    token_symbol: str,
    entry_price: float,
    target_percentage: float,
    sell_percentage: float,
    amount: float,
) -> TakeProfitOrder:
    """Build a pending order whose target is entry_price raised by target_percentage.

    Args:
        token_mint: Token to sell
        token_symbol: Display symbol
        entry_price: Price paid per token
        target_percentage: Gain (in percent) that triggers the sell
        sell_percentage: Share of holdings to sell, in percent
        amount: Holdings in token base units

    Returns:
        New TakeProfitOrder in pending state
    """
    return TakeProfitOrder(
        id=generate_order_id(),
        token_mint=token_mint,
        token_symbol=token_symbol,
        entry_price=entry_price,
        target_price=entry_price * (1 + target_percentage / 100),
        target_percentage=target_percentage,
        sell_percentage=sell_percentage,
        amount=amount,
        status=OrderStatus.PENDING,
        created_at=now_ms(),
    )


def calculate_pnl(current_value: float, entry_price: float, amount: float) -> PnL:
    """Profit and loss of a position.

    Args:
        current_value: Current value of the whole position
        entry_price: Price paid per token
        amount: Position size in tokens

    Returns:
        PnL with the percentage (0 when the entry value is 0) and absolute value
    """
    entry_value = entry_price * amount
    pnl_value = current_value - entry_value
    pnl_percentage = (pnl_value / entry_value) * 100 if entry_value > 0 else 0.0
    return PnL(pnl=pnl_percentage, pnl_percentage=pnl_percentage, pnl_value=pnl_value)


async def cancel_order(storage: Persistence, order_id: str) -> TakeProfitOrder | None:
    """Cancel a pending order.

    Returns:
        The cancelled order, or None if it is unknown or no longer pending
    """
    order = await storage.get_order(order_id)
    if order is None or order.status != OrderStatus.PENDING:
        return None
    cancelled = await storage.transition_order(order, OrderStatus.CANCELLED)
    if cancelled is not None:
        logger.info("Take-profit order cancelled", order_id=order_id)
    return cancelled


async def _fire(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error("Take-profit callback failed", error=str(e))


class TakeProfitMonitor:
    """Polls prices of pending orders and sells once a target is reached.

    Status changes are compare-and-swap updates on the order's version, so an
    order cancelled or triggered elsewhere between read and write is skipped.
    """

    def __init__(
        self,
        storage: Persistence,
        market_data: MarketDataSource,
        quotes: QuoteProvider,
        wallet: Wallet | None = None,
        on_order_triggered: Callable[[TakeProfitOrder], Any] | None = None,
        on_order_executed: Callable[[TakeProfitOrder, str], Any] | None = None,
        on_order_failed: Callable[[TakeProfitOrder, str], Any] | None = None,
        slippage_bps: int = TAKE_PROFIT_SLIPPAGE_BPS,
    ) -> None:
        """Initialize the monitor.

        Args:
            storage: Persistence backend holding the orders
            market_data: Price source
            quotes: Swap provider used to sell
            wallet: The order owner's wallet; sells fail while it is not connected
            on_order_triggered: Called with the order when its target is hit
            on_order_executed: Called with the order and tx signature after a sell
            on_order_failed: Called with the order and error after a failed sell
            slippage_bps: Slippage for take-profit sells
        """
        self.storage = storage
        self.market_data = market_data
        self.quotes = quotes
        self.wallet = wallet
        self.on_order_triggered = on_order_triggered
        self.on_order_executed = on_order_executed
        self.on_order_failed = on_order_failed
        self.slippage_bps = slippage_bps

        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    # Order management

    async def create_order(
        self,
        token_mint: str,
        token_symbol: str,
        entry_price: float,
        target_percentage: float,
        sell_percentage: float,
        amount: float,
    ) -> TakeProfitOrder:
        """Create and store a pending order."""
        order = create_take_profit_order(
            token_mint, token_symbol, entry_price, target_percentage, sell_percentage, amount
        )
        await self.storage.insert_order(order)
        return order

    async def cancel_order(self, order_id: str) -> TakeProfitOrder | None:
        """Cancel a pending order."""
        return await cancel_order(self.storage, order_id)

    # Lifecycle

    def start(self, check_interval: float = DEFAULT_CHECK_INTERVAL) -> None:
        """Check immediately, then every ``check_interval`` seconds.

        Must be called from a running event loop.
        """
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(check_interval))
        logger.info("Take-profit monitor started", check_interval=check_interval)

    def stop(self) -> None:
        """Prevent the next tick. A check already in progress runs to completion."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        logger.info("Take-profit monitor stopped")

    def is_monitoring(self) -> bool:
        return self._running

    async def wait_closed(self) -> None:
        """Wait for the polling task to finish after stop()."""
        if self._task is not None:
            await self._task

    async def _run(self, check_interval: float) -> None:
        while self._running:
            try:
                await self.check_all_orders()
            except Exception as e:
                logger.error("Take-profit check failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=check_interval)
            except TimeoutError:
                pass

    # Checks

    async def check_take_profit_trigger(
        self, order: TakeProfitOrder
    ) -> tuple[bool, float]:
        """Whether an order's target is reached.

        Returns:
            (should_trigger, current_price); lookup errors never trigger
        """
        if order.status != OrderStatus.PENDING:
            return False, 0.0

        try:
            price_data = await self.market_data.get_token_price_data(order.token_mint)
        except Exception as e:
            logger.warning(
                "Price check failed", order_id=order.id, token_mint=order.token_mint, error=str(e)
            )
            return False, 0.0

        current_price = price_data.price if price_data else 0.0
        return current_price >= order.target_price and current_price > 0, current_price

    async def check_all_orders(self) -> list[TakeProfitOrder]:
        """Evaluate every pending order once.

        Returns:
            Orders that reached a final state during this check
        """
        pending = await self.storage.list_orders(status=OrderStatus.PENDING)
        if not pending:
            return []

        logger.debug("Checking pending take-profit orders", count=len(pending))
        finished: list[TakeProfitOrder] = []
        for order in pending:
            try:
                result = await self._check_order(order)
            except Exception as e:
                logger.error("Take-profit order check failed", order_id=order.id, error=str(e))
                continue
            if result is not None:
                finished.append(result)
        return finished

    async def _check_order(self, order: TakeProfitOrder) -> TakeProfitOrder | None:
        should_trigger, current_price = await self.check_take_profit_trigger(order)
        if not should_trigger:
            return None

        triggered = await self.storage.transition_order(
            order, OrderStatus.TRIGGERED, triggered_at=now_ms()
        )
        if triggered is None:
            return None

        logger.info(
            "Take-profit triggered",
            order_id=order.id,
            token=order.token_symbol,
            current_price=current_price,
            target_price=order.target_price,
        )
        await _fire(self.on_order_triggered, triggered)

        if self.wallet is None or not self.wallet.connected:
            result = SwapResult(success=False, error="Wallet not connected")
        else:
            result = await self.execute_take_profit_order(triggered)

        if result.success:
            executed = await self.storage.transition_order(
                triggered,
                OrderStatus.EXECUTED,
                executed_at=now_ms(),
                tx_signature=result.signature,
            )
            if executed is None:
                return None
            await _fire(self.on_order_executed, executed, result.signature or "")
            sold = math.floor(triggered.amount * triggered.sell_percentage / 100)
            await self.record_trade(
                direction="sell",
                token_mint=triggered.token_mint,
                token_symbol=triggered.token_symbol,
                amount=sold,
                price=current_price,
                tx_signature=result.signature or "",
                is_take_profit_order=True,
            )
            return executed

        error = result.error or "Unknown error"
        failed = await self.storage.transition_order(
            triggered, OrderStatus.FAILED, error=error
        )
        if failed is None:
            return None
        logger.warning("Take-profit sell failed", order_id=order.id, error=error)
        await _fire(self.on_order_failed, failed, error)
        return failed

    async def execute_take_profit_order(self, order: TakeProfitOrder) -> SwapResult:
        """Sell ``sell_percentage`` of the order's holdings for SOL.

        Returns:
            SwapResult; never raises
        """
        amount_to_sell = math.floor(order.amount * order.sell_percentage / 100)
        if amount_to_sell <= 0:
            return SwapResult(success=False, error="Nothing to sell")

        try:
            quote = await self.quotes.get_quote(
                order.token_mint, SOL_MINT, amount_to_sell, self.slippage_bps
            )
            if quote is None:
                return SwapResult(success=False, error="Failed to get quote")
            return await self.quotes.execute_swap(self.wallet, quote)
        except Exception as e:
            logger.error("Error executing take-profit order", order_id=order.id, error=str(e))
            return SwapResult(success=False, error=str(e))

    async def record_trade(
        self,
        direction: Literal["buy", "sell"],
        token_mint: str,
        token_symbol: str,
        amount: float,
        price: float,
        tx_signature: str,
        is_take_profit_order: bool = False,
    ) -> TradeHistoryEntry:
        """Append to the trade history; a buy also updates the entry price."""
        timestamp = now_ms()
        entry = TradeHistoryEntry(
            id=f"trade_{timestamp}",
            direction=direction,
            token_mint=token_mint,
            token_symbol=token_symbol,
            amount=amount,
            price=price,
            total_value=amount * price,
            tx_signature=tx_signature,
            timestamp=timestamp,
            is_take_profit_order=is_take_profit_order,
        )
        await self.storage.append_trade_history(entry)
        if direction == "buy":
            await self.storage.set_entry_price(token_mint, price)
        return entry
