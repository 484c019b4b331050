"""Core interfaces for the copy-trading service."""

from typing import Any, Protocol, runtime_checkable

from .types import (
    ExecutedTrade,
    OrderStatus,
    PriceData,
    Quote,
    Signal,
    SignalStatus,
    Subscription,
    SwapResult,
    TakeProfitOrder,
    TokenAnalysis,
    TokenContext,
    TradeHistoryEntry,
    TradeStatus,
    Whale,
)


class Cache(Protocol):
    """Key/value cache protocol."""

    def get(self, key: str) -> Any | None:
        """Get cached value or None."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Store a value."""
        ...

    def clear(self) -> None:
        """Drop every entry."""
        ...


class MarketDataSource(Protocol):
    """Market data source protocol."""

    async def get_token_price_data(self, token_mint: str) -> PriceData | None:
        """Current price, volume and liquidity for a token."""
        ...

    async def get_token_context(self, token_mint: str) -> TokenContext:
        """Token metadata and market context for risk scoring."""
        ...


class TokenMetadataSource(Protocol):
    """Token name/symbol lookup protocol."""

    async def get_token_metadata(self, token_mint: str) -> dict[str, Any] | None:
        """Look up name, symbol and image for a mint."""
        ...


class RiskScorer(Protocol):
    """Risk scoring oracle protocol."""

    async def analyze_token(
        self, context: TokenContext, whale_label: str | None = None
    ) -> TokenAnalysis:
        """Score a token. Never raises."""
        ...


@runtime_checkable
class Wallet(Protocol):
    """User-controlled wallet. The service never holds private keys."""

    @property
    def connected(self) -> bool:
        """Whether the wallet can currently sign."""
        ...

    def pubkey_base58(self) -> str:
        """Wallet public key in base58."""
        ...

    async def sign_transaction(self, txn_bytes: bytes) -> bytes:
        """Sign a serialized transaction and return the signed bytes."""
        ...


class QuoteProvider(Protocol):
    """Swap routing provider protocol."""

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 100,
    ) -> Quote | None:
        """Get a priced route, None on failure."""
        ...

    async def execute_swap(
        self,
        wallet: Wallet,
        quote: Quote,
        priority_fee_lamports: int = 100_000,
        use_mev_protection: bool = False,
    ) -> SwapResult:
        """Build, sign through the wallet, submit and confirm a swap."""
        ...


class AlertSink(Protocol):
    """Alert sink protocol."""

    async def push(self, message: str) -> None:
        """Push alert message."""
        ...


class Persistence(Protocol):
    """Data persistence protocol."""

    # Whales
    async def list_whales(self, active_only: bool = False) -> list[Whale]:
        """List tracked wallets."""
        ...

    async def get_whale(self, whale_id: int) -> Whale | None:
        """Get a whale by row id."""
        ...

    async def touch_whale(self, whale_id: int) -> None:
        """Record activity on a whale."""
        ...

    # Signals
    async def get_signal(self, signal_id: int) -> Signal | None:
        """Get a signal by id."""
        ...

    async def get_signal_by_tx_hash(self, tx_hash: str) -> Signal | None:
        """Get a signal by transaction hash."""
        ...

    async def insert_signal(self, signal: Signal) -> int | None:
        """Insert a signal, None if the tx hash already exists."""
        ...

    async def update_signal_score(
        self, signal_id: int, score: int, reasoning: str, status: SignalStatus
    ) -> None:
        """Persist a risk evaluation."""
        ...

    async def claim_signal(self, signal_id: int, trade_id: int) -> bool:
        """Atomically claim a pending signal for one execution."""
        ...

    async def release_signal_claim(self, signal_id: int, trade_id: int) -> None:
        """Release an execution claim."""
        ...

    async def set_signal_status(
        self,
        signal_id: int,
        status: SignalStatus,
        expected: list[SignalStatus] | None = None,
    ) -> bool:
        """Conditionally set a signal status."""
        ...

    # Executed trades
    async def insert_trade(self, trade: ExecutedTrade) -> int:
        """Insert an executed trade."""
        ...

    async def update_trade(
        self, trade_id: int, status: TradeStatus, **fields: Any
    ) -> None:
        """Update an executed trade."""
        ...

    # Subscriptions
    async def get_subscription(self, user_id: str) -> Subscription | None:
        """Get a user's subscription."""
        ...

    async def increment_trades_used(self, user_id: str) -> None:
        """Count one more trade against a subscription."""
        ...

    # Take-profit orders
    async def list_orders(
        self, status: OrderStatus | None = None
    ) -> list[TakeProfitOrder]:
        """List take-profit orders in stored order."""
        ...

    async def transition_order(
        self,
        order: TakeProfitOrder,
        new_status: OrderStatus,
        **fields: Any,
    ) -> TakeProfitOrder | None:
        """Compare-and-swap an order's status on its version."""
        ...

    async def insert_order(self, order: TakeProfitOrder) -> None:
        """Store a new take-profit order."""
        ...

    async def get_order(self, order_id: str) -> TakeProfitOrder | None:
        """Get a take-profit order by id."""
        ...

    # Trade history
    async def append_trade_history(self, entry: TradeHistoryEntry) -> None:
        """Record a trade in the bounded local history."""
        ...

    async def set_entry_price(self, token_mint: str, price: float) -> None:
        """Remember the latest buy price of a token."""
        ...
