"""Core data types for the copy-trading service."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

LAMPORTS_PER_SOL = 1_000_000_000


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class TradeDirection(str, Enum):
    """Direction of a swap as seen from the swapping wallet."""

    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    """Lifecycle status of a signal."""

    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class TradeStatus(str, Enum):
    """Lifecycle status of an executed trade."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    """Lifecycle status of a take-profit order."""

    PENDING = "pending"
    TRIGGERED = "triggered"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionFailurePolicy(str, Enum):
    """What happens to the source signal when a confirmed execution fails."""

    LEAVE = "leave"
    MARK_FAILED = "mark_failed"


class SubscriptionTier(str, Enum):
    """Subscription tier of a user."""

    FREE = "free"
    PRO = "pro"
    WHALE = "whale"


FREE_TIER_TRADES = 5


class Whale(BaseModel):
    """A tracked source wallet."""

    id: int | None = Field(default=None, description="Row identifier")
    address: str = Field(description="Wallet address")
    label: str = Field(description="Human readable label")
    is_active: bool = Field(default=True, description="Whether events are tracked")
    total_trades: int = Field(default=0, description="Observed trade count")
    win_rate: float = Field(default=0.0, description="Win rate percentage")
    avg_profit_pct: float = Field(default=0.0, description="Average profit percent")
    last_active_at: datetime | None = Field(
        default=None, description="Last observed activity"
    )
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")


class Signal(BaseModel):
    """A swap observed on a tracked wallet, candidate for copy-trading."""

    id: int | None = Field(default=None, description="Row identifier")
    whale_id: int | None = Field(default=None, description="Source whale row id")
    wallet_address: str = Field(description="Source wallet address")
    token_address: str = Field(description="Token mint address")
    token_name: str | None = Field(default=None, description="Token name")
    token_symbol: str | None = Field(default=None, description="Token symbol")
    direction: TradeDirection = Field(description="BUY or SELL")
    sol_amount: float | None = Field(default=None, description="SOL moved by whale")
    token_amount: float | None = Field(default=None, description="Tokens moved")
    price_usd: float | None = Field(default=None, description="Price at ingestion")
    risk_score: int | None = Field(
        default=None, description="Risk score (None until scored)"
    )
    risk_reasoning: str | None = Field(default=None, description="Score rationale")
    status: SignalStatus = Field(
        default=SignalStatus.PENDING, description="Lifecycle status"
    )
    tx_hash: str = Field(description="Transaction signature, unique")
    claimed_trade_id: int | None = Field(
        default=None, description="Trade currently holding the execution claim"
    )
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")

    @property
    def is_scored(self) -> bool:
        """Whether the risk oracle has evaluated this signal."""
        return self.risk_score is not None


class ParsedSwap(BaseModel):
    """Normalized swap extracted from a wallet-activity event."""

    direction: TradeDirection = Field(description="BUY or SELL")
    wallet_address: str = Field(description="Tracked wallet involved")
    token_mint: str = Field(description="Token mint address")
    sol_amount: float = Field(description="SOL amount (absolute)")
    token_amount: float = Field(description="Token amount")
    tx_hash: str = Field(description="Transaction signature")
    timestamp: int | None = Field(default=None, description="Event unix time")


class Quote(BaseModel):
    """Priced swap route returned by the routing provider."""

    input_mint: str = Field(alias="inputMint")
    in_amount: str = Field(alias="inAmount")
    output_mint: str = Field(alias="outputMint")
    out_amount: str = Field(alias="outAmount")
    other_amount_threshold: str = Field(default="0", alias="otherAmountThreshold")
    swap_mode: str = Field(default="ExactIn", alias="swapMode")
    slippage_bps: int = Field(alias="slippageBps")
    price_impact_pct: str = Field(default="0", alias="priceImpactPct")
    route_plan: list[dict[str, Any]] = Field(default_factory=list, alias="routePlan")
    raw: dict[str, Any] = Field(
        default_factory=dict, description="Untouched provider payload", exclude=True
    )

    model_config = {"populate_by_name": True}

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "Quote":
        """Build a quote from the provider's JSON payload, keeping the raw body."""
        quote = cls.model_validate(data)
        quote.raw = dict(data)
        return quote

    def to_response(self) -> dict[str, Any]:
        """Payload to send back to the provider (raw body when available)."""
        if self.raw:
            return self.raw
        return self.model_dump(by_alias=True)


class SwapResult(BaseModel):
    """Outcome of submitting a swap transaction."""

    success: bool = Field(description="Whether the swap landed")
    signature: str | None = Field(default=None, description="Transaction signature")
    input_amount: str | None = Field(default=None, description="Input base units")
    output_amount: str | None = Field(default=None, description="Output base units")
    bundle_id: str | None = Field(default=None, description="Jito bundle id")
    error: str | None = Field(default=None, description="Failure description")


class PriceData(BaseModel):
    """Market price snapshot for a token."""

    price: float = Field(description="Price in USD")
    price_change_24h: float = Field(default=0.0, description="24h change percent")
    volume_24h: float = Field(default=0.0, description="24h volume in USD")
    liquidity: float = Field(default=0.0, description="Liquidity in USD")


class TokenContext(BaseModel):
    """Token metadata and market context handed to the risk oracle."""

    mint_address: str = Field(description="Token mint address")
    name: str | None = None
    symbol: str | None = None
    liquidity: float | None = None
    market_cap: float | None = None
    price_usd: float | None = None
    volume_24h: float | None = None
    holders: int | None = None
    top_holders_percent: float | None = None
    has_mint_authority: bool | None = None
    has_freeze_authority: bool | None = None
    created_at: str | None = None


class TokenAnalysis(BaseModel):
    """Risk oracle verdict for a token."""

    score: int = Field(ge=0, le=100, description="Confidence score 0-100")
    reasoning: str = Field(description="Rationale")
    risk_level: Literal["LOW", "MEDIUM", "HIGH", "EXTREME"] = Field(
        description="Risk bucket"
    )
    recommendation: Literal["BUY", "SKIP", "CAUTION"] = Field(
        description="Suggested action"
    )


class CopyTradeConfig(BaseModel):
    """Per-run copy-trade parameters."""

    max_sol_per_trade: float = Field(default=0.1, gt=0, description="SOL cap")
    score_threshold: int = Field(
        default=80, ge=0, le=100, description="Minimum risk score to proceed"
    )
    slippage_bps: int = Field(default=100, ge=0, description="Slippage tolerance")
    use_mev_protection: bool = Field(
        default=True, description="Submit through a Jito bundle"
    )


class PreparedTrade(BaseModel):
    """Trade ready for human confirmation. Never persisted."""

    signal_id: int
    token_mint: str
    token_symbol: str
    token_name: str
    whale_label: str
    sol_amount: float
    risk_score: int
    risk_reasoning: str
    risk_level: str
    recommendation: str
    quote: Quote


class ProcessResult(BaseModel):
    """Outcome of one orchestration run."""

    prepared: PreparedTrade | None = None
    skipped: bool
    reason: str | None = None
    not_found: bool = Field(default=False, description="Signal does not exist")


class CopyTradeResult(BaseModel):
    """Outcome of a confirmed execution."""

    success: bool
    signal_id: int | None = None
    trade_id: int | None = None
    tx_hash: str | None = None
    bundle_id: str | None = None
    risk_score: int | None = None
    risk_reasoning: str | None = None
    error: str | None = None


class ExecutedTrade(BaseModel):
    """A user-authorized transaction record."""

    id: int | None = None
    user_id: str
    signal_id: int | None = None
    whale_id: int | None = None
    token_address: str
    token_symbol: str | None = None
    direction: TradeDirection = TradeDirection.BUY
    amount_in_sol: float | None = None
    tokens_received: float | None = None
    entry_price: float | None = None
    tx_hash: str | None = None
    bundle_id: str | None = None
    status: TradeStatus = TradeStatus.PENDING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TakeProfitOrder(BaseModel):
    """Standing rule to sell part of a position once a target price is hit."""

    id: str
    token_mint: str
    token_symbol: str
    entry_price: float
    target_price: float
    target_percentage: float
    sell_percentage: float = Field(gt=0, le=100)
    amount: float = Field(description="Holdings in token base units")
    status: OrderStatus = OrderStatus.PENDING
    version: int = Field(default=0, description="Optimistic concurrency token")
    created_at: int = Field(description="Creation time, unix milliseconds")
    triggered_at: int | None = None
    executed_at: int | None = None
    tx_signature: str | None = None
    error: str | None = None


class TradeHistoryEntry(BaseModel):
    """One entry of the local trade history."""

    id: str
    direction: Literal["buy", "sell"]
    token_mint: str
    token_symbol: str
    amount: float
    price: float
    total_value: float
    tx_signature: str
    timestamp: int
    is_take_profit_order: bool = False


class Subscription(BaseModel):
    """Entitlement of a user to place trades."""

    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    is_active: bool = True
    trades_used: int = 0
    payment_tx: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None

    @property
    def trades_remaining(self) -> float:
        """Trades left; unlimited for paid tiers."""
        if self.tier == SubscriptionTier.FREE:
            return max(0, FREE_TIER_TRADES - self.trades_used)
        return float("inf")

    @property
    def can_trade(self) -> bool:
        """Whether another trade is allowed."""
        if self.tier == SubscriptionTier.FREE:
            return self.trades_remaining > 0
        return self.is_active


class IngestResult(BaseModel):
    """Outcome of an ingestion batch."""

    processed: int = 0
    signal_ids: list[int] = Field(default_factory=list)


class PnL(BaseModel):
    """Profit and loss of a position."""

    pnl: float
    pnl_percentage: float
    pnl_value: float
