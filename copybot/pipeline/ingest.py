"""Signal ingestion from wallet-activity webhooks."""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from ..alerts.telegram import format_new_signal
from ..core.errors import PersistenceError
from ..core.interfaces import (
    AlertSink,
    MarketDataSource,
    Persistence,
    TokenMetadataSource,
)
from ..core.types import IngestResult, ParsedSwap, Signal, TokenContext, Whale
from ..data.helius import parse_swap_event

logger = structlog.get_logger(__name__)

SignalCallback = Callable[[int], Awaitable[Any]]


def normalize_payload(payload: Any) -> list[dict[str, Any]]:
    """Accept a batch or a single event; drop anything that is not an object."""
    events = payload if isinstance(payload, list) else [payload]
    return [event for event in events if isinstance(event, dict)]


class SignalIngestionHandler:
    """Turn tracked-wallet swaps into unscored PENDING signals.

    Scoring happens later in the orchestrator, either on demand or right after
    ingestion when an ``on_signal`` callback is given.
    """

    def __init__(
        self,
        storage: Persistence,
        market_data: MarketDataSource | None = None,
        metadata: TokenMetadataSource | None = None,
        alerts: AlertSink | None = None,
        on_signal: SignalCallback | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            storage: Persistence backend
            market_data: Optional price/context source for enrichment
            metadata: Optional token metadata source for enrichment
            alerts: Optional alert sink notified of new signals
            on_signal: Optional coroutine called with each new signal id
        """
        self.storage = storage
        self.market_data = market_data
        self.metadata = metadata
        self.alerts = alerts
        self.on_signal = on_signal

    async def ingest(self, payload: Any) -> IngestResult:
        """Process a webhook delivery.

        Args:
            payload: List of enhanced-transaction events, or a single event

        Returns:
            Number of new signals and their ids
        """
        events = normalize_payload(payload)
        logger.info("Webhook events received", count=len(events))

        whales = await self.storage.list_whales(active_only=True)
        if not whales:
            logger.info("No active whales to track")
            return IngestResult()

        whale_by_address = {whale.address: whale for whale in whales}
        tracked = list(whale_by_address)
        result = IngestResult()

        for event in events:
            try:
                swap = parse_swap_event(event, tracked)
                if swap is None:
                    continue
                signal_id = await self._ingest_swap(
                    swap, whale_by_address[swap.wallet_address]
                )
            except PersistenceError as e:
                logger.error(
                    "Failed to store signal",
                    signature=event.get("signature"),
                    error=str(e),
                )
                continue
            except Exception as e:
                logger.error(
                    "Failed to ingest event",
                    signature=event.get("signature"),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if signal_id is not None:
                result.processed += 1
                result.signal_ids.append(signal_id)

        return result

    async def _ingest_swap(self, swap: ParsedSwap, whale: Whale) -> int | None:
        if await self.storage.get_signal_by_tx_hash(swap.tx_hash):
            logger.info("Skipping duplicate transaction", tx_hash=swap.tx_hash)
            return None

        context = await self._enrich(swap.token_mint)
        signal = Signal(
            whale_id=whale.id,
            wallet_address=swap.wallet_address,
            token_address=swap.token_mint,
            token_name=context.name,
            token_symbol=context.symbol,
            direction=swap.direction,
            sol_amount=swap.sol_amount,
            token_amount=swap.token_amount,
            price_usd=context.price_usd,
            tx_hash=swap.tx_hash,
        )

        signal_id = await self.storage.insert_signal(signal)
        if signal_id is None:
            return None

        await self.storage.touch_whale(whale.id)
        logger.info(
            "Signal ingested",
            signal_id=signal_id,
            whale=whale.label,
            direction=swap.direction.value,
            token=signal.token_symbol or swap.token_mint[:8],
            sol_amount=swap.sol_amount,
        )

        if self.alerts is not None:
            await self.alerts.push(
                format_new_signal(
                    whale.label,
                    swap.direction,
                    signal.token_symbol or swap.token_mint[:8],
                    swap.sol_amount,
                )
            )
        if self.on_signal is not None:
            await self.on_signal(signal_id)

        return signal_id

    async def _enrich(self, token_mint: str) -> TokenContext:
        """Name, symbol and price for a mint; best effort."""
        context = TokenContext(mint_address=token_mint)

        if self.market_data is not None:
            try:
                context = await self.market_data.get_token_context(token_mint)
            except Exception as e:
                logger.warning(
                    "Market data enrichment failed", token_mint=token_mint, error=str(e)
                )

        if self.metadata is not None:
            try:
                metadata = await self.metadata.get_token_metadata(token_mint)
            except Exception as e:
                logger.warning(
                    "Token metadata enrichment failed",
                    token_mint=token_mint,
                    error=str(e),
                )
                metadata = None
            if metadata:
                context = context.model_copy(
                    update={"name": metadata["name"], "symbol": metadata["symbol"]}
                )

        return context
