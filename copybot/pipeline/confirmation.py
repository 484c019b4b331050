"""Execution of user-confirmed copy trades and recording of their outcome."""

import structlog

from ..alerts.telegram import format_trade_executed
from ..core.errors import InvalidRequestError, NotFoundError
from ..core.interfaces import AlertSink, Persistence, QuoteProvider, Wallet
from ..core.types import (
    CopyTradeResult,
    ExecutedTrade,
    ExecutionFailurePolicy,
    PreparedTrade,
    SignalStatus,
    TradeDirection,
    TradeStatus,
)
from ..exec.jupiter import priority_fee_for

logger = structlog.get_logger(__name__)


class ExecutionConfirmationHandler:
    """Runs a prepared trade through the user's wallet and updates the ledger.

    At most one execution per signal can succeed: a trade row is written first,
    then the signal is claimed for that row before anything is submitted.
    """

    def __init__(
        self,
        storage: Persistence,
        quotes: QuoteProvider,
        failure_policy: ExecutionFailurePolicy = ExecutionFailurePolicy.LEAVE,
        use_mev_protection: bool = True,
        alerts: AlertSink | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            storage: Persistence backend
            quotes: Swap provider that builds, submits and confirms swaps
            failure_policy: What happens to the signal when execution fails
            use_mev_protection: Default for submitting through Jito
            alerts: Optional alert sink
        """
        self.storage = storage
        self.quotes = quotes
        self.failure_policy = failure_policy
        self.use_mev_protection = use_mev_protection
        self.alerts = alerts

    async def confirm_execution(
        self,
        prepared: PreparedTrade,
        wallet: Wallet,
        user_id: str,
        use_mev_protection: bool | None = None,
    ) -> CopyTradeResult:
        """Execute a prepared trade the user confirmed.

        Args:
            prepared: Output of the orchestrator
            wallet: The user's wallet
            user_id: User placing the trade
            use_mev_protection: Override of the default Jito setting

        Returns:
            CopyTradeResult; never raises
        """
        mev = self.use_mev_protection if use_mev_protection is None else use_mev_protection
        trade_id: int | None = None
        claimed = False

        try:
            subscription = await self.storage.get_subscription(user_id)
            if subscription is not None and not subscription.can_trade:
                logger.info("Trade limit reached", user_id=user_id, tier=subscription.tier.value)
                return CopyTradeResult(
                    success=False, signal_id=prepared.signal_id, error="Trade limit reached"
                )

            signal = await self.storage.get_signal(prepared.signal_id)
            if signal is None:
                return CopyTradeResult(
                    success=False, signal_id=prepared.signal_id, error="Signal not found"
                )

            trade_id = await self.storage.insert_trade(
                ExecutedTrade(
                    user_id=user_id,
                    signal_id=prepared.signal_id,
                    whale_id=signal.whale_id,
                    token_address=prepared.token_mint,
                    token_symbol=prepared.token_symbol,
                    direction=TradeDirection.BUY,
                    amount_in_sol=prepared.sol_amount,
                )
            )

            claimed = await self.storage.claim_signal(prepared.signal_id, trade_id)
            if not claimed:
                await self.storage.update_trade(
                    trade_id, TradeStatus.FAILED, error_message="Signal already claimed"
                )
                return CopyTradeResult(
                    success=False,
                    signal_id=prepared.signal_id,
                    trade_id=trade_id,
                    error="Signal already claimed",
                )

            swap = await self.quotes.execute_swap(
                wallet,
                prepared.quote,
                priority_fee_lamports=priority_fee_for(mev),
                use_mev_protection=mev,
            )

            if not swap.success:
                await self._record_failure(prepared.signal_id, trade_id, swap.error)
                return CopyTradeResult(
                    success=False,
                    signal_id=prepared.signal_id,
                    trade_id=trade_id,
                    tx_hash=swap.signature,
                    error=swap.error,
                )

            await self.storage.update_trade(
                trade_id,
                TradeStatus.SUCCESS,
                tx_hash=swap.signature,
                bundle_id=swap.bundle_id,
                tokens_received=float(swap.output_amount or 0),
            )
            await self.storage.set_signal_status(
                prepared.signal_id, SignalStatus.EXECUTED, expected=[SignalStatus.PENDING]
            )
            await self.storage.increment_trades_used(user_id)

            logger.info(
                "Copy trade executed",
                signal_id=prepared.signal_id,
                trade_id=trade_id,
                tx_hash=swap.signature,
                bundle_id=swap.bundle_id,
            )
            if self.alerts is not None:
                await self.alerts.push(
                    format_trade_executed(
                        prepared.token_symbol, prepared.sol_amount, swap.signature
                    )
                )

            return CopyTradeResult(
                success=True,
                signal_id=prepared.signal_id,
                trade_id=trade_id,
                tx_hash=swap.signature,
                bundle_id=swap.bundle_id,
                risk_score=prepared.risk_score,
                risk_reasoning=prepared.risk_reasoning,
            )

        except Exception as e:
            logger.error(
                "Copy trade execution error",
                signal_id=prepared.signal_id,
                trade_id=trade_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if trade_id is not None and claimed:
                try:
                    await self._record_failure(prepared.signal_id, trade_id, str(e))
                except Exception as cleanup_error:
                    logger.error(
                        "Failed to record execution failure",
                        trade_id=trade_id,
                        error=str(cleanup_error),
                    )
            return CopyTradeResult(
                success=False,
                signal_id=prepared.signal_id,
                trade_id=trade_id,
                error=str(e),
            )

    async def _record_failure(
        self, signal_id: int, trade_id: int, error: str | None
    ) -> None:
        await self.storage.update_trade(
            trade_id, TradeStatus.FAILED, error_message=error or "Unknown error"
        )

        if self.failure_policy == ExecutionFailurePolicy.MARK_FAILED:
            await self.storage.set_signal_status(
                signal_id, SignalStatus.FAILED, expected=[SignalStatus.PENDING]
            )
        else:
            await self.storage.release_signal_claim(signal_id, trade_id)

        logger.warning(
            "Copy trade failed",
            signal_id=signal_id,
            trade_id=trade_id,
            error=error,
            policy=self.failure_policy.value,
        )

    async def record_execution(
        self,
        signal_id: int,
        user_id: str,
        tx_hash: str | None,
        tokens_received: float | None = None,
        entry_price: float | None = None,
        status: TradeStatus = TradeStatus.SUCCESS,
    ) -> int:
        """Record a swap the user signed and sent themselves.

        A successful swap claims the signal first, so a signal can be recorded
        as executed only once. A failed swap follows the failure policy.

        Returns:
            Id of the new executed-trade row

        Raises:
            NotFoundError: If the signal does not exist
            InvalidRequestError: If a success is recorded for a signal that is
                no longer pending or is claimed by another execution
        """
        signal = await self.storage.get_signal(signal_id)
        if signal is None:
            raise NotFoundError("Signal", signal_id)

        trade_id = await self.storage.insert_trade(
            ExecutedTrade(
                user_id=user_id,
                signal_id=signal_id,
                whale_id=signal.whale_id,
                token_address=signal.token_address,
                token_symbol=signal.token_symbol,
                direction=TradeDirection.BUY,
                amount_in_sol=signal.sol_amount,
                tokens_received=tokens_received,
                entry_price=entry_price,
                tx_hash=tx_hash,
                status=TradeStatus.PENDING,
            )
        )

        if status != TradeStatus.SUCCESS:
            await self._record_failure(signal_id, trade_id, "Reported as failed")
            return trade_id

        if not await self.storage.claim_signal(signal_id, trade_id):
            await self.storage.update_trade(
                trade_id, TradeStatus.FAILED, error_message="Signal already claimed"
            )
            logger.warning(
                "Execution rejected, signal already claimed",
                signal_id=signal_id,
                trade_id=trade_id,
                status=signal.status.value,
            )
            raise InvalidRequestError("Signal already executed or in progress")

        await self.storage.update_trade(trade_id, TradeStatus.SUCCESS)
        await self.storage.set_signal_status(
            signal_id, SignalStatus.EXECUTED, expected=[SignalStatus.PENDING]
        )
        await self.storage.increment_trades_used(user_id)

        logger.info(
            "Execution recorded",
            signal_id=signal_id,
            trade_id=trade_id,
            tx_hash=tx_hash,
        )
        return trade_id
