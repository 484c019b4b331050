"""Copy-trade orchestration: score a signal and prepare a quote for the user."""

from typing import Any

import structlog

from ..core.errors import NotFoundError
from ..core.interfaces import MarketDataSource, Persistence, QuoteProvider, RiskScorer
from ..core.types import (
    SOL_MINT,
    CopyTradeConfig,
    PreparedTrade,
    ProcessResult,
    SignalStatus,
    TokenContext,
    TradeDirection,
)
from ..exec.jupiter import sol_to_lamports

logger = structlog.get_logger(__name__)


def merge_config(
    defaults: CopyTradeConfig, overrides: CopyTradeConfig | dict[str, Any] | None
) -> CopyTradeConfig:
    """Overlay partial overrides on the default copy-trade config."""
    if overrides is None:
        return defaults
    if isinstance(overrides, CopyTradeConfig):
        return overrides
    return CopyTradeConfig.model_validate(
        {**defaults.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
    )


class CopyTradeOrchestrator:
    """Signal -> market context -> risk score -> quote.

    Nothing is executed here: the result is a PreparedTrade the user confirms
    with their own wallet.
    """

    def __init__(
        self,
        storage: Persistence,
        market_data: MarketDataSource,
        scorer: RiskScorer,
        quotes: QuoteProvider,
        defaults: CopyTradeConfig | None = None,
    ) -> None:
        self.storage = storage
        self.market_data = market_data
        self.scorer = scorer
        self.quotes = quotes
        self.defaults = defaults or CopyTradeConfig()

    async def process_signal(
        self,
        signal_id: int,
        config: CopyTradeConfig | dict[str, Any] | None = None,
    ) -> ProcessResult:
        """Evaluate a signal and prepare a trade when it passes the threshold.

        Args:
            signal_id: Signal to evaluate
            config: Full config or partial overrides of the defaults

        Returns:
            ProcessResult; never raises
        """
        try:
            cfg = merge_config(self.defaults, config)
            return await self._process(signal_id, cfg)
        except NotFoundError:
            return ProcessResult(
                skipped=True, not_found=True, reason="Signal not found"
            )
        except Exception as e:
            logger.error(
                "Error processing signal",
                signal_id=signal_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProcessResult(skipped=True, reason=str(e))

    async def _process(self, signal_id: int, cfg: CopyTradeConfig) -> ProcessResult:
        signal = await self.storage.get_signal(signal_id)
        if signal is None:
            raise NotFoundError("Signal", signal_id)

        if signal.direction != TradeDirection.BUY:
            return ProcessResult(skipped=True, reason="Only BUY signals are copy-traded")

        whale = (
            await self.storage.get_whale(signal.whale_id)
            if signal.whale_id is not None
            else None
        )
        whale_label = whale.label if whale else None

        context = await self._token_context(signal.token_address)
        analysis = await self.scorer.analyze_token(context, whale_label)

        passed = analysis.score >= cfg.score_threshold
        await self.storage.update_signal_score(
            signal_id,
            analysis.score,
            analysis.reasoning,
            SignalStatus.PENDING if passed else SignalStatus.SKIPPED,
        )
        logger.info(
            "Signal scored",
            signal_id=signal_id,
            score=analysis.score,
            threshold=cfg.score_threshold,
            passed=passed,
        )

        if not passed:
            return ProcessResult(
                skipped=True,
                reason=(
                    f"Risk score {analysis.score} below threshold "
                    f"{cfg.score_threshold}"
                ),
            )

        sol_amount = min(cfg.max_sol_per_trade, signal.sol_amount or cfg.max_sol_per_trade)
        quote = await self.quotes.get_quote(
            SOL_MINT,
            signal.token_address,
            sol_to_lamports(sol_amount),
            cfg.slippage_bps,
        )
        if quote is None:
            return ProcessResult(skipped=True, reason="Failed to get quote")

        prepared = PreparedTrade(
            signal_id=signal_id,
            token_mint=signal.token_address,
            token_symbol=signal.token_symbol or context.symbol or "???",
            token_name=signal.token_name or context.name or "Unknown",
            whale_label=whale_label or "Unknown Whale",
            sol_amount=sol_amount,
            risk_score=analysis.score,
            risk_reasoning=analysis.reasoning,
            risk_level=analysis.risk_level,
            recommendation=analysis.recommendation,
            quote=quote,
        )
        logger.info(
            "Trade prepared",
            signal_id=signal_id,
            token_mint=signal.token_address,
            sol_amount=sol_amount,
            out_amount=quote.out_amount,
        )
        return ProcessResult(prepared=prepared, skipped=False)

    async def _token_context(self, token_mint: str) -> TokenContext:
        try:
            return await self.market_data.get_token_context(token_mint)
        except Exception as e:
            logger.warning(
                "Token context unavailable", token_mint=token_mint, error=str(e)
            )
            return TokenContext(mint_address=token_mint)
