"""Tests for copy-trade orchestration."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from copybot.core.types import (
    SOL_MINT,
    CopyTradeConfig,
    Quote,
    Signal,
    SignalStatus,
    TokenAnalysis,
    TokenContext,
    TradeDirection,
)
from copybot.persist.storage import SQLiteStorage
from copybot.pipeline.orchestrator import CopyTradeOrchestrator, merge_config

WHALE = "WhaLe1111111111111111111111111111111111111"
MINT = "BonkMint11111111111111111111111111111111111"


def analysis(score: int) -> TokenAnalysis:
    return TokenAnalysis(
        score=score,
        reasoning=f"scored {score}",
        risk_level="LOW" if score >= 80 else "HIGH",
        recommendation="BUY" if score >= 80 else "SKIP",
    )


def quote() -> Quote:
    return Quote(
        input_mint=SOL_MINT,
        in_amount="100000000",
        output_mint=MINT,
        out_amount="42000000",
        slippage_bps=100,
    )


@pytest_asyncio.fixture
async def storage():
    with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
        db_path = tmp.name

    storage = SQLiteStorage(db_path=db_path)
    await storage.initialize()

    yield storage

    await storage.close()
    Path(db_path).unlink(missing_ok=True)


@pytest_asyncio.fixture
async def buy_signal_id(storage):
    whale = await storage.add_whale(WHALE, "Big Fish")
    return await storage.insert_signal(
        Signal(
            whale_id=whale.id,
            wallet_address=WHALE,
            token_address=MINT,
            token_symbol="BONK",
            direction=TradeDirection.BUY,
            sol_amount=1.5,
            tx_hash="sig-buy",
        )
    )


@pytest.fixture
def market_data():
    mock = AsyncMock()
    mock.get_token_context.return_value = TokenContext(
        mint_address=MINT, name="Bonk", symbol="BONK", liquidity=100_000
    )
    return mock


@pytest.fixture
def scorer():
    return AsyncMock()


@pytest.fixture
def quotes():
    mock = AsyncMock()
    mock.get_quote.return_value = quote()
    return mock


@pytest.fixture
def orchestrator(storage, market_data, scorer, quotes):
    return CopyTradeOrchestrator(
        storage, market_data, scorer, quotes, CopyTradeConfig(score_threshold=80)
    )


class TestMergeConfig:
    """Test config overlays."""

    def test_partial_overrides(self):
        """None values keep defaults."""
        merged = merge_config(
            CopyTradeConfig(), {"score_threshold": 50, "slippage_bps": None}
        )

        assert merged.score_threshold == 50
        assert merged.slippage_bps == 100

    def test_full_config_replaces(self):
        """A full config is used as is."""
        override = CopyTradeConfig(max_sol_per_trade=1.0)
        assert merge_config(CopyTradeConfig(), override) is override


class TestCopyTradeOrchestrator:
    """Test processing a signal into a prepared trade."""

    @pytest.mark.asyncio
    async def test_passing_score_prepares_trade(
        self, orchestrator, storage, scorer, quotes, buy_signal_id
    ):
        """Score 85 over threshold 80 with a quote prepares a trade."""
        scorer.analyze_token.return_value = analysis(85)

        result = await orchestrator.process_signal(buy_signal_id)

        assert not result.skipped
        assert result.reason is None
        prepared = result.prepared
        assert prepared.signal_id == buy_signal_id
        assert prepared.sol_amount == 0.1
        assert prepared.whale_label == "Big Fish"
        assert prepared.risk_score == 85
        assert prepared.quote.out_amount == "42000000"
        quotes.get_quote.assert_awaited_once_with(SOL_MINT, MINT, 100_000_000, 100)
        assert scorer.analyze_token.call_args[0][1] == "Big Fish"

        signal = await storage.get_signal(buy_signal_id)
        assert signal.status == SignalStatus.PENDING
        assert signal.risk_score == 85

    @pytest.mark.asyncio
    async def test_low_score_skips_without_quote(
        self, orchestrator, storage, scorer, quotes, buy_signal_id
    ):
        """Score 60 under threshold 80 is skipped before quoting."""
        scorer.analyze_token.return_value = analysis(60)

        result = await orchestrator.process_signal(buy_signal_id)

        assert result.skipped
        assert result.prepared is None
        assert "below threshold" in result.reason
        quotes.get_quote.assert_not_awaited()

        signal = await storage.get_signal(buy_signal_id)
        assert signal.status == SignalStatus.SKIPPED
        assert signal.risk_score == 60

    @pytest.mark.asyncio
    async def test_sell_signal_not_scored(self, orchestrator, storage, scorer):
        """SELL signals are skipped without calling the scorer."""
        signal_id = await storage.insert_signal(
            Signal(
                wallet_address=WHALE,
                token_address=MINT,
                direction=TradeDirection.SELL,
                tx_hash="sig-sell",
            )
        )

        result = await orchestrator.process_signal(signal_id)

        assert result.skipped
        assert result.prepared is None
        scorer.analyze_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quote_failure(self, orchestrator, scorer, quotes, buy_signal_id):
        """A missing quote skips the trade and never raises."""
        scorer.analyze_token.return_value = analysis(90)
        quotes.get_quote.return_value = None

        result = await orchestrator.process_signal(buy_signal_id)

        assert result.skipped
        assert result.prepared is None
        assert result.reason == "Failed to get quote"

    @pytest.mark.asyncio
    async def test_unknown_signal(self, orchestrator):
        """Unknown ids are reported, not raised."""
        result = await orchestrator.process_signal(9999)

        assert result.skipped
        assert result.not_found
        assert result.reason == "Signal not found"

    @pytest.mark.asyncio
    async def test_unexpected_error(self, orchestrator, scorer, buy_signal_id):
        """Unexpected errors become a skipped result."""
        scorer.analyze_token.side_effect = RuntimeError("boom")

        result = await orchestrator.process_signal(buy_signal_id)

        assert result.skipped
        assert result.reason == "boom"

    @pytest.mark.asyncio
    async def test_config_overrides(self, orchestrator, scorer, quotes, buy_signal_id):
        """Per-call overrides change threshold and trade size."""
        scorer.analyze_token.return_value = analysis(60)

        result = await orchestrator.process_signal(
            buy_signal_id, {"score_threshold": 50, "max_sol_per_trade": 0.05}
        )

        assert result.prepared is not None
        assert result.prepared.sol_amount == 0.05
        quotes.get_quote.assert_awaited_once_with(SOL_MINT, MINT, 50_000_000, 100)

    @pytest.mark.asyncio
    async def test_market_data_failure_uses_bare_context(
        self, orchestrator, market_data, scorer, buy_signal_id
    ):
        """Scoring proceeds on a bare context when market data fails."""
        market_data.get_token_context.side_effect = RuntimeError("timeout")
        scorer.analyze_token.return_value = analysis(10)

        await orchestrator.process_signal(buy_signal_id)

        context = scorer.analyze_token.call_args[0][0]
        assert context.mint_address == MINT
        assert context.liquidity is None

    @pytest.mark.asyncio
    async def test_rescoring_skipped_signal(
        self, orchestrator, storage, scorer, buy_signal_id
    ):
        """A skipped signal can pass after a later, higher score."""
        scorer.analyze_token.return_value = analysis(40)
        await orchestrator.process_signal(buy_signal_id)

        scorer.analyze_token.return_value = analysis(95)
        result = await orchestrator.process_signal(buy_signal_id)

        assert result.prepared is not None
        assert (await storage.get_signal(buy_signal_id)).status == SignalStatus.PENDING
