"""Tests for service assembly and the command-line entry point."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from copybot.alerts.telegram import NoopAlertSink, TelegramAlertSink
from copybot.config.settings import AppSettings
from copybot.core.types import SOL_MINT, PreparedTrade, ProcessResult, Quote
from copybot.data.dexscreener import DexScreenerLookup
from copybot.data.helius import HeliusClient
from copybot.data.jupiter import JupiterPriceSource
from copybot.exec.senders import JitoBundleSender
from copybot.runner.service import CopyBotService, main

WHALE = "WhaLe1111111111111111111111111111111111111"


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
        path = tmp.name
    yield path
    Path(path).unlink(missing_ok=True)


def make_settings(db_path: str, **overrides) -> AppSettings:
    values = {
        "env": "paper",
        "rpc_url": "https://api.mainnet-beta.solana.com",
        "database_url": f"sqlite+aiosqlite:///{db_path}",
    }
    values.update(overrides)
    return AppSettings(**values)


class TestAssembly:
    """Test component wiring from settings."""

    @pytest.mark.asyncio
    async def test_minimal_settings(self, db_path):
        """Without optional keys enrichment is off and alerts are a no-op."""
        service = CopyBotService(make_settings(db_path))
        c = service.components

        assert c["helius"] is None
        assert isinstance(c["alerts"], NoopAlertSink)
        assert isinstance(c["jito"], JitoBundleSender)
        assert isinstance(c["monitor"].market_data, DexScreenerLookup)
        assert c["quotes"].dry_run is True
        assert c["ingestion"].on_signal is None
        assert c["orchestrator"].defaults.score_threshold == 80

        await service.api_context().aclose()

    @pytest.mark.asyncio
    async def test_full_settings(self, db_path):
        """Optional keys enable metadata, Telegram and the Jupiter price source."""
        service = CopyBotService(
            make_settings(
                db_path,
                helius_api_key="helius-key",
                telegram_bot_token="123:abc",
                telegram_admin_ids=[42],
                price_source="jupiter",
                use_mev_protection=False,
                process_on_ingest=True,
            )
        )
        c = service.components

        assert isinstance(c["helius"], HeliusClient)
        assert c["ingestion"].metadata is c["helius"]
        assert isinstance(c["alerts"], TelegramAlertSink)
        assert isinstance(c["monitor"].market_data, JupiterPriceSource)
        assert c["jito"] is None
        assert c["confirmation"].use_mev_protection is False
        assert c["ingestion"].on_signal is not None

        context = service.api_context()
        assert c["helius"] in context.resources
        assert c["alerts"] in context.resources
        await context.aclose()

    def test_live_rejects_excessive_slippage(self, db_path):
        """Live trading outside dev refuses slippage above 10%."""
        settings = make_settings(
            db_path, env="prod", dry_run=False, max_slippage_bps=1500
        )

        with pytest.raises(ValueError, match="exceeds the 10% limit"):
            CopyBotService(settings)

    @pytest.mark.asyncio
    async def test_dev_allows_excessive_slippage(self, db_path):
        """Dev may run live with high slippage."""
        service = CopyBotService(
            make_settings(db_path, env="dev", dry_run=False, max_slippage_bps=1500)
        )

        assert service.components["quotes"].dry_run is False
        await service.api_context().aclose()


class TestCallbacks:
    """Test alerting glue between components."""

    @pytest.mark.asyncio
    async def test_process_ingested_alerts_prepared(self, db_path):
        """Prepared trades from auto-processing are announced."""
        service = CopyBotService(make_settings(db_path))
        alerts = AsyncMock()
        orchestrator = AsyncMock()
        prepared = PreparedTrade(
            signal_id=7,
            token_mint="BonkMint",
            token_symbol="BONK",
            token_name="Bonk",
            whale_label="Big Fish",
            sol_amount=0.1,
            risk_score=90,
            risk_reasoning="Deep liquidity",
            risk_level="LOW",
            recommendation="BUY",
            quote=Quote(
                input_mint=SOL_MINT,
                in_amount="100000000",
                output_mint="BonkMint",
                out_amount="1",
                slippage_bps=100,
            ),
        )
        orchestrator.process_signal.return_value = ProcessResult(
            prepared=prepared, skipped=False
        )
        service.components["alerts"] = alerts
        service.components["orchestrator"] = orchestrator

        await service._process_ingested(7)

        orchestrator.process_signal.assert_awaited_once_with(7)
        assert "BONK" in alerts.push.call_args[0][0]
        await service.api_context().aclose()

    @pytest.mark.asyncio
    async def test_process_ingested_skipped_is_silent(self, db_path):
        """Skipped signals are not announced."""
        service = CopyBotService(make_settings(db_path))
        alerts = AsyncMock()
        orchestrator = AsyncMock()
        orchestrator.process_signal.return_value = ProcessResult(
            skipped=True, reason="below threshold"
        )
        service.components["alerts"] = alerts
        service.components["orchestrator"] = orchestrator

        await service._process_ingested(7)

        alerts.push.assert_not_awaited()
        await service.api_context().aclose()


class TestRegisterWebhook:
    """Test webhook registration."""

    @pytest.mark.asyncio
    async def test_requires_helius_key(self, db_path):
        """Registration needs a Helius API key."""
        service = CopyBotService(make_settings(db_path))

        with pytest.raises(ValueError, match="helius_api_key"):
            await service.register_webhook("https://example.com/api/helius")
        await service.api_context().aclose()

    @pytest.mark.asyncio
    async def test_registers_active_whales(self, db_path):
        """Every active whale address is subscribed."""
        service = CopyBotService(make_settings(db_path, helius_api_key="helius-key"))
        storage = service.components["storage"]
        await storage.initialize()
        await storage.add_whale(WHALE, "Big Fish")
        await storage.add_whale("Sleepy111", "Sleepy", is_active=False)
        helius = AsyncMock()
        helius.create_webhook.return_value = "webhook-1"
        service.components["helius"] = helius

        webhook_id = await service.register_webhook("https://example.com/api/helius")

        assert webhook_id == "webhook-1"
        helius.create_webhook.assert_awaited_once_with(
            [WHALE], "https://example.com/api/helius"
        )

    @pytest.mark.asyncio
    async def test_no_whales(self, db_path):
        """Nothing is registered without active whales."""
        service = CopyBotService(make_settings(db_path, helius_api_key="helius-key"))
        helius = AsyncMock()
        service.components["helius"] = helius

        assert await service.register_webhook("https://example.com/api/helius") is None
        helius.create_webhook.assert_not_awaited()
        await service.api_context().aclose()


class TestMain:
    """Test the command-line entry point."""

    @pytest.mark.asyncio
    async def test_missing_config_exits(self):
        """A missing config file is fatal."""
        with pytest.raises(SystemExit) as exc_info:
            await main(["serve", "--config", "/nonexistent/copybot.yaml"])

        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_register_webhook_requires_url(self):
        """register-webhook without --webhook-url is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            await main(["register-webhook", "--config", "configs/dev.yaml", "--profile", "dev"])

        assert exc_info.value.code == 2
