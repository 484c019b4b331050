"""Service runner: component assembly and command-line entry point."""

import argparse
import asyncio
import signal
import sys
from typing import Any

import structlog
import uvicorn

from ..alerts.telegram import (
    NoopAlertSink,
    TelegramAlertSink,
    format_take_profit_executed,
    format_take_profit_failed,
    format_trade_ready,
)
from ..api.app import ApiContext, create_app
from ..config.logging import configure_logging
from ..config.settings import AppSettings, load_settings
from ..core.cache import TTLCache
from ..core.interfaces import Wallet
from ..core.types import TakeProfitOrder
from ..data.dexscreener import DexScreenerLookup
from ..data.helius import HeliusClient
from ..data.jupiter import JupiterPriceSource
from ..exec.jupiter import JupiterSwapClient
from ..exec.senders import JitoBundleSender, RpcSender
from ..exec.wallets import KeypairWallet
from ..monitor.take_profit import TakeProfitMonitor
from ..persist.storage import SQLiteStorage
from ..pipeline.confirmation import ExecutionConfirmationHandler
from ..pipeline.ingest import SignalIngestionHandler
from ..pipeline.orchestrator import CopyTradeOrchestrator
from ..risk.scorer import LLMRiskScorer

logger = structlog.get_logger(__name__)

# Slippage above 10% is refused outside dev
MAX_SAFE_SLIPPAGE_BPS = 1000


class CopyBotService:
    """Wires adapters, pipelines and the API together from settings."""

    def __init__(self, settings: AppSettings, wallet: Wallet | None = None) -> None:
        """Initialize the service with assembled components.

        Args:
            settings: Application settings
            wallet: Local wallet for the take-profit monitor, if any
        """
        self.settings = settings

        if not settings.dry_run:
            self._validate_live_trading_safety(settings)

        self.components = self._assemble(settings, wallet)

        logger.info(
            "Copy-trading service initialized",
            env=settings.env,
            dry_run=settings.dry_run,
            metadata_source="helius" if self.components["helius"] else None,
            mev_protection=settings.use_mev_protection,
        )

    def _validate_live_trading_safety(self, settings: AppSettings) -> None:
        """Validate safety settings for sending real transactions.

        Raises:
            ValueError: If safety checks fail
        """
        if "localhost" in settings.rpc_url or "127.0.0.1" in settings.rpc_url:
            logger.warning("Live trading against a local RPC node", rpc_url=settings.rpc_url)

        if settings.max_slippage_bps > MAX_SAFE_SLIPPAGE_BPS and settings.env != "dev":
            raise ValueError(
                f"Slippage {settings.max_slippage_bps} bps "
                f"({settings.max_slippage_bps / 100}%) exceeds the 10% limit"
            )

        logger.critical(
            "🚨 LIVE TRADING MODE ENABLED 🚨",
            rpc_url=settings.rpc_url,
            max_sol_per_trade=settings.max_sol_per_trade,
            max_slippage_bps=settings.max_slippage_bps,
        )

    def _assemble(self, settings: AppSettings, wallet: Wallet | None) -> dict[str, Any]:
        """Assemble all components from settings.

        Returns:
            Dictionary of assembled components
        """
        components: dict[str, Any] = {}

        components["storage"] = SQLiteStorage(db_path=settings.database_path)

        # Market data and metadata, one cache per process
        components["dexscreener"] = DexScreenerLookup(
            base_url=settings.dexscreener_base, cache=TTLCache(maxsize=500, ttl=60)
        )
        components["jupiter_prices"] = JupiterPriceSource(
            base_url=settings.jupiter_price_base
        )
        if settings.helius_api_key:
            components["helius"] = HeliusClient(
                api_key=settings.helius_api_key,
                base_url=settings.helius_base,
                cache=TTLCache(maxsize=1000, ttl=3600),
            )
            logger.info("Using Helius token metadata")
        else:
            components["helius"] = None
            logger.warning("Helius API key not provided, metadata enrichment disabled")

        components["scorer"] = LLMRiskScorer(
            api_key=settings.scoring_api_key, model=settings.openai_model
        )
        if not settings.scoring_api_key:
            logger.warning("No AI API key configured, every signal will score 0")

        # Execution
        components["rpc"] = RpcSender(rpc_url=settings.rpc_url)
        components["jito"] = (
            JitoBundleSender(block_engine_url=settings.jito_block_engine_url)
            if settings.use_mev_protection
            else None
        )
        components["quotes"] = JupiterSwapClient(
            base_url=settings.jupiter_base,
            rpc=components["rpc"],
            jito=components["jito"],
            dry_run=settings.dry_run,
        )
        logger.info(
            "Using Jupiter swap client",
            dry_run=settings.dry_run,
            jito=components["jito"] is not None,
        )

        # Alert sink
        if settings.telegram_bot_token and settings.telegram_admin_ids:
            components["alerts"] = TelegramAlertSink(
                bot_token=settings.telegram_bot_token,
                admin_user_ids=settings.telegram_admin_ids,
            )
            logger.info("Using Telegram alert sink")
        else:
            components["alerts"] = NoopAlertSink()
            logger.info("Using noop alert sink (no Telegram config)")

        # Pipelines
        components["orchestrator"] = CopyTradeOrchestrator(
            storage=components["storage"],
            market_data=components["dexscreener"],
            scorer=components["scorer"],
            quotes=components["quotes"],
            defaults=settings.copy_trade_config(),
        )
        components["ingestion"] = SignalIngestionHandler(
            storage=components["storage"],
            market_data=components["dexscreener"],
            metadata=components["helius"],
            alerts=components["alerts"],
            on_signal=self._process_ingested if settings.process_on_ingest else None,
        )
        components["confirmation"] = ExecutionConfirmationHandler(
            storage=components["storage"],
            quotes=components["quotes"],
            failure_policy=settings.execution_failure_policy,
            use_mev_protection=settings.use_mev_protection,
            alerts=components["alerts"],
        )

        price_source = (
            components["jupiter_prices"]
            if settings.price_source == "jupiter"
            else components["dexscreener"]
        )
        components["monitor"] = TakeProfitMonitor(
            storage=components["storage"],
            market_data=price_source,
            quotes=components["quotes"],
            wallet=wallet,
            on_order_executed=self._on_order_executed,
            on_order_failed=self._on_order_failed,
            slippage_bps=settings.take_profit_slippage_bps,
        )

        return components

    async def _process_ingested(self, signal_id: int) -> None:
        result = await self.components["orchestrator"].process_signal(signal_id)
        if result.prepared is not None:
            await self.components["alerts"].push(format_trade_ready(result.prepared))

    async def _on_order_executed(self, order: TakeProfitOrder, signature: str) -> None:
        await self.components["alerts"].push(format_take_profit_executed(order, signature))

    async def _on_order_failed(self, order: TakeProfitOrder, error: str) -> None:
        await self.components["alerts"].push(format_take_profit_failed(order, error))

    def api_context(self) -> ApiContext:
        c = self.components
        resources = [
            c["dexscreener"],
            c["jupiter_prices"],
            c["scorer"],
            c["quotes"],
            c["rpc"],
            c["storage"],
        ]
        resources.extend(r for r in (c["helius"], c["jito"]) if r is not None)
        if isinstance(c["alerts"], TelegramAlertSink):
            resources.append(c["alerts"])

        return ApiContext(
            settings=self.settings,
            storage=c["storage"],
            ingestion=c["ingestion"],
            orchestrator=c["orchestrator"],
            confirmation=c["confirmation"],
            quotes=c["quotes"],
            resources=resources,
        )

    async def serve(self) -> None:
        """Run the HTTP API until interrupted."""
        app = create_app(self.api_context())
        config = uvicorn.Config(
            app,
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_config=None,
        )
        server = uvicorn.Server(config)
        logger.info(
            "Starting API server",
            host=self.settings.api_host,
            port=self.settings.api_port,
        )
        await self.components["alerts"].push(
            f"🤖 Copy-trading API started ({self.settings.env}, "
            f"{'dry run' if self.settings.dry_run else 'live'})"
        )
        await server.serve()

    async def run_monitor(self) -> None:
        """Poll take-profit orders until a shutdown signal arrives."""
        storage = self.components["storage"]
        monitor: TakeProfitMonitor = self.components["monitor"]
        await storage.initialize()

        def signal_handler(signum, frame):
            logger.info("Received shutdown signal")
            monitor.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        monitor.start(self.settings.take_profit_interval_seconds)
        try:
            await monitor.wait_closed()
        finally:
            await self.api_context().aclose()

    async def register_webhook(self, webhook_url: str) -> str | None:
        """Register a Helius webhook covering every active whale."""
        helius: HeliusClient | None = self.components["helius"]
        if helius is None:
            raise ValueError("helius_api_key is required to register a webhook")

        storage = self.components["storage"]
        await storage.initialize()
        whales = await storage.list_whales(active_only=True)
        if not whales:
            logger.warning("No active whales to register")
            return None

        try:
            return await helius.create_webhook([w.address for w in whales], webhook_url)
        finally:
            await self.api_context().aclose()


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the copy-trading service."""
    parser = argparse.ArgumentParser(description="Solana whale copy-trading service")
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "monitor", "register-webhook"],
        help="serve the API, run the take-profit monitor, or register a webhook",
    )
    parser.add_argument(
        "--config", default="configs/paper.yaml", help="Configuration file path"
    )
    parser.add_argument(
        "--profile",
        default="paper",
        choices=["dev", "paper", "prod"],
        help="Configuration profile",
    )
    parser.add_argument("--webhook-url", help="Public URL of POST /api/helius")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.profile, args.config)
        configure_logging(settings.log_level, settings.log_json)
        logger.info("Settings loaded", profile=args.profile, config=args.config)

        if args.command == "monitor":
            # The monitor signs sells locally with the user's own key
            wallet = KeypairWallet.from_env()
            service = CopyBotService(settings, wallet=wallet)
            await service.run_monitor()
        elif args.command == "register-webhook":
            if not args.webhook_url:
                parser.error("--webhook-url is required for register-webhook")
            service = CopyBotService(settings)
            webhook_id = await service.register_webhook(args.webhook_url)
            logger.info("Webhook registered", webhook_id=webhook_id)
        else:
            service = CopyBotService(settings)
            await service.serve()

    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


def cli() -> None:
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
