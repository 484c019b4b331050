"""Application settings and configuration management."""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from ..core.types import CopyTradeConfig, ExecutionFailurePolicy

logger = structlog.get_logger(__name__)


class AppSettings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment and mode
    env: Literal["dev", "paper", "prod"] = Field(
        description="Environment: dev, paper, prod"
    )

    # RPC and API endpoints
    rpc_url: str = Field(description="Solana RPC URL")
    helius_api_key: str | None = Field(default=None, description="Helius API key")
    helius_base: str = Field(
        default="https://api.helius.xyz/v0", description="Helius API base URL"
    )
    dexscreener_base: str = Field(
        default="https://api.dexscreener.com/latest/dex",
        description="DexScreener API base URL",
    )
    jupiter_base: str = Field(
        default="https://quote-api.jup.ag/v6", description="Jupiter API base URL"
    )
    jupiter_price_base: str = Field(
        default="https://price.jup.ag/v6", description="Jupiter price API base URL"
    )
    jito_block_engine_url: str = Field(
        default="https://mainnet.block-engine.jito.wtf/api/v1/bundles",
        description="Jito block engine bundle endpoint",
    )

    # Risk scoring oracle
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    gemini_api_key: str | None = Field(default=None, description="Gemini API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model")

    # Copy-trade defaults
    max_sol_per_trade: float = Field(
        default=0.1, description="Maximum SOL spent per copy trade"
    )
    score_threshold: int = Field(
        default=80, description="Minimum risk score (0-100) to prepare a trade"
    )
    max_slippage_bps: int = Field(
        default=100, description="Maximum slippage in basis points"
    )
    use_mev_protection: bool = Field(
        default=True, description="Submit swaps through Jito bundles"
    )
    execution_failure_policy: ExecutionFailurePolicy = Field(
        default=ExecutionFailurePolicy.LEAVE,
        description="Signal handling after a failed execution",
    )
    process_on_ingest: bool = Field(
        default=False, description="Run the orchestrator on freshly ingested signals"
    )

    # Take-profit monitor
    price_source: Literal["dexscreener", "jupiter"] = Field(
        default="dexscreener", description="Price feed used by the take-profit monitor"
    )
    take_profit_interval_seconds: float = Field(
        default=30.0, description="Take-profit polling interval"
    )
    take_profit_slippage_bps: int = Field(
        default=100, description="Slippage for take-profit sells"
    )

    # Webhooks
    webhook_secret: str | None = Field(
        default=None, description="HMAC secret for generic webhooks"
    )
    helius_auth_header: str | None = Field(
        default=None, description="Expected Authorization header on Helius webhooks"
    )

    # Notifications
    telegram_bot_token: str | None = Field(
        default=None, description="Telegram bot token"
    )
    telegram_admin_ids: list[int] = Field(
        default_factory=list, description="Telegram admin user IDs"
    )

    # Data storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./copybot.sqlite",
        description="Database connection URL",
    )

    # Service
    api_host: str = Field(default="127.0.0.1", description="API bind host")
    api_port: int = Field(default=8000, description="API bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # Execution mode
    dry_run: bool = Field(
        default=True, description="Simulate swaps instead of sending them"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @property
    def database_path(self) -> str:
        """Filesystem path of the SQLite database."""
        return self.database_url.replace("sqlite+aiosqlite:///", "")

    @property
    def scoring_api_key(self) -> str | None:
        """Key handed to the risk oracle (Gemini preferred when both are set)."""
        return self.gemini_api_key or self.openai_api_key

    def copy_trade_config(self) -> CopyTradeConfig:
        """Default copy-trade parameters."""
        return CopyTradeConfig(
            max_sol_per_trade=self.max_sol_per_trade,
            score_threshold=self.score_threshold,
            slippage_bps=self.max_slippage_bps,
            use_mev_protection=self.use_mev_protection,
        )


def load_settings(profile: str, yaml_path: str) -> AppSettings:
    """Load settings from YAML file and environment variables.

    Args:
        profile: Configuration profile name (dev, paper, prod)
        yaml_path: Path to YAML configuration file

    Returns:
        AppSettings instance with loaded configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValidationError: If configuration is invalid
        ValueError: If profile is invalid
    """
    if profile not in ["dev", "paper", "prod"]:
        raise ValueError(
            f"Invalid profile: {profile}. Must be one of: dev, paper, prod"
        )

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    try:
        with open(yaml_file, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        yaml_config["env"] = profile

        # paper never sends, prod always sends; dev keeps the YAML value
        if profile == "paper":
            yaml_config["dry_run"] = True
        elif profile == "prod":
            yaml_config["dry_run"] = False

        logger.info("Loading configuration", profile=profile, yaml_path=yaml_path)

        settings = AppSettings(**yaml_config)

        logger.info(
            "Configuration loaded successfully",
            profile=profile,
            dry_run=settings.dry_run,
            rpc_url=settings.rpc_url[:50] + "..."
            if len(settings.rpc_url) > 50
            else settings.rpc_url,
        )

        return settings

    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML configuration", error=str(e))
        raise ValueError(f"Invalid YAML configuration: {e}") from e
    except ValidationError as e:
        logger.error("Configuration validation failed", error=str(e))
        raise
