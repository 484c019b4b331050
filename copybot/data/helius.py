"""Helius adapter: enhanced-transaction parsing, token metadata and webhooks."""

from typing import Any

import httpx
import structlog

from ..core.cache import TTLCache
from ..core.interfaces import Cache, TokenMetadataSource
from ..core.types import LAMPORTS_PER_SOL, ParsedSwap, TradeDirection

logger = structlog.get_logger(__name__)


def _involves(transfer: Any, wallet: str) -> bool:
    if not isinstance(transfer, dict):
        return False
    return (
        transfer.get("fromUserAccount") == wallet
        or transfer.get("toUserAccount") == wallet
    )


def _to_float(value: Any) -> float | None:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return None


def find_tracked_wallet(
    event: dict[str, Any], tracked_wallets: list[str]
) -> str | None:
    """First tracked wallet participating in an event.

    A wallet participates when it pays the fee or appears on either side of a
    native or token transfer.
    """
    native = event.get("nativeTransfers") or []
    tokens = event.get("tokenTransfers") or []
    for wallet in tracked_wallets:
        if event.get("feePayer") == wallet:
            return wallet
        if any(_involves(t, wallet) for t in native):
            return wallet
        if any(_involves(t, wallet) for t in tokens):
            return wallet
    return None


def parse_swap_event(
    event: dict[str, Any], tracked_wallets: list[str]
) -> ParsedSwap | None:
    """Extract a normalized swap from a Helius enhanced-transaction event.

    Args:
        event: Raw enhanced-transaction event
        tracked_wallets: Addresses of active whales

    Returns:
        ParsedSwap, or None when the event is not a swap by a tracked wallet
        or lacks a signature or readable amounts
    """
    if event.get("type") != "SWAP":
        return None

    signature = event.get("signature")
    if not signature:
        logger.warning("Swap event without signature, skipping")
        return None

    wallet = find_tracked_wallet(event, tracked_wallets)
    if wallet is None:
        return None

    token_transfer = next(
        (t for t in event.get("tokenTransfers") or [] if _involves(t, wallet)), None
    )
    if token_transfer is None or not token_transfer.get("mint"):
        return None

    sol_transfer = next(
        (t for t in event.get("nativeTransfers") or [] if _involves(t, wallet)), None
    )
    lamports = _to_float(sol_transfer.get("amount")) if sol_transfer else 0.0
    token_amount = _to_float(token_transfer.get("tokenAmount"))
    if lamports is None or token_amount is None:
        logger.warning("Swap event with malformed amounts, skipping", signature=signature)
        return None

    is_buy = token_transfer.get("toUserAccount") == wallet
    return ParsedSwap(
        direction=TradeDirection.BUY if is_buy else TradeDirection.SELL,
        wallet_address=wallet,
        token_mint=token_transfer["mint"],
        sol_amount=abs(lamports / LAMPORTS_PER_SOL),
        token_amount=token_amount,
        tx_hash=signature,
        timestamp=event.get("timestamp"),
    )


def extract_metadata(item: dict[str, Any]) -> dict[str, Any]:
    """Name, symbol and image from a token-metadata entry.

    On-chain metadata wins over off-chain metadata for name and symbol.
    """
    on_chain = ((item.get("onChainMetadata") or {}).get("metadata")) or {}
    off_chain = ((item.get("offChainMetadata") or {}).get("metadata")) or {}
    return {
        "name": on_chain.get("name") or off_chain.get("name") or "Unknown",
        "symbol": on_chain.get("symbol") or off_chain.get("symbol") or "???",
        "image": off_chain.get("image"),
    }


class HeliusClient(TokenMetadataSource):
    """Helius REST client for token metadata and webhook subscriptions."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.helius.xyz/v0",
        session: httpx.AsyncClient | None = None,
        cache: Cache | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Helius client.

        Args:
            api_key: Helius API key
            base_url: Helius REST base URL
            session: Optional httpx client session
            cache: Optional injected cache for token metadata
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.cache = cache if cache is not None else TTLCache(maxsize=1000, ttl=3600)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @property
    def _params(self) -> dict[str, str]:
        return {"api-key": self.api_key}

    async def get_token_metadata(self, token_mint: str) -> dict[str, Any] | None:
        """Look up token name, symbol and image.

        Args:
            token_mint: Token mint address

        Returns:
            Metadata dict, or None when the lookup fails
        """
        cache_key = f"metadata:{token_mint}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            response = await self.session.post(
                self._url("token-metadata"),
                params=self._params,
                json={"mintAccounts": [token_mint], "includeOffChain": True},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Helius token metadata lookup failed",
                token_mint=token_mint,
                error=str(e),
            )
            return None

        if not isinstance(data, list) or not data:
            return None

        metadata = extract_metadata(data[0] or {})
        self.cache.set(cache_key, metadata)
        return metadata

    async def create_webhook(
        self, wallet_addresses: list[str], webhook_url: str
    ) -> str | None:
        """Subscribe an enhanced webhook to swaps of the given wallets.

        Args:
            wallet_addresses: Wallets to track
            webhook_url: Public URL of the ingestion endpoint

        Returns:
            Webhook id, or None on failure
        """
        payload = {
            "webhookURL": webhook_url,
            "transactionTypes": ["SWAP"],
            "accountAddresses": wallet_addresses,
            "webhookType": "enhanced",
            "txnStatus": "success",
        }
        try:
            response = await self.session.post(
                self._url("webhooks"),
                params=self._params,
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to create Helius webhook", error=str(e))
            return None

        webhook_id = response.json().get("webhookID")
        logger.info(
            "Helius webhook created",
            webhook_id=webhook_id,
            wallets=len(wallet_addresses),
        )
        return webhook_id

    async def update_webhook(
        self, webhook_id: str, wallet_addresses: list[str]
    ) -> bool:
        """Replace the tracked wallets of an existing webhook."""
        try:
            response = await self.session.put(
                self._url(f"webhooks/{webhook_id}"),
                params=self._params,
                json={"accountAddresses": wallet_addresses},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to update Helius webhook", webhook_id=webhook_id, error=str(e)
            )
            return False
        return response.is_success

    async def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook subscription."""
        try:
            response = await self.session.delete(
                self._url(f"webhooks/{webhook_id}"),
                params=self._params,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to delete Helius webhook", webhook_id=webhook_id, error=str(e)
            )
            return False
        return response.is_success

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.session.aclose()
