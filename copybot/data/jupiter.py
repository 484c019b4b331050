"""Jupiter Price API data source."""

from __future__ import annotations

import math
from typing import Any, Optional

import httpx
import structlog

from ..core.types import PriceData

logger = structlog.get_logger(__name__)

# Price API caps the number of ids per request
MAX_IDS_PER_REQUEST = 100


class JupiterPriceSource:
    """
    USD prices for Solana mints from the Jupiter Price API.

    Docs:
      - Price API v6: https://price.jup.ag/v6/price?ids=<mint>[,<mint>...]
        Response: {"data": {<mint>: {"id", "mintSymbol", "price", ...}}}
    """

    def __init__(
        self,
        *,
        base_url: str = "https://price.jup.ag/v6",
        session: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")

        # Prefer an injected AsyncClient; fall back to own client if not provided.
        self._session = session or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session:
            await self._session.aclose()

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        r = await self._session.get(url, params=params)
        r.raise_for_status()
        return r.json()

    @staticmethod
    def _extract_price(entry: Any) -> float | None:
        if not isinstance(entry, dict):
            return None
        price = entry.get("price")
        if isinstance(price, (int, float)) and not math.isnan(float(price)) and price:
            return float(price)
        return None

    async def get_token_price(self, token_mint: str) -> float | None:
        """USD price of one mint, None when unknown or on failure."""
        try:
            data = await self._get_json("/price", {"ids": token_mint})
        except Exception as e:
            logger.warning("Jupiter price lookup failed", mint=token_mint, error=str(e))
            return None
        return self._extract_price((data.get("data") or {}).get(token_mint))

    async def get_token_price_data(self, token_mint: str) -> PriceData | None:
        """Price snapshot without volume or liquidity, for price-only consumers."""
        price = await self.get_token_price(token_mint)
        return PriceData(price=price) if price is not None else None

    async def get_token_prices(self, token_mints: list[str]) -> dict[str, float]:
        """
        USD prices for many mints at once; mints without a price are omitted.
        """
        prices: dict[str, float] = {}
        for start in range(0, len(token_mints), MAX_IDS_PER_REQUEST):
            chunk = token_mints[start : start + MAX_IDS_PER_REQUEST]
            try:
                data = await self._get_json("/price", {"ids": ",".join(chunk)})
            except Exception as e:
                logger.warning(
                    "Jupiter batch price lookup failed", count=len(chunk), error=str(e)
                )
                continue

            entries = data.get("data") or {}
            for mint in chunk:
                price = self._extract_price(entries.get(mint))
                if price is not None:
                    prices[mint] = price

        logger.debug("Fetched Jupiter prices", requested=len(token_mints), found=len(prices))
        return prices
