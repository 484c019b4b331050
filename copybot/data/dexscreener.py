"""DexScreener market data adapter."""

import asyncio
import time
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.cache import TTLCache
from ..core.interfaces import Cache, MarketDataSource
from ..core.types import PriceData, TokenContext

logger = structlog.get_logger(__name__)

LOW_LIQUIDITY_USD = 10_000
LOW_ACTIVITY_TXNS = 50
LOW_VOLUME_USD = 5_000


class TokenBucket:
    """Simple in-memory token bucket rate limiter."""

    def __init__(self, capacity: int, refill_rate: float) -> None:
        """Initialize token bucket.

        Args:
            capacity: Maximum tokens in bucket
            refill_rate: Tokens per second refill rate
        """
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = capacity
        self.last_refill = time.time()

    async def acquire(self) -> bool:
        """Try to acquire a token, return True if successful."""
        now = time.time()
        time_passed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + time_passed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def select_best_pair(pairs: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pick the Solana pair with the highest USD liquidity.

    Args:
        pairs: Raw DexScreener pairs

    Returns:
        Best pair or None when no Solana pair exists
    """
    solana_pairs = [p for p in pairs if p.get("chainId") == "solana"]
    if not solana_pairs:
        return None
    return max(
        solana_pairs, key=lambda p: _float((p.get("liquidity") or {}).get("usd"))
    )


def map_pair_to_price_data(pair: dict[str, Any]) -> PriceData:
    """Map a DexScreener pair to PriceData."""
    return PriceData(
        price=_float(pair.get("priceUsd")),
        price_change_24h=_float((pair.get("priceChange") or {}).get("h24")),
        volume_24h=_float((pair.get("volume") or {}).get("h24")),
        liquidity=_float((pair.get("liquidity") or {}).get("usd")),
    )


def map_pair_to_context(mint: str, pair: dict[str, Any]) -> TokenContext:
    """Map a DexScreener pair to the token context used for risk scoring."""
    base = pair.get("baseToken") or {}
    price = pair.get("priceUsd")
    return TokenContext(
        mint_address=mint,
        name=base.get("name"),
        symbol=base.get("symbol"),
        liquidity=(pair.get("liquidity") or {}).get("usd"),
        market_cap=pair.get("marketCap"),
        price_usd=_float(price) if price is not None else None,
        volume_24h=(pair.get("volume") or {}).get("h24"),
    )


class DexScreenerLookup(MarketDataSource):
    """DexScreener API data source for token prices and context."""

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com/latest/dex",
        session: httpx.AsyncClient | None = None,
        cache: Cache | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize DexScreener lookup.

        Args:
            base_url: DexScreener API base URL
            session: Optional httpx client session
            cache: Optional injected cache for pair lookups
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.session = session or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.cache = cache if cache is not None else TTLCache(maxsize=1000, ttl=30)

        # 300 requests per minute is the published pairs limit; stay well under
        self.rate_limiter = TokenBucket(capacity=60, refill_rate=60 / 60)

        self.retry_config = AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
            reraise=True,
        )

    async def _make_request(
        self, endpoint: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Make HTTP request with rate limiting and retries.

        Args:
            endpoint: API endpoint path
            params: Query parameters

        Returns:
            API response data

        Raises:
            httpx.HTTPError: On HTTP errors
        """
        while not await self.rate_limiter.acquire():
            await asyncio.sleep(0.1)

        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        async for attempt in self.retry_config.copy():
            with attempt:
                try:
                    response = await self.session.get(
                        url, params=params, timeout=self.timeout
                    )
                    response.raise_for_status()
                    return response.json()
                except httpx.HTTPStatusError as e:
                    logger.warning(
                        "HTTP error in DexScreener request",
                        endpoint=endpoint,
                        status_code=e.response.status_code,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
                except (httpx.NetworkError, httpx.TimeoutException) as e:
                    logger.warning(
                        "Network error in DexScreener request",
                        endpoint=endpoint,
                        error=str(e),
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise

    async def get_token_pairs(self, token_mint: str) -> list[dict[str, Any]]:
        """Get all pairs for a token, empty list on failure.

        Args:
            token_mint: Token mint address

        Returns:
            Raw DexScreener pairs
        """
        cache_key = f"pairs:{token_mint}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit for token pairs", token_mint=token_mint)
            return cached

        try:
            data = await self._make_request(f"tokens/{token_mint}")
        except Exception as e:
            logger.error(
                "Failed to fetch DexScreener pairs", token_mint=token_mint, error=str(e)
            )
            return []

        pairs = data.get("pairs") or []
        self.cache.set(cache_key, pairs)
        return pairs

    async def get_best_pair(self, token_mint: str) -> dict[str, Any] | None:
        """Highest-liquidity Solana pair for a token."""
        return select_best_pair(await self.get_token_pairs(token_mint))

    async def get_token_price_data(self, token_mint: str) -> PriceData | None:
        """Current price, 24h change, volume and liquidity.

        Args:
            token_mint: Token mint address

        Returns:
            PriceData or None when the token has no Solana pair
        """
        pair = await self.get_best_pair(token_mint)
        if pair is None:
            logger.info("No Solana pair found", token_mint=token_mint)
            return None
        return map_pair_to_price_data(pair)

    async def get_token_context(self, token_mint: str) -> TokenContext:
        """Token context for risk scoring, bare context when unavailable.

        Uses the first listed pair, which DexScreener orders by relevance.

        Args:
            token_mint: Token mint address

        Returns:
            TokenContext (only the mint is set if the lookup fails)
        """
        pairs = await self.get_token_pairs(token_mint)
        if not pairs:
            return TokenContext(mint_address=token_mint)
        return map_pair_to_context(token_mint, pairs[0])

    async def get_safety_check(self, token_mint: str) -> dict[str, Any]:
        """Coarse rug/honeypot warning flags for a token.

        Args:
            token_mint: Token mint address

        Returns:
            Dictionary of flags plus a list of warnings
        """
        pairs = await self.get_token_pairs(token_mint)
        if not pairs:
            return {
                "is_low_liquidity": True,
                "is_new_pair": True,
                "has_low_volume": True,
                "sell_to_buy_ratio": 0.0,
                "warnings": ["Token not found on DexScreener"],
            }

        pair = next((p for p in pairs if p.get("chainId") == "solana"), pairs[0])
        liquidity = _float((pair.get("liquidity") or {}).get("usd"))
        volume_24h = _float((pair.get("volume") or {}).get("h24"))
        txns = (pair.get("txns") or {}).get("h24") or {}
        buys = int(txns.get("buys") or 0)
        sells = int(txns.get("sells") or 0)
        change_24h = _float((pair.get("priceChange") or {}).get("h24"))

        is_low_liquidity = liquidity < LOW_LIQUIDITY_USD
        is_new_pair = buys + sells < LOW_ACTIVITY_TXNS
        has_low_volume = volume_24h < LOW_VOLUME_USD
        sell_to_buy_ratio = sells / buys if buys > 0 else 0.0

        warnings = []
        if is_low_liquidity:
            warnings.append("Low liquidity (< $10k)")
        if is_new_pair:
            warnings.append("New pair with low activity")
        if has_low_volume:
            warnings.append("Low 24h volume")
        if sell_to_buy_ratio > 2:
            warnings.append("High sell pressure")
        if change_24h < -50:
            warnings.append("Price dropped >50% in 24h")

        return {
            "is_low_liquidity": is_low_liquidity,
            "is_new_pair": is_new_pair,
            "has_low_volume": has_low_volume,
            "sell_to_buy_ratio": sell_to_buy_ratio,
            "warnings": warnings,
        }

    async def search_tokens(self, query: str) -> list[dict[str, Any]]:
        """Search pairs by name or symbol, Solana only."""
        try:
            data = await self._make_request("search", {"q": query})
        except Exception as e:
            logger.error("DexScreener search failed", query=query, error=str(e))
            return []
        return [p for p in data.get("pairs") or [] if p.get("chainId") == "solana"]

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.session.aclose()
