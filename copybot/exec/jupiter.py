"""Jupiter swap client: quotes, swap transactions and submission."""

import base64
import math
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.interfaces import QuoteProvider, Wallet
from ..core.types import LAMPORTS_PER_SOL, Quote, SwapResult
from .senders import JitoBundleSender, RpcSender, SolanaRpcError
from .wallets import transaction_signature

logger = structlog.get_logger(__name__)

DEFAULT_PRIORITY_FEE_LAMPORTS = 100_000
MEV_PRIORITY_FEE_LAMPORTS = 50_000


def sol_to_lamports(sol: float) -> int:
    """Convert SOL to lamports, rounding down."""
    return math.floor(sol * LAMPORTS_PER_SOL)


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def format_token_amount(amount: str | int, decimals: int) -> float:
    """Convert a base-unit token amount to UI units."""
    return int(amount) / 10**decimals


def priority_fee_for(use_mev_protection: bool) -> int:
    """Priority fee for a copy trade; Jito bundles carry a smaller tip."""
    return MEV_PRIORITY_FEE_LAMPORTS if use_mev_protection else DEFAULT_PRIORITY_FEE_LAMPORTS


def build_quote_params(
    input_mint: str,
    output_mint: str,
    amount: int,
    slippage_bps: int,
    only_direct_routes: bool = False,
    as_legacy_transaction: bool = False,
) -> dict[str, Any]:
    """Build query parameters for Jupiter quote endpoint.

    Args:
        input_mint: Input token mint address
        output_mint: Output token mint address
        amount: Amount in smallest units (lamports for SOL, token decimals for others)
        slippage_bps: Slippage tolerance in basis points
        only_direct_routes: Whether to only return direct routes
        as_legacy_transaction: Whether to return legacy transaction format

    Returns:
        Dictionary of query parameters
    """
    return {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "amount": str(amount),
        "slippageBps": str(slippage_bps),
        "onlyDirectRoutes": str(only_direct_routes).lower(),
        "asLegacyTransaction": str(as_legacy_transaction).lower(),
    }


def build_swap_request(
    quote: Quote,
    user_public_key: str,
    priority_fee_lamports: int,
    use_jito_tip: bool = False,
) -> dict[str, Any]:
    """Body for the swap endpoint.

    With a Jito tip the priority fee is paid as a tip to a Jito tip account,
    which bundles require to land.
    """
    fee: int | dict[str, int] = (
        {"jitoTipLamports": priority_fee_lamports}
        if use_jito_tip
        else priority_fee_lamports
    )
    return {
        "quoteResponse": quote.to_response(),
        "userPublicKey": user_public_key,
        "wrapAndUnwrapSol": True,
        "dynamicComputeUnitLimit": True,
        "prioritizationFeeLamports": fee,
    }


class JupiterSwapClient(QuoteProvider):
    """Jupiter v6 quote and swap client.

    Signing is always delegated to the caller's wallet.
    """

    def __init__(
        self,
        base_url: str,
        rpc: RpcSender,
        jito: JitoBundleSender | None = None,
        session: httpx.AsyncClient | None = None,
        dry_run: bool = False,
        timeout: float = 30.0,
        confirm_timeout: float = 60.0,
    ) -> None:
        """Initialize Jupiter swap client.

        Args:
            base_url: Jupiter API base URL
            rpc: RPC sender used to submit, simulate and confirm
            jito: Optional Jito bundle sender for MEV-protected swaps
            session: Optional HTTP session
            dry_run: Simulate swaps instead of submitting them
            timeout: Request timeout in seconds
            confirm_timeout: Maximum wait for confirmation in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.rpc = rpc
        self.jito = jito
        self.session = session or httpx.AsyncClient(timeout=timeout)
        self.dry_run = dry_run
        self.timeout = timeout
        self.confirm_timeout = confirm_timeout

        self.retry_config = AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
            reraise=True,
        )

        if dry_run:
            logger.warning("Jupiter swap client in dry-run mode, swaps are simulated only")

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 100,
    ) -> Quote | None:
        """Get a priced route.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest units
            slippage_bps: Slippage tolerance in basis points

        Returns:
            Quote, or None when no route is available or the API fails
        """
        params = build_quote_params(input_mint, output_mint, amount, slippage_bps)
        url = f"{self.base_url}/quote"

        logger.info(
            "Requesting Jupiter quote",
            input_mint=input_mint,
            output_mint=output_mint,
            amount=amount,
            slippage_bps=slippage_bps,
        )

        try:
            async for attempt in self.retry_config.copy():
                with attempt:
                    response = await self.session.get(
                        url, params=params, timeout=self.timeout
                    )
            response.raise_for_status()
            return Quote.from_response(response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "Jupiter quote API error",
                status_code=e.response.status_code,
                response_text=e.response.text,
            )
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error("Jupiter quote failed", error=str(e), error_type=type(e).__name__)
        return None

    async def build_swap_transaction(
        self,
        quote: Quote,
        user_public_key: str,
        priority_fee_lamports: int = DEFAULT_PRIORITY_FEE_LAMPORTS,
        use_jito_tip: bool = False,
    ) -> bytes:
        """Ask Jupiter for the unsigned swap transaction.

        Returns:
            Unsigned versioned transaction bytes

        Raises:
            httpx.HTTPStatusError: If the swap endpoint rejects the request
        """
        body = build_swap_request(
            quote, user_public_key, priority_fee_lamports, use_jito_tip
        )
        response = await self.session.post(
            f"{self.base_url}/swap", json=body, timeout=self.timeout
        )
        response.raise_for_status()
        return base64.b64decode(response.json()["swapTransaction"])

    async def execute_swap(
        self,
        wallet: Wallet,
        quote: Quote,
        priority_fee_lamports: int = DEFAULT_PRIORITY_FEE_LAMPORTS,
        use_mev_protection: bool = False,
    ) -> SwapResult:
        """Build, sign through the wallet, submit and confirm a swap.

        Args:
            wallet: User wallet that signs the transaction
            quote: Route from get_quote
            priority_fee_lamports: Priority fee, or Jito tip with MEV protection
            use_mev_protection: Submit as a Jito bundle when a sender is configured

        Returns:
            SwapResult; never raises
        """
        if not wallet.connected:
            return SwapResult(success=False, error="Wallet not connected")

        via_jito = use_mev_protection and self.jito is not None

        try:
            unsigned = await self.build_swap_transaction(
                quote, wallet.pubkey_base58(), priority_fee_lamports, via_jito
            )
        except httpx.HTTPStatusError as e:
            return SwapResult(success=False, error=f"Swap API error: {e.response.text}")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("Failed to build swap transaction", error=str(e))
            return SwapResult(success=False, error=str(e) or "Unknown error")

        try:
            signed = await wallet.sign_transaction(unsigned)
            signed_b64 = base64.b64encode(signed).decode()

            if self.dry_run:
                return await self._simulate(signed_b64)
            if via_jito:
                return await self._submit_bundle(signed, signed_b64, quote)
            return await self._submit_rpc(signed_b64, quote)
        except Exception as e:
            logger.error(
                "Swap execution error", error=str(e), error_type=type(e).__name__
            )
            return SwapResult(success=False, error=str(e) or "Unknown error")

    async def _simulate(self, signed_b64: str) -> SwapResult:
        result = await self.rpc.simulate(signed_b64)
        err = ((result or {}).get("value") or {}).get("err")
        if err is not None:
            return SwapResult(success=False, error=f"Dry run: simulation failed: {err}")
        return SwapResult(success=False, error="Dry run: transaction simulated, not sent")

    async def _submit_rpc(self, signed_b64: str, quote: Quote) -> SwapResult:
        signature = await self.rpc.send(signed_b64, skip_preflight=True, max_retries=3)
        try:
            await self.rpc.confirm_signature(signature, timeout=self.confirm_timeout)
        except SolanaRpcError:
            return SwapResult(success=False, signature=signature, error="Transaction failed")
        except TimeoutError as e:
            return SwapResult(success=False, signature=signature, error=str(e))

        return SwapResult(
            success=True,
            signature=signature,
            input_amount=quote.in_amount,
            output_amount=quote.out_amount,
        )

    async def _submit_bundle(
        self, signed: bytes, signed_b64: str, quote: Quote
    ) -> SwapResult:
        signature = transaction_signature(signed)
        bundle = await self.jito.send_bundle([signed_b64])
        if not bundle.success:
            return SwapResult(success=False, signature=signature, error=bundle.error)

        status = await self.jito.wait_for_bundle_landing(
            bundle.bundle_id, timeout=self.confirm_timeout
        )
        if status.status != "landed":
            return SwapResult(
                success=False,
                signature=signature,
                bundle_id=bundle.bundle_id,
                error="Bundle did not land",
            )

        return SwapResult(
            success=True,
            signature=signature,
            bundle_id=bundle.bundle_id,
            input_amount=quote.in_amount,
            output_amount=quote.out_amount,
        )

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.session.aclose()
