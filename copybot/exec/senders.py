"""Transaction submission: Solana JSON-RPC and Jito bundles."""

import asyncio
import random
import time
from typing import Any, Literal

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

JITO_BLOCK_ENGINE_URL = "https://mainnet.block-engine.jito.wtf/api/v1/bundles"
JITO_TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4bVmkdzGkT7dTFkbpPfjMgf",
    "Cw8CFyM9FkoMi7K7Crf6HNQq4btSkzkXdVVcntPdoS4",
    "ADaUMid9yfUytqMBgopwjb2DTLSLdwLymSpfJbWD33",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]

DEFAULT_TIP_LAMPORTS = 10_000
MIN_TIP_LAMPORTS = 5_000
MAX_TIP_LAMPORTS = 100_000
BUNDLE_TIMEOUT_SECONDS = 60.0

_DEFAULT_TIPS = {"low": 5_000, "medium": 10_000, "high": 50_000}
_TIP_PERCENTILES = {"low": 0.25, "medium": 0.5, "high": 0.75}

PriorityLevel = Literal["low", "medium", "high"]


class SolanaRpcError(Exception):
    """Exception for Solana RPC errors."""

    def __init__(self, code: int, message: str, data: dict | None = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


def _is_retryable_error(exception) -> bool:
    """Check if an exception is retryable."""
    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exception, SolanaRpcError):
        retryable_codes = {
            -32603,  # Internal error
            -32005,  # Node is unhealthy
            -32004,  # Slot was skipped
            429,  # Too many requests
        }
        return exception.code in retryable_codes
    return False


class RpcSender:
    """JSON-RPC client for submitting and confirming Solana transactions."""

    def __init__(
        self,
        rpc_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize RpcSender.

        Args:
            rpc_url: Solana RPC endpoint URL
            client: Optional httpx client (will create one if not provided)
            timeout: Request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self._request_id = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def _get_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable_error),
        reraise=True,
    )
    async def _make_rpc_request(self, method: str, params: list[Any]) -> Any:
        """Make a JSON-RPC request with retries.

        Args:
            method: RPC method name
            params: Method parameters

        Returns:
            RPC response result

        Raises:
            SolanaRpcError: For RPC-specific errors
            httpx.HTTPError: For HTTP errors
        """
        request_id = self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }

        start_time = time.time()
        try:
            response = await self.client.post(
                self.rpc_url, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "RPC request failed",
                method=method,
                request_id=request_id,
                duration=time.time() - start_time,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.debug(
            "RPC request completed",
            method=method,
            request_id=request_id,
            duration=time.time() - start_time,
        )

        data = response.json()
        if "error" in data:
            error = data["error"]
            raise SolanaRpcError(
                code=error.get("code", -1),
                message=error.get("message", "Unknown RPC error"),
                data=error.get("data"),
            )
        return data.get("result")

    async def simulate(self, tx_base64: str) -> dict:
        """Simulate a transaction against the latest blockhash.

        Args:
            tx_base64: Base64-encoded transaction bytes

        Returns:
            Simulation result dictionary (``value.err`` is None on success)
        """
        params = [
            tx_base64,
            {
                "encoding": "base64",
                "commitment": "processed",
                "sigVerify": False,
                "replaceRecentBlockhash": True,
            },
        ]
        result = await self._make_rpc_request("simulateTransaction", params)

        value = (result or {}).get("value") or {}
        if value.get("err") is not None:
            logger.warning(
                "Transaction simulation failed",
                error=value["err"],
                logs=value.get("logs", []),
            )
        else:
            logger.info(
                "Transaction simulation successful",
                compute_units=value.get("unitsConsumed"),
            )
        return result

    async def send(
        self, tx_base64: str, skip_preflight: bool = True, max_retries: int = 3
    ) -> str:
        """Send a signed transaction.

        Args:
            tx_base64: Base64-encoded signed transaction
            skip_preflight: Whether to skip preflight checks
            max_retries: Node-side rebroadcast attempts

        Returns:
            Transaction signature
        """
        params = [
            tx_base64,
            {
                "encoding": "base64",
                "skipPreflight": skip_preflight,
                "maxRetries": max_retries,
                "preflightCommitment": "processed",
            },
        ]
        signature = await self._make_rpc_request("sendTransaction", params)
        logger.info("Transaction sent", signature=signature)
        return signature

    async def confirm_signature(
        self,
        signature: str,
        commitment: str = "confirmed",
        timeout: float = 60.0,
        poll_interval: float = 2.0,
    ) -> dict[str, Any]:
        """Poll until a signature reaches the requested commitment.

        Args:
            signature: Transaction signature to confirm
            commitment: Commitment level for confirmation
            timeout: Maximum time to wait for confirmation
            poll_interval: Time between status checks

        Returns:
            Signature status information

        Raises:
            TimeoutError: If confirmation times out
            SolanaRpcError: If the transaction failed on chain
        """
        accepted = {"confirmed", "finalized"} if commitment == "confirmed" else {commitment}
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            result = await self._make_rpc_request(
                "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
            statuses = (result or {}).get("value") or [None]
            status_info = statuses[0]

            if status_info is not None:
                if status_info.get("err") is not None:
                    logger.error(
                        "Transaction failed",
                        signature=signature,
                        error=status_info["err"],
                    )
                    raise SolanaRpcError(-1, f"Transaction failed: {status_info['err']}")
                if status_info.get("confirmationStatus") in accepted:
                    logger.info(
                        "Transaction confirmed",
                        signature=signature,
                        confirmation_status=status_info.get("confirmationStatus"),
                        slot=status_info.get("slot"),
                    )
                    return status_info

            await asyncio.sleep(poll_interval)

        logger.error("Transaction confirmation timeout", signature=signature, timeout=timeout)
        raise TimeoutError(f"Transaction confirmation timeout after {timeout}s: {signature}")

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> dict[str, Any]:
        """Latest blockhash and its last valid block height."""
        result = await self._make_rpc_request(
            "getLatestBlockhash", [{"commitment": commitment}]
        )
        return result["value"]

    async def get_recent_prioritization_fees(self) -> list[int]:
        """Recent per-slot prioritization fees in micro-lamports."""
        result = await self._make_rpc_request("getRecentPrioritizationFees", [])
        return [int(entry.get("prioritizationFee", 0)) for entry in result or []]


class BundleResult(BaseModel):
    """Outcome of submitting a Jito bundle."""

    success: bool
    bundle_id: str | None = None
    error: str | None = None


class BundleStatus(BaseModel):
    """Landing status of a Jito bundle."""

    status: Literal["pending", "landed", "failed"]
    slot: int | None = None


def get_random_tip_account() -> str:
    """One of the Jito tip accounts, chosen at random."""
    return random.choice(JITO_TIP_ACCOUNTS)


async def calculate_optimal_tip(
    rpc: RpcSender, priority_level: PriorityLevel = "medium"
) -> int:
    """Tip in lamports from recent prioritization fees.

    Picks the 25th/50th/75th percentile of recent fees for low/medium/high
    priority, never below MIN_TIP_LAMPORTS.

    Args:
        rpc: RPC client used to read recent fees
        priority_level: low, medium or high

    Returns:
        Tip in lamports
    """
    try:
        fees = sorted(await rpc.get_recent_prioritization_fees())
    except (httpx.HTTPError, SolanaRpcError) as e:
        logger.warning("Failed to read prioritization fees", error=str(e))
        return DEFAULT_TIP_LAMPORTS

    if not fees:
        return _DEFAULT_TIPS[priority_level]

    index = int(len(fees) * _TIP_PERCENTILES[priority_level])
    fee = fees[min(index, len(fees) - 1)] or DEFAULT_TIP_LAMPORTS
    return min(max(fee, MIN_TIP_LAMPORTS), MAX_TIP_LAMPORTS)


class JitoBundleSender:
    """Submit transactions as Jito bundles for MEV protection."""

    def __init__(
        self,
        block_engine_url: str = JITO_BLOCK_ENGINE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the bundle sender.

        Args:
            block_engine_url: Jito block engine bundles endpoint
            client: Optional httpx client
            timeout: Request timeout in seconds
        """
        self.block_engine_url = block_engine_url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def _call(self, method: str, params: list[Any]) -> dict[str, Any]:
        response = await self.client.post(
            self.block_engine_url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    async def send_bundle(self, transactions_base64: list[str]) -> BundleResult:
        """Submit signed transactions as one bundle.

        Args:
            transactions_base64: Base64-encoded signed transactions

        Returns:
            BundleResult with the bundle id on success
        """
        try:
            data = await self._call(
                "sendBundle", [transactions_base64, {"encoding": "base64"}]
            )
        except httpx.HTTPStatusError as e:
            return BundleResult(success=False, error=f"Jito API error: {e.response.text}")
        except httpx.HTTPError as e:
            logger.error("Jito bundle submission failed", error=str(e))
            return BundleResult(success=False, error=str(e))

        if data.get("error"):
            return BundleResult(
                success=False, error=data["error"].get("message", "Unknown Jito error")
            )

        logger.info("Jito bundle submitted", bundle_id=data.get("result"))
        return BundleResult(success=True, bundle_id=data.get("result"))

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        """Current status of a bundle; pending when unknown."""
        try:
            data = await self._call("getBundleStatuses", [[bundle_id]])
        except httpx.HTTPError as e:
            logger.warning("Jito bundle status failed", bundle_id=bundle_id, error=str(e))
            return BundleStatus(status="pending")

        values = (data.get("result") or {}).get("value") or []
        if data.get("error") or not values or values[0] is None:
            return BundleStatus(status="pending")

        bundle = values[0]
        if bundle.get("confirmation_status") in ("confirmed", "finalized"):
            return BundleStatus(status="landed", slot=bundle.get("slot"))
        if bundle.get("err") and bundle["err"] != {"Ok": None}:
            return BundleStatus(status="failed")
        return BundleStatus(status="pending")

    async def wait_for_bundle_landing(
        self,
        bundle_id: str,
        timeout: float = BUNDLE_TIMEOUT_SECONDS,
        poll_interval: float = 2.0,
    ) -> BundleStatus:
        """Poll bundle status until landed, failed or timed out.

        Returns:
            Final status; a timeout is reported as failed
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = await self.get_bundle_status(bundle_id)
            if status.status != "pending":
                return status
            await asyncio.sleep(poll_interval)

        logger.warning("Jito bundle did not land in time", bundle_id=bundle_id)
        return BundleStatus(status="failed")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
