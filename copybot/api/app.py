"""HTTP API: webhook intake, signal processing and non-custodial trade prep.

No endpoint signs or broadcasts a transaction. Trades are prepared here and
signed by the user's wallet; the outcome is reported back through
``PUT /api/trading/execute``.
"""

import hashlib
import hmac
import json
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config.settings import AppSettings
from ..core.errors import CopyBotError, InvalidRequestError, NotFoundError
from ..core.interfaces import Persistence, QuoteProvider
from ..core.types import (
    SOL_MINT,
    OrderStatus,
    SignalStatus,
    TradeStatus,
)
from ..exec.jupiter import sol_to_lamports
from ..monitor.take_profit import cancel_order, create_take_profit_order
from ..pipeline.confirmation import ExecutionConfirmationHandler
from ..pipeline.ingest import SignalIngestionHandler
from ..pipeline.orchestrator import CopyTradeOrchestrator

logger = structlog.get_logger(__name__)

WEBHOOK_EVENT_TYPES = ("price_alert", "transaction_confirmed", "take_profit_triggered")


@dataclass
class ApiContext:
    """Components the API routes operate on."""

    settings: AppSettings
    storage: Persistence
    ingestion: SignalIngestionHandler
    orchestrator: CopyTradeOrchestrator
    confirmation: ExecutionConfirmationHandler
    quotes: QuoteProvider
    resources: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        """Close every resource that exposes an async ``close``."""
        for resource in self.resources:
            try:
                await resource.close()
            except Exception as e:
                logger.warning(
                    "Failed to close resource",
                    resource=type(resource).__name__,
                    error=str(e),
                )


# Request bodies


class _CamelModel(BaseModel):
    model_config = {"populate_by_name": True}


class PrepareTradeRequest(_CamelModel):
    signal_id: int = Field(alias="signalId")
    wallet_address: str = Field(alias="walletAddress", min_length=1)
    amount: float | None = Field(default=None, gt=0, description="SOL to spend")


class RecordExecutionRequest(_CamelModel):
    signal_id: int = Field(alias="signalId")
    user_id: str = Field(alias="userId", min_length=1)
    tx_hash: str | None = Field(default=None, alias="txHash")
    tokens_received: float | None = Field(default=None, alias="tokensReceived")
    entry_price: float | None = Field(default=None, alias="entryPrice")
    status: TradeStatus = TradeStatus.SUCCESS


class ProcessSignalRequest(_CamelModel):
    max_sol_per_trade: float | None = Field(default=None, alias="maxSolPerTrade")
    score_threshold: int | None = Field(default=None, alias="scoreThreshold")
    slippage_bps: int | None = Field(default=None, alias="slippageBps")
    use_mev_protection: bool | None = Field(default=None, alias="useMevProtection")


class WhaleCreateRequest(_CamelModel):
    address: str = Field(min_length=1)
    label: str = Field(min_length=1)
    is_active: bool = Field(default=True, alias="isActive")


class WhaleUpdateRequest(_CamelModel):
    label: str | None = None
    is_active: bool | None = Field(default=None, alias="isActive")


class TakeProfitRequest(_CamelModel):
    token_mint: str = Field(alias="tokenMint", min_length=1)
    token_symbol: str = Field(alias="tokenSymbol")
    entry_price: float = Field(alias="entryPrice", gt=0)
    target_percentage: float = Field(alias="targetPercentage", gt=0)
    sell_percentage: float = Field(alias="sellPercentage", gt=0, le=100)
    amount: float = Field(gt=0)


# Helpers


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, **extra},
    )


def verify_hmac_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check a hex HMAC-SHA256 of the raw body against the supplied signature."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def get_context(request: Request) -> ApiContext:
    return request.app.state.context


def create_app(context: ApiContext) -> FastAPI:
    """Build the FastAPI application around assembled components."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("api.startup", env=context.settings.env)
        await context.storage.initialize()
        yield
        logger.info("api.shutdown")
        await context.aclose()

    app = FastAPI(title="copybot", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "api.request",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request", details=details)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, f"{exc.entity} not found")

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(
        request: Request, exc: InvalidRequestError
    ) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(CopyBotError)
    async def copybot_error_handler(request: Request, exc: CopyBotError) -> JSONResponse:
        logger.error("api.copybot_error", error=str(exc), error_type=type(exc).__name__)
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("api.unhandled_exception", error=str(exc))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    # Webhooks

    @app.get("/api/helius")
    async def helius_health() -> dict[str, Any]:
        return {"status": "ok", "service": "helius-webhook"}

    @app.post("/api/helius")
    async def helius_webhook(
        request: Request, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        expected_auth = ctx.settings.helius_auth_header
        if expected_auth and request.headers.get("authorization") != expected_auth:
            logger.warning("Rejected Helius webhook with bad authorization")
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Malformed Helius webhook body", error=str(e))
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process webhook")

        result = await ctx.ingestion.ingest(payload)
        return JSONResponse(
            {
                "success": True,
                "processed": result.processed,
                "signalIds": result.signal_ids,
            }
        )

    @app.get("/api/webhook")
    async def webhook_health() -> dict[str, Any]:
        return {"status": "ok", "service": "webhook", "types": list(WEBHOOK_EVENT_TYPES)}

    @app.post("/api/webhook")
    async def generic_webhook(
        request: Request, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        body = await request.body()
        secret = ctx.settings.webhook_secret
        if secret and not verify_hmac_signature(
            secret, body, request.headers.get("x-webhook-signature")
        ):
            logger.warning("Rejected webhook with invalid signature")
            return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

        try:
            event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
        if not isinstance(event, dict):
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid event")

        event_type = event.get("type")
        data = event.get("data") or {}
        if event_type not in WEBHOOK_EVENT_TYPES:
            return _error(status.HTTP_400_BAD_REQUEST, f"Unknown event type: {event_type}")

        logger.info("Webhook event received", event_type=event_type, data=data)
        messages = {
            "price_alert": "Price alert processed",
            "transaction_confirmed": "Transaction confirmation processed",
            "take_profit_triggered": "Take-profit trigger processed",
        }
        return JSONResponse({"success": True, "message": messages[event_type]})

    # Trading

    @app.post("/api/trading/execute")
    async def prepare_trade(
        body: PrepareTradeRequest, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        signal = await ctx.storage.get_signal(body.signal_id)
        if signal is None:
            raise NotFoundError("Signal", body.signal_id)
        if signal.status == SignalStatus.EXECUTED:
            raise InvalidRequestError("Signal already executed")

        cap = body.amount or ctx.settings.max_sol_per_trade
        sol_amount = min(cap, signal.sol_amount or cap)
        slippage_bps = ctx.settings.max_slippage_bps
        quote = await ctx.quotes.get_quote(
            SOL_MINT, signal.token_address, sol_to_lamports(sol_amount), slippage_bps
        )
        if quote is None:
            return _error(status.HTTP_502_BAD_GATEWAY, "Failed to get quote")

        logger.info(
            "Trade prepared for wallet",
            signal_id=signal.id,
            wallet_address=body.wallet_address,
            sol_amount=sol_amount,
        )
        return JSONResponse(
            {
                "success": True,
                "signal": {
                    "id": signal.id,
                    "tokenAddress": signal.token_address,
                    "tokenSymbol": signal.token_symbol,
                    "tokenName": signal.token_name,
                    "riskScore": signal.risk_score,
                    "riskReasoning": signal.risk_reasoning,
                },
                "trade": {
                    "solAmount": sol_amount,
                    "expectedTokens": quote.out_amount,
                    "priceImpact": quote.price_impact_pct,
                    "slippageBps": slippage_bps,
                },
                "quote": quote.to_response(),
                "message": "Sign and send the swap with your wallet, then report it",
            }
        )

    @app.put("/api/trading/execute")
    async def record_execution(
        body: RecordExecutionRequest, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        trade_id = await ctx.confirmation.record_execution(
            signal_id=body.signal_id,
            user_id=body.user_id,
            tx_hash=body.tx_hash,
            tokens_received=body.tokens_received,
            entry_price=body.entry_price,
            status=body.status,
        )
        return JSONResponse({"success": True, "tradeId": trade_id, "txHash": body.tx_hash})

    # Signals and trades

    @app.post("/api/signals/{signal_id}/process")
    async def process_signal(
        signal_id: int,
        body: ProcessSignalRequest | None = None,
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        overrides = body.model_dump(exclude_none=True) if body else None
        result = await ctx.orchestrator.process_signal(signal_id, overrides)
        if result.not_found:
            raise NotFoundError("Signal", signal_id)
        return JSONResponse(
            {
                "success": not result.skipped,
                "skipped": result.skipped,
                "reason": result.reason,
                "prepared": result.prepared.model_dump(mode="json", by_alias=True)
                if result.prepared
                else None,
            }
        )

    @app.get("/api/signals")
    async def list_signals(
        limit: int = Query(default=50, ge=1, le=500),
        signal_status: SignalStatus | None = Query(default=None, alias="status"),
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        signals = await ctx.storage.list_signals(limit=limit, status=signal_status)
        return JSONResponse(
            {"success": True, "signals": [s.model_dump(mode="json") for s in signals]}
        )

    @app.get("/api/trades/{user_id}")
    async def list_trades(
        user_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        trades = await ctx.storage.list_trades_for_user(user_id, limit=limit)
        return JSONResponse(
            {"success": True, "trades": [t.model_dump(mode="json") for t in trades]}
        )

    # Whales

    @app.get("/api/whales")
    async def list_whales(
        active_only: bool = Query(default=False, alias="activeOnly"),
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        whales = await ctx.storage.list_whales(active_only=active_only)
        return JSONResponse(
            {"success": True, "whales": [w.model_dump(mode="json") for w in whales]}
        )

    @app.post("/api/whales", status_code=status.HTTP_201_CREATED)
    async def add_whale(
        body: WhaleCreateRequest, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        whale = await ctx.storage.add_whale(body.address, body.label, body.is_active)
        if whale is None:
            return _error(status.HTTP_409_CONFLICT, "Whale already tracked")
        return JSONResponse(
            {"success": True, "whale": whale.model_dump(mode="json")},
            status_code=status.HTTP_201_CREATED,
        )

    @app.patch("/api/whales/{address}")
    async def update_whale(
        address: str, body: WhaleUpdateRequest, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        whale = await ctx.storage.update_whale(address, **body.model_dump(exclude_none=True))
        if whale is None:
            raise NotFoundError("Whale", address)
        return JSONResponse({"success": True, "whale": whale.model_dump(mode="json")})

    @app.delete("/api/whales/{address}")
    async def delete_whale(
        address: str, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        if not await ctx.storage.delete_whale(address):
            raise NotFoundError("Whale", address)
        return JSONResponse({"success": True})

    # Quotes

    @app.get("/api/jupiter/quote")
    async def jupiter_quote(
        input_mint: str = Query(alias="inputMint", min_length=1),
        output_mint: str = Query(alias="outputMint", min_length=1),
        amount: int = Query(gt=0),
        slippage_bps: int = Query(default=100, alias="slippageBps", ge=0),
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        quote = await ctx.quotes.get_quote(input_mint, output_mint, amount, slippage_bps)
        if quote is None:
            return _error(status.HTTP_502_BAD_GATEWAY, "Failed to get quote")
        return JSONResponse(quote.to_response())

    # Take-profit orders

    @app.get("/api/take-profit")
    async def list_take_profit_orders(
        order_status: OrderStatus | None = Query(default=None, alias="status"),
        ctx: ApiContext = Depends(get_context),
    ) -> JSONResponse:
        orders = await ctx.storage.list_orders(status=order_status)
        return JSONResponse(
            {"success": True, "orders": [o.model_dump(mode="json") for o in orders]}
        )

    @app.post("/api/take-profit", status_code=status.HTTP_201_CREATED)
    async def create_take_profit(
        body: TakeProfitRequest, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        order = create_take_profit_order(
            body.token_mint,
            body.token_symbol,
            body.entry_price,
            body.target_percentage,
            body.sell_percentage,
            body.amount,
        )
        await ctx.storage.insert_order(order)
        return JSONResponse(
            {"success": True, "order": order.model_dump(mode="json")},
            status_code=status.HTTP_201_CREATED,
        )

    @app.delete("/api/take-profit/{order_id}")
    async def cancel_take_profit(
        order_id: str, ctx: ApiContext = Depends(get_context)
    ) -> JSONResponse:
        cancelled = await cancel_order(ctx.storage, order_id)
        if cancelled is None:
            raise NotFoundError("Pending order", order_id)
        return JSONResponse({"success": True, "order": cancelled.model_dump(mode="json")})

    return app
