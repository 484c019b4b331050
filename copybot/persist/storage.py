"""Persistence storage using SQLite."""

import json
from typing import Any

import aiosqlite
import structlog

from ..core.errors import PersistenceError
from ..core.interfaces import Persistence
from ..core.types import (
    ExecutedTrade,
    OrderStatus,
    Signal,
    SignalStatus,
    Subscription,
    TakeProfitOrder,
    TradeHistoryEntry,
    TradeStatus,
    Whale,
    utcnow,
)

logger = structlog.get_logger(__name__)

TRADE_HISTORY_LIMIT = 100
ENTRY_PRICES_KEY = "entry_prices"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS whales (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL UNIQUE,
        label TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        total_trades INTEGER NOT NULL DEFAULT 0,
        win_rate REAL NOT NULL DEFAULT 0.0,
        avg_profit_pct REAL NOT NULL DEFAULT 0.0,
        last_active_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        whale_id INTEGER REFERENCES whales(id) ON DELETE SET NULL,
        wallet_address TEXT NOT NULL,
        token_address TEXT NOT NULL,
        token_name TEXT,
        token_symbol TEXT,
        direction TEXT NOT NULL,
        sol_amount REAL,
        token_amount REAL,
        price_usd REAL,
        risk_score INTEGER,
        risk_reasoning TEXT,
        status TEXT NOT NULL,
        tx_hash TEXT NOT NULL UNIQUE,
        claimed_trade_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_signals_created_at ON signals(created_at)",
    """
    CREATE TABLE IF NOT EXISTS executed_trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        signal_id INTEGER REFERENCES signals(id) ON DELETE SET NULL,
        whale_id INTEGER,
        token_address TEXT NOT NULL,
        token_symbol TEXT,
        direction TEXT NOT NULL,
        amount_in_sol REAL,
        tokens_received REAL,
        entry_price REAL,
        tx_hash TEXT,
        bundle_id TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_user_id ON executed_trades(user_id)",
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        user_id TEXT PRIMARY KEY,
        tier TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        trades_used INTEGER NOT NULL DEFAULT 0,
        payment_tx TEXT,
        started_at TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS take_profit_orders (
        id TEXT PRIMARY KEY,
        token_mint TEXT NOT NULL,
        token_symbol TEXT NOT NULL,
        entry_price REAL NOT NULL,
        target_price REAL NOT NULL,
        target_percentage REAL NOT NULL,
        sell_percentage REAL NOT NULL,
        amount REAL NOT NULL,
        status TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        triggered_at INTEGER,
        executed_at INTEGER,
        tx_signature TEXT,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trade_history (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        direction TEXT NOT NULL,
        token_mint TEXT NOT NULL,
        token_symbol TEXT NOT NULL,
        amount REAL NOT NULL,
        price REAL NOT NULL,
        total_value REAL NOT NULL,
        tx_signature TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        is_take_profit_order INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
]

_WHALE_COLUMNS = {"label", "is_active", "total_trades", "win_rate", "avg_profit_pct"}
_TRADE_COLUMNS = {
    "tx_hash",
    "bundle_id",
    "tokens_received",
    "entry_price",
    "error_message",
}
_ORDER_COLUMNS = {"triggered_at", "executed_at", "tx_signature", "error"}


def _db_value(value: Any) -> Any:
    """Adapt a model value to a SQLite parameter."""
    if hasattr(value, "value"):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _checked_columns(fields: dict[str, Any], allowed: set[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")


class SQLiteStorage(Persistence):
    """SQLite-based storage implementation.

    Every call opens its own connection. Conditional updates run as a single
    UPDATE statement, so SQLite serializes competing writers.
    """

    def __init__(self, db_path: str = "copybot.sqlite") -> None:
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        logger.info("SQLite storage initialized", db_path=db_path)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path)

    async def initialize(self) -> None:
        """Initialize database tables."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()

        logger.info("Database tables initialized")

    async def _fetch_one(self, query: str, params: tuple = ()) -> dict[str, Any] | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return dict(row) if row else None

    async def _fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _execute(self, query: str, params: tuple = ()) -> int:
        """Run a write statement and return the affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    # Whales

    async def add_whale(
        self, address: str, label: str, is_active: bool = True
    ) -> Whale | None:
        """Start tracking a wallet.

        Returns:
            The stored whale, or None if the address is already tracked
        """
        whale = Whale(address=address, label=label, is_active=is_active)
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO whales (address, label, is_active, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (address, label, int(is_active), whale.created_at.isoformat()),
                )
                await db.commit()
                whale.id = cursor.lastrowid
        except aiosqlite.IntegrityError:
            logger.info("Whale already tracked", address=address)
            return None

        logger.info("Whale added", whale_id=whale.id, address=address, label=label)
        return whale

    async def list_whales(self, active_only: bool = False) -> list[Whale]:
        query = "SELECT * FROM whales"
        if active_only:
            query += " WHERE is_active = 1"
        rows = await self._fetch_all(query + " ORDER BY id")
        return [Whale.model_validate(row) for row in rows]

    async def get_whale(self, whale_id: int) -> Whale | None:
        row = await self._fetch_one("SELECT * FROM whales WHERE id = ?", (whale_id,))
        return Whale.model_validate(row) if row else None

    async def get_whale_by_address(self, address: str) -> Whale | None:
        row = await self._fetch_one(
            "SELECT * FROM whales WHERE address = ?", (address,)
        )
        return Whale.model_validate(row) if row else None

    async def update_whale(self, address: str, **fields: Any) -> Whale | None:
        """Update operator-editable whale fields.

        Returns:
            The updated whale, or None if the address is unknown
        """
        _checked_columns(fields, _WHALE_COLUMNS)
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            params = tuple(_db_value(v) for v in fields.values()) + (address,)
            await self._execute(
                f"UPDATE whales SET {assignments} WHERE address = ?", params
            )
        return await self.get_whale_by_address(address)

    async def delete_whale(self, address: str) -> bool:
        deleted = await self._execute("DELETE FROM whales WHERE address = ?", (address,))
        if deleted:
            logger.info("Whale removed", address=address)
        return deleted > 0

    async def touch_whale(self, whale_id: int) -> None:
        await self._execute(
            """
            UPDATE whales
            SET last_active_at = ?, total_trades = total_trades + 1
            WHERE id = ?
            """,
            (utcnow().isoformat(), whale_id),
        )

    # Signals

    async def insert_signal(self, signal: Signal) -> int | None:
        """Insert a signal.

        Returns:
            New signal id, or None if the tx hash is already stored

        Raises:
            PersistenceError: On any other database error
        """
        columns = signal.model_dump(exclude={"id"})
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    f"INSERT INTO signals ({names}) VALUES ({placeholders})",
                    tuple(_db_value(v) for v in columns.values()),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.IntegrityError:
            logger.info("Duplicate signal ignored", tx_hash=signal.tx_hash)
            return None
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to insert signal: {e}") from e

    async def get_signal(self, signal_id: int) -> Signal | None:
        row = await self._fetch_one("SELECT * FROM signals WHERE id = ?", (signal_id,))
        return Signal.model_validate(row) if row else None

    async def get_signal_by_tx_hash(self, tx_hash: str) -> Signal | None:
        row = await self._fetch_one(
            "SELECT * FROM signals WHERE tx_hash = ?", (tx_hash,)
        )
        return Signal.model_validate(row) if row else None

    async def list_signals(
        self, limit: int = 50, status: SignalStatus | None = None
    ) -> list[Signal]:
        """Most recent signals first."""
        if status is None:
            rows = await self._fetch_all(
                "SELECT * FROM signals ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = await self._fetch_all(
                "SELECT * FROM signals WHERE status = ? ORDER BY id DESC LIMIT ?",
                (status.value, limit),
            )
        return [Signal.model_validate(row) for row in rows]

    async def update_signal_score(
        self, signal_id: int, score: int, reasoning: str, status: SignalStatus
    ) -> None:
        """Persist score, reasoning and status in one statement.

        Terminal signals are left untouched.
        """
        await self._execute(
            """
            UPDATE signals
            SET risk_score = ?, risk_reasoning = ?, status = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (
                score,
                reasoning,
                status.value,
                signal_id,
                SignalStatus.PENDING.value,
                SignalStatus.SKIPPED.value,
            ),
        )

    async def claim_signal(self, signal_id: int, trade_id: int) -> bool:
        """Claim a pending, unclaimed signal for one execution attempt."""
        claimed = await self._execute(
            """
            UPDATE signals SET claimed_trade_id = ?
            WHERE id = ? AND status = ? AND claimed_trade_id IS NULL
            """,
            (trade_id, signal_id, SignalStatus.PENDING.value),
        )
        logger.debug(
            "Signal claim attempted",
            signal_id=signal_id,
            trade_id=trade_id,
            claimed=bool(claimed),
        )
        return claimed == 1

    async def release_signal_claim(self, signal_id: int, trade_id: int) -> None:
        await self._execute(
            """
            UPDATE signals SET claimed_trade_id = NULL
            WHERE id = ? AND claimed_trade_id = ?
            """,
            (signal_id, trade_id),
        )

    async def set_signal_status(
        self,
        signal_id: int,
        status: SignalStatus,
        expected: list[SignalStatus] | None = None,
    ) -> bool:
        """Set a signal status, optionally only from one of the expected states.

        Returns:
            Whether a row was updated
        """
        query = "UPDATE signals SET status = ? WHERE id = ?"
        params: tuple = (status.value, signal_id)
        if expected:
            query += f" AND status IN ({', '.join('?' for _ in expected)})"
            params += tuple(s.value for s in expected)
        return await self._execute(query, params) == 1

    # Executed trades

    async def insert_trade(self, trade: ExecutedTrade) -> int:
        columns = trade.model_dump(exclude={"id"})
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        async with self._connect() as db:
            cursor = await db.execute(
                f"INSERT INTO executed_trades ({names}) VALUES ({placeholders})",
                tuple(_db_value(v) for v in columns.values()),
            )
            await db.commit()
            trade_id = cursor.lastrowid

        logger.debug(
            "Trade recorded",
            trade_id=trade_id,
            user_id=trade.user_id,
            signal_id=trade.signal_id,
            status=trade.status.value,
        )
        return trade_id

    async def update_trade(
        self, trade_id: int, status: TradeStatus, **fields: Any
    ) -> None:
        _checked_columns(fields, _TRADE_COLUMNS)
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, utcnow().isoformat()]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(_db_value(value))
        params.append(trade_id)
        await self._execute(
            f"UPDATE executed_trades SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )

    async def get_trade(self, trade_id: int) -> ExecutedTrade | None:
        row = await self._fetch_one(
            "SELECT * FROM executed_trades WHERE id = ?", (trade_id,)
        )
        return ExecutedTrade.model_validate(row) if row else None

    async def list_trades_for_user(
        self, user_id: str, limit: int = 50
    ) -> list[ExecutedTrade]:
        rows = await self._fetch_all(
            """
            SELECT * FROM executed_trades WHERE user_id = ?
            ORDER BY id DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [ExecutedTrade.model_validate(row) for row in rows]

    # Subscriptions

    async def get_subscription(self, user_id: str) -> Subscription | None:
        row = await self._fetch_one(
            "SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)
        )
        return Subscription.model_validate(row) if row else None

    async def upsert_subscription(self, subscription: Subscription) -> None:
        columns = subscription.model_dump()
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "user_id")
        await self._execute(
            f"""
            INSERT INTO subscriptions ({names}) VALUES ({placeholders})
            ON CONFLICT(user_id) DO UPDATE SET {updates}
            """,
            tuple(_db_value(v) for v in columns.values()),
        )

    async def increment_trades_used(self, user_id: str) -> None:
        await self._execute(
            "UPDATE subscriptions SET trades_used = trades_used + 1 WHERE user_id = ?",
            (user_id,),
        )

    # Take-profit orders

    async def insert_order(self, order: TakeProfitOrder) -> None:
        columns = order.model_dump()
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        await self._execute(
            f"INSERT INTO take_profit_orders ({names}) VALUES ({placeholders})",
            tuple(_db_value(v) for v in columns.values()),
        )
        logger.info(
            "Take-profit order stored",
            order_id=order.id,
            token_mint=order.token_mint,
            target_price=order.target_price,
        )

    async def get_order(self, order_id: str) -> TakeProfitOrder | None:
        row = await self._fetch_one(
            "SELECT * FROM take_profit_orders WHERE id = ?", (order_id,)
        )
        return TakeProfitOrder.model_validate(row) if row else None

    async def list_orders(
        self, status: OrderStatus | None = None
    ) -> list[TakeProfitOrder]:
        if status is None:
            rows = await self._fetch_all(
                "SELECT * FROM take_profit_orders ORDER BY rowid"
            )
        else:
            rows = await self._fetch_all(
                "SELECT * FROM take_profit_orders WHERE status = ? ORDER BY rowid",
                (status.value,),
            )
        return [TakeProfitOrder.model_validate(row) for row in rows]

    async def transition_order(
        self,
        order: TakeProfitOrder,
        new_status: OrderStatus,
        **fields: Any,
    ) -> TakeProfitOrder | None:
        """Move an order to a new status if nobody changed it since it was read.

        The update matches on the order's id, status and version; the version
        is bumped on success.

        Returns:
            The updated order, or None when the compare-and-swap lost
        """
        _checked_columns(fields, _ORDER_COLUMNS)
        assignments = ["status = ?", "version = version + 1"]
        params: list[Any] = [new_status.value]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(_db_value(value))
        params.extend([order.id, order.status.value, order.version])

        updated = await self._execute(
            f"""
            UPDATE take_profit_orders SET {', '.join(assignments)}
            WHERE id = ? AND status = ? AND version = ?
            """,
            tuple(params),
        )
        if updated != 1:
            logger.info(
                "Order transition lost",
                order_id=order.id,
                from_status=order.status.value,
                to_status=new_status.value,
                version=order.version,
            )
            return None

        return order.model_copy(
            update={"status": new_status, "version": order.version + 1, **fields}
        )

    # Trade history

    async def append_trade_history(self, entry: TradeHistoryEntry) -> None:
        """Prepend an entry and keep only the most recent ones."""
        columns = entry.model_dump()
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO trade_history ({names}) VALUES ({placeholders})",
                tuple(_db_value(v) for v in columns.values()),
            )
            await db.execute(
                """
                DELETE FROM trade_history WHERE seq NOT IN (
                    SELECT seq FROM trade_history ORDER BY seq DESC LIMIT ?
                )
                """,
                (TRADE_HISTORY_LIMIT,),
            )
            await db.commit()

    async def list_trade_history(
        self, limit: int = TRADE_HISTORY_LIMIT
    ) -> list[TradeHistoryEntry]:
        """Most recent entries first."""
        rows = await self._fetch_all(
            "SELECT * FROM trade_history ORDER BY seq DESC LIMIT ?", (limit,)
        )
        for row in rows:
            row.pop("seq", None)
        return [TradeHistoryEntry.model_validate(row) for row in rows]

    async def get_entry_prices(self) -> dict[str, float]:
        return await self.load_state_json(ENTRY_PRICES_KEY) or {}

    async def set_entry_price(self, token_mint: str, price: float) -> None:
        prices = await self.get_entry_prices()
        prices[token_mint] = price
        await self.save_state_json(ENTRY_PRICES_KEY, prices)

    # Key/value state

    async def load_state(self, key: str) -> str | None:
        """Load state value by key.

        Args:
            key: State key

        Returns:
            State value or None if not found
        """
        row = await self._fetch_one("SELECT value FROM state WHERE key = ?", (key,))
        return row["value"] if row else None

    async def save_state(self, key: str, value: str) -> None:
        """Save state value by key.

        Args:
            key: State key
            value: State value
        """
        await self._execute(
            """
            INSERT INTO state (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    async def save_state_json(self, key: str, data: Any) -> None:
        """Save JSON-serializable data as state."""
        await self.save_state(key, json.dumps(data))

    async def load_state_json(self, key: str) -> Any | None:
        """Load and deserialize JSON state data, None if missing or corrupt."""
        value = await self.load_state(key)
        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to deserialize state JSON", key=key, error=str(e))
            return None

    async def close(self) -> None:
        """Close storage (cleanup if needed)."""
        logger.info("Storage closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
