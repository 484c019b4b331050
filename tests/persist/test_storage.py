"""Tests for SQLite storage implementation."""

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from copybot.core.types import (
    ExecutedTrade,
    OrderStatus,
    Signal,
    SignalStatus,
    Subscription,
    TakeProfitOrder,
    TradeDirection,
    TradeHistoryEntry,
    TradeStatus,
)
from copybot.persist.storage import TRADE_HISTORY_LIMIT, SQLiteStorage

WHALE = "WhaLe1111111111111111111111111111111111111"
MINT = "BonkMint11111111111111111111111111111111111"


def make_signal(tx_hash: str = "sig1", **overrides) -> Signal:
    fields = {
        "wallet_address": WHALE,
        "token_address": MINT,
        "direction": TradeDirection.BUY,
        "sol_amount": 1.5,
        "tx_hash": tx_hash,
    }
    fields.update(overrides)
    return Signal(**fields)


def make_order(order_id: str = "tp_1") -> TakeProfitOrder:
    return TakeProfitOrder(
        id=order_id,
        token_mint=MINT,
        token_symbol="BONK",
        entry_price=1.0,
        target_price=1.5,
        target_percentage=50,
        sell_percentage=50,
        amount=1000,
        created_at=1,
    )


class TestSQLiteStorage:
    """Test SQLite storage functionality."""

    @pytest_asyncio.fixture
    async def storage(self):
        """Create a temporary SQLite storage."""
        with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
            db_path = tmp.name

        storage = SQLiteStorage(db_path=db_path)
        await storage.initialize()

        yield storage

        await storage.close()
        Path(db_path).unlink(missing_ok=True)

    @pytest.mark.asyncio
    async def test_initialization(self):
        """Test storage initialization is idempotent."""
        with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
            db_path = tmp.name

        storage = SQLiteStorage(db_path=db_path)
        await storage.initialize()
        await storage.initialize()

        assert Path(db_path).exists()
        Path(db_path).unlink()

    @pytest.mark.asyncio
    async def test_whale_crud(self, storage):
        """Test adding, listing, updating and deleting whales."""
        whale = await storage.add_whale(WHALE, "Big Fish")
        assert whale.id is not None
        assert await storage.add_whale(WHALE, "Duplicate") is None

        await storage.add_whale("other", "Sleeper", is_active=False)
        assert len(await storage.list_whales()) == 2
        active = await storage.list_whales(active_only=True)
        assert [w.address for w in active] == [WHALE]

        updated = await storage.update_whale(WHALE, label="Bigger Fish", is_active=False)
        assert updated.label == "Bigger Fish"
        assert updated.is_active is False
        assert await storage.update_whale("missing", label="x") is None

        with pytest.raises(ValueError, match="Unknown columns"):
            await storage.update_whale(WHALE, address="hijack")

        assert await storage.delete_whale(WHALE) is True
        assert await storage.delete_whale(WHALE) is False

    @pytest.mark.asyncio
    async def test_touch_whale(self, storage):
        """Test that activity bumps the trade count and timestamp."""
        whale = await storage.add_whale(WHALE, "Big Fish")

        await storage.touch_whale(whale.id)

        refreshed = await storage.get_whale(whale.id)
        assert refreshed.total_trades == 1
        assert refreshed.last_active_at is not None

    @pytest.mark.asyncio
    async def test_signal_dedupe_by_tx_hash(self, storage):
        """Test that a tx hash is stored at most once."""
        first = await storage.insert_signal(make_signal("sig1"))
        second = await storage.insert_signal(make_signal("sig1"))

        assert first is not None
        assert second is None
        stored = await storage.get_signal_by_tx_hash("sig1")
        assert stored.id == first
        assert stored.status == SignalStatus.PENDING
        assert stored.risk_score is None

    @pytest.mark.asyncio
    async def test_list_signals(self, storage):
        """Test listing signals newest first with a status filter."""
        await storage.insert_signal(make_signal("a"))
        second = await storage.insert_signal(make_signal("b"))
        await storage.set_signal_status(second, SignalStatus.SKIPPED)

        signals = await storage.list_signals()
        assert [s.tx_hash for s in signals] == ["b", "a"]

        skipped = await storage.list_signals(status=SignalStatus.SKIPPED)
        assert [s.tx_hash for s in skipped] == ["b"]

    @pytest.mark.asyncio
    async def test_update_signal_score(self, storage):
        """Test that scoring never touches terminal signals."""
        signal_id = await storage.insert_signal(make_signal())

        await storage.update_signal_score(signal_id, 85, "solid", SignalStatus.PENDING)
        signal = await storage.get_signal(signal_id)
        assert signal.risk_score == 85
        assert signal.risk_reasoning == "solid"

        await storage.set_signal_status(signal_id, SignalStatus.EXECUTED)
        await storage.update_signal_score(signal_id, 10, "late", SignalStatus.SKIPPED)

        signal = await storage.get_signal(signal_id)
        assert signal.status == SignalStatus.EXECUTED
        assert signal.risk_score == 85

    @pytest.mark.asyncio
    async def test_claim_signal(self, storage):
        """Test that only one execution can claim a pending signal."""
        signal_id = await storage.insert_signal(make_signal())

        assert await storage.claim_signal(signal_id, trade_id=1) is True
        assert await storage.claim_signal(signal_id, trade_id=2) is False

        await storage.release_signal_claim(signal_id, trade_id=2)
        assert (await storage.get_signal(signal_id)).claimed_trade_id == 1

        await storage.release_signal_claim(signal_id, trade_id=1)
        assert await storage.claim_signal(signal_id, trade_id=2) is True

    @pytest.mark.asyncio
    async def test_claim_requires_pending(self, storage):
        """Test that skipped signals cannot be claimed."""
        signal_id = await storage.insert_signal(make_signal())
        await storage.set_signal_status(signal_id, SignalStatus.SKIPPED)

        assert await storage.claim_signal(signal_id, trade_id=1) is False

    @pytest.mark.asyncio
    async def test_conditional_status(self, storage):
        """Test status updates guarded by expected states."""
        signal_id = await storage.insert_signal(make_signal())

        assert await storage.set_signal_status(
            signal_id, SignalStatus.EXECUTED, expected=[SignalStatus.PENDING]
        )
        assert not await storage.set_signal_status(
            signal_id, SignalStatus.FAILED, expected=[SignalStatus.PENDING]
        )
        assert (await storage.get_signal(signal_id)).status == SignalStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_trades(self, storage):
        """Test inserting, updating and listing executed trades."""
        trade_id = await storage.insert_trade(
            ExecutedTrade(user_id="u1", token_address=MINT, amount_in_sol=0.1)
        )
        await storage.insert_trade(ExecutedTrade(user_id="u2", token_address=MINT))

        await storage.update_trade(
            trade_id, TradeStatus.SUCCESS, tx_hash="sig", tokens_received=42.0
        )

        trade = await storage.get_trade(trade_id)
        assert trade.status == TradeStatus.SUCCESS
        assert trade.tx_hash == "sig"
        assert trade.tokens_received == 42.0
        assert [t.id for t in await storage.list_trades_for_user("u1")] == [trade_id]

        with pytest.raises(ValueError):
            await storage.update_trade(trade_id, TradeStatus.FAILED, user_id="u2")

    @pytest.mark.asyncio
    async def test_subscriptions(self, storage):
        """Test subscription upsert and usage counting."""
        assert await storage.get_subscription("u1") is None

        await storage.upsert_subscription(Subscription(user_id="u1"))
        await storage.increment_trades_used("u1")
        await storage.increment_trades_used("u1")

        subscription = await storage.get_subscription("u1")
        assert subscription.trades_used == 2
        assert subscription.can_trade

    @pytest.mark.asyncio
    async def test_order_transition_cas(self, storage):
        """Test that a stale order copy loses the compare-and-swap."""
        order = make_order()
        await storage.insert_order(order)

        triggered = await storage.transition_order(
            order, OrderStatus.TRIGGERED, triggered_at=123
        )
        assert triggered.status == OrderStatus.TRIGGERED
        assert triggered.version == 1
        assert triggered.triggered_at == 123

        # The original copy is stale now
        assert await storage.transition_order(order, OrderStatus.CANCELLED) is None

        stored = await storage.get_order(order.id)
        assert stored.status == OrderStatus.TRIGGERED
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_list_orders(self, storage):
        """Test listing orders by status in creation order."""
        first = make_order("tp_1")
        await storage.insert_order(first)
        await storage.insert_order(make_order("tp_2"))
        await storage.transition_order(first, OrderStatus.CANCELLED)

        pending = await storage.list_orders(status=OrderStatus.PENDING)
        assert [o.id for o in pending] == ["tp_2"]
        assert [o.id for o in await storage.list_orders()] == ["tp_1", "tp_2"]

    @pytest.mark.asyncio
    async def test_trade_history_is_bounded(self, storage):
        """Test that only the most recent history entries are kept."""
        for i in range(TRADE_HISTORY_LIMIT + 5):
            await storage.append_trade_history(
                TradeHistoryEntry(
                    id=f"trade_{i}",
                    direction="buy",
                    token_mint=MINT,
                    token_symbol="BONK",
                    amount=1,
                    price=1,
                    total_value=1,
                    tx_signature=f"sig{i}",
                    timestamp=i,
                )
            )

        history = await storage.list_trade_history()
        assert len(history) == TRADE_HISTORY_LIMIT
        assert history[0].id == f"trade_{TRADE_HISTORY_LIMIT + 4}"

    @pytest.mark.asyncio
    async def test_entry_prices(self, storage):
        """Test entry price bookkeeping."""
        assert await storage.get_entry_prices() == {}

        await storage.set_entry_price(MINT, 0.5)
        await storage.set_entry_price("other", 2.0)

        assert await storage.get_entry_prices() == {MINT: 0.5, "other": 2.0}

    @pytest.mark.asyncio
    async def test_state_json(self, storage):
        """Test JSON state round trip and corrupt values."""
        await storage.save_state_json("key", {"a": [1, 2]})
        assert await storage.load_state_json("key") == {"a": [1, 2]}

        await storage.save_state("broken", "{not json")
        assert await storage.load_state_json("broken") is None
        assert await storage.load_state_json("missing") is None
