"""Tests for the reconcile loop."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from strategyhub.models import BotSnapshot, BotStatus, Order, OrderSide, OrderStatus, OrderType, Trade
from strategyhub.services.exchange import RemoteTrade
from strategyhub.services.idempotency import compute_state_hash, generate_client_order_id
from strategyhub.services.reconcile import Reconciler

from conftest import SYMBOL


@pytest.fixture
def reconciler(session_maker):
    return Reconciler(session_maker)


@pytest.fixture
def running_bot(make_bot):
    async def _running_bot(**values):
        values.setdefault("run_id", "run-1")
        values.setdefault("status", BotStatus.RUNNING)
        return await make_bot(**values)

    return _running_bot


def place(simulator, client_order_id, amount="1", price="98"):
    return simulator.create_order(SYMBOL, OrderSide.BUY, OrderType.LIMIT, amount, client_order_id, price)


async def submitted_order(session_maker, bot, remote, **values):
    """Local order row for an intent the exchange already accepted."""
    order = Order(
        bot_id=bot.id,
        exchange=bot.exchange,
        symbol=bot.symbol,
        client_order_id=remote.client_order_id,
        intent_seq=1,
        exchange_order_id=remote.exchange_order_id,
        submitted_at=datetime.utcnow(),
        side=OrderSide.BUY,
        type=OrderType.LIMIT,
        price=remote.price,
        amount=remote.amount,
        **values,
    )
    async with session_maker() as session:
        session.add(order)
        await session.commit()
    return order


async def get_order(session_maker, client_order_id):
    async with session_maker() as session:
        return await session.scalar(select(Order).where(Order.client_order_id == client_order_id))


async def count(session_maker, model):
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestOrders:
    """Open order upsert."""

    @pytest.mark.asyncio
    async def test_adopts_unknown_open_order(self, reconciler, running_bot, executor, simulator, session_maker):
        bot = await running_bot()
        client_order_id = generate_client_order_id(bot.id, 3)
        place(simulator, client_order_id)

        result = await reconciler.reconcile(bot.id, executor)

        assert result.success
        assert result.orders_upserted == 1
        order = await get_order(session_maker, client_order_id)
        assert order.exchange_order_id == "binance-1"
        assert order.intent_seq == 3
        assert order.submitted_at is not None
        assert order.status == OrderStatus.NEW

    @pytest.mark.asyncio
    async def test_ignores_foreign_orders(self, reconciler, running_bot, executor, simulator, session_maker):
        """Manual orders and other bots' orders on the same account are left alone."""
        bot = await running_bot()
        place(simulator, "manual-order-1")
        place(simulator, "gb1-zzzzzzzz-1")

        result = await reconciler.reconcile(bot.id, executor)

        assert result.orders_upserted == 0
        assert await count(session_maker, Order) == 0

    @pytest.mark.asyncio
    async def test_sets_exchange_id_on_pending_intent(self, reconciler, running_bot, executor, simulator, session_maker):
        """An intent submitted before a crash gets its exchange id from reconcile."""
        bot = await running_bot()
        remote = place(simulator, generate_client_order_id(bot.id, 1))
        async with session_maker() as session:
            session.add(Order(
                bot_id=bot.id,
                exchange=bot.exchange,
                symbol=bot.symbol,
                client_order_id=remote.client_order_id,
                intent_seq=1,
                side=OrderSide.BUY,
                type=OrderType.LIMIT,
                price="98",
                amount="1",
            ))
            await session.commit()

        await reconciler.reconcile(bot.id, executor)

        order = await get_order(session_maker, remote.client_order_id)
        assert order.exchange_order_id == "binance-1"
        assert order.submitted_at is not None

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, reconciler, running_bot, executor, simulator, session_maker):
        bot = await running_bot()
        remote = place(simulator, generate_client_order_id(bot.id, 1))
        await submitted_order(session_maker, bot, remote, status=OrderStatus.FILLED, filled_amount="1")

        await reconciler.reconcile(bot.id, executor)

        assert (await get_order(session_maker, remote.client_order_id)).status == OrderStatus.FILLED


class TestTrades:
    """Trade ingestion and fill aggregation."""

    @pytest.mark.asyncio
    async def test_partial_then_full_fill(self, reconciler, running_bot, executor, simulator, session_maker):
        bot = await running_bot()
        remote = place(simulator, generate_client_order_id(bot.id, 1))
        await submitted_order(session_maker, bot, remote)

        simulator.simulate_fill(remote.exchange_order_id, "0.5", "98")
        first = await reconciler.reconcile(bot.id, executor)

        assert first.trades_inserted == 1
        order = await get_order(session_maker, remote.client_order_id)
        assert order.status == OrderStatus.PARTIALLY_FILLED
        assert order.filled_amount == "0.50000000"

        simulator.simulate_fill(remote.exchange_order_id, "0.5", "97")
        second = await reconciler.reconcile(bot.id, executor)

        assert second.trades_inserted == 1
        order = await get_order(session_maker, remote.client_order_id)
        assert order.status == OrderStatus.FILLED
        assert order.filled_amount == "1.00000000"
        assert order.avg_fill_price == "97.50000000"
        assert await count(session_maker, Trade) == 2

    @pytest.mark.asyncio
    async def test_trades_are_inserted_once(self, reconciler, running_bot, executor, simulator, session_maker):
        bot = await running_bot()
        remote = place(simulator, generate_client_order_id(bot.id, 1))
        await submitted_order(session_maker, bot, remote)
        simulator.simulate_fill(remote.exchange_order_id, "1", "98")

        await reconciler.reconcile(bot.id, executor)
        again = await reconciler.reconcile(bot.id, executor)

        assert again.trades_inserted == 0
        assert await count(session_maker, Trade) == 1

    @pytest.mark.asyncio
    async def test_trade_attributed_by_exchange_order_id(self, reconciler, running_bot, simulator, session_maker):
        """A trade without a client order id is matched through the local order's exchange id."""
        bot = await running_bot()
        remote = place(simulator, generate_client_order_id(bot.id, 1))
        await submitted_order(session_maker, bot, remote)

        executor = AsyncMock()
        executor.fetch_open_orders = AsyncMock(return_value=[])
        executor.fetch_my_trades = AsyncMock(return_value=[RemoteTrade(
            id="t-1",
            order_id=remote.exchange_order_id,
            client_order_id=None,
            symbol=SYMBOL,
            side=OrderSide.BUY,
            price="98",
            amount="1",
            timestamp=datetime.utcnow(),
        )])

        result = await reconciler.reconcile(bot.id, executor)

        assert result.trades_inserted == 1
        async with session_maker() as session:
            trade = await session.scalar(select(Trade))
        assert trade.client_order_id == remote.client_order_id
        assert (await get_order(session_maker, remote.client_order_id)).status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_foreign_trades_are_skipped(self, reconciler, running_bot, simulator, executor, session_maker):
        bot = await running_bot()
        other = place(simulator, "gb1-zzzzzzzz-1")
        simulator.simulate_fill(other.exchange_order_id, "1", "98")

        result = await reconciler.reconcile(bot.id, executor)

        assert result.trades_inserted == 0
        assert await count(session_maker, Trade) == 0


class TestSnapshots:
    """State hash and snapshot writes."""

    @pytest.mark.asyncio
    async def test_snapshot_only_on_change(self, reconciler, running_bot, executor, simulator, session_maker):
        bot = await running_bot()
        client_order_id = generate_client_order_id(bot.id, 1)
        place(simulator, client_order_id)

        first = await reconciler.reconcile(bot.id, executor)
        second = await reconciler.reconcile(bot.id, executor)

        assert first.snapshot_created
        assert not second.snapshot_created
        assert first.state_hash == second.state_hash == compute_state_hash([client_order_id], [])[1]

        simulator.simulate_fill("binance-1", "1", "98")
        third = await reconciler.reconcile(bot.id, executor)
        assert third.snapshot_created
        assert third.state_hash != first.state_hash

        async with session_maker() as session:
            snapshots = list((await session.execute(select(BotSnapshot).order_by(BotSnapshot.id))).scalars())
        assert len(snapshots) == 2
        assert snapshots[0].run_id == "run-1"
        assert snapshots[1].state_json == '{"openOrderIds":[],"tradeIds":["binance-trade-1"]}'

    @pytest.mark.asyncio
    async def test_snapshot_without_run_id(self, reconciler, running_bot, executor, session_maker, bot_service):
        bot = await running_bot(run_id=None, status=BotStatus.STOPPING)
        result = await reconciler.reconcile(bot.id, executor)
        assert result.snapshot_created
        async with session_maker() as session:
            snapshot = await session.scalar(select(BotSnapshot))
        assert snapshot.run_id.startswith("reconcile-")
        assert (await bot_service.get_bot(bot.id)).run_id is None

    @pytest.mark.asyncio
    async def test_snapshot_refreshes_missing_run_id(
        self, reconciler, running_bot, executor, session_maker, bot_service
    ):
        """An active bot without a run gets one, and the snapshot carries it."""
        bot = await running_bot(run_id=None, status_version=2)
        result = await reconciler.reconcile(bot.id, executor)
        assert result.snapshot_created

        current = await bot_service.get_bot(bot.id)
        assert current.run_id is not None
        assert current.status_version == 2
        async with session_maker() as session:
            snapshot = await session.scalar(select(BotSnapshot))
        assert snapshot.run_id == current.run_id

    @pytest.mark.asyncio
    async def test_runtime_exposes_latest_snapshot(self, reconciler, running_bot, executor, bot_service):
        bot = await running_bot()
        result = await reconciler.reconcile(bot.id, executor)

        runtime = await bot_service.get_runtime(bot.id)
        assert runtime["snapshot_hash"] == result.state_hash
        assert runtime["snapshot"] == {"openOrderIds": [], "tradeIds": []}


class TestFailures:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("endpoint", ["fetch_open_orders", "fetch_my_trades"])
    async def test_fetch_failure_aborts_pass(
        self, reconciler, running_bot, executor, simulator, session_maker, bot_service, endpoint
    ):
        bot = await running_bot()
        simulator.inject_error(endpoint, "timeout")

        result = await reconciler.reconcile(bot.id, executor)

        assert not result.success
        assert result.error == "503 EXCHANGE_UNAVAILABLE"
        assert (await bot_service.get_bot(bot.id)).status == BotStatus.RUNNING
        assert await count(session_maker, BotSnapshot) == 0

    @pytest.mark.asyncio
    async def test_missing_bot(self, reconciler, executor):
        result = await reconciler.reconcile("missing", executor)
        assert not result.success
        assert result.error == "Bot not found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [BotStatus.DRAFT, BotStatus.PAUSED, BotStatus.STOPPED, BotStatus.ERROR])
    async def test_idle_statuses_are_skipped(self, reconciler, running_bot, executor, session_maker, status):
        bot = await running_bot(status=status)
        result = await reconciler.reconcile(bot.id, executor)
        assert result.success
        assert not result.snapshot_created
        assert await count(session_maker, BotSnapshot) == 0
