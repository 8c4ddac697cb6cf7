"""Tests for the worker tick and loop."""

import asyncio

import pytest
from sqlalchemy import select

from strategyhub.models import BotStatus, Order, OrderSide, OrderStatus
from strategyhub.services.config import WorkerSettings
from strategyhub.services.metrics import StrategyHubMetrics
from strategyhub.services.worker import Worker

from conftest import SYMBOL, grid_config


@pytest.fixture
def worker(executor_factory, session_maker, clock):
    return Worker(
        executor_factory,
        WorkerSettings(interval_seconds=0.1),
        session_maker,
        now_ms=clock.now,
        metrics=StrategyHubMetrics(),
    )


async def bot_orders(session_maker, bot_id):
    async with session_maker() as session:
        result = await session.execute(select(Order).where(Order.bot_id == bot_id).order_by(Order.intent_seq))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_tick_triggers_waiting_bot(worker, make_bot, simulator, session_maker, bot_service):
    bot = await make_bot(status=BotStatus.WAITING_TRIGGER, auto_close_reference_price="100")
    simulator.set_ticker(SYMBOL, "97")

    stats = await worker.tick()

    assert stats == {"processed": 1, "errors": 0, "stopping_synced": 0}
    assert (await bot_service.get_bot(bot.id)).status == BotStatus.RUNNING
    (order,) = await bot_orders(session_maker, bot.id)
    assert order.exchange_order_id == "binance-1"

    assert worker.metrics.sample("strategyhub_worker_tick_duration_seconds_count") == 1
    assert worker.metrics.sample("strategyhub_worker_bots_processed") == 1
    assert worker.metrics.sample("strategyhub_active_bots_total") == 1
    assert worker.metrics.sample("strategyhub_worker_errors_total") == 0
    assert worker.metrics.sample(
        "strategyhub_orders_placed_total",
        {"exchange": "binance", "symbol": SYMBOL, "side": "buy", "type": "limit"},
    ) == 1


@pytest.mark.asyncio
async def test_fill_then_reverse_leg(worker, make_bot, simulator, session_maker):
    """Buy fills on the exchange; the next tick reconciles it and places the sell."""
    bot = await make_bot(status=BotStatus.WAITING_TRIGGER, auto_close_reference_price="100")
    simulator.set_ticker(SYMBOL, "97")
    await worker.tick()

    simulator.simulate_fill("binance-1", "1.02040816", "98")
    simulator.set_ticker(SYMBOL, "100")
    stats = await worker.tick()

    assert stats["errors"] == 0
    buy, sell = await bot_orders(session_maker, bot.id)
    assert buy.status == OrderStatus.FILLED
    assert buy.avg_fill_price == "98.00000000"
    assert sell.side == OrderSide.SELL
    assert sell.price == "99.96"
    assert sell.exchange_order_id == "binance-2"


@pytest.mark.asyncio
async def test_tick_drives_stopping_bots(worker, make_bot, bot_service):
    bot = await make_bot(status=BotStatus.STOPPING)

    stats = await worker.tick()

    assert stats == {"processed": 0, "errors": 0, "stopping_synced": 1}
    assert (await bot_service.get_bot(bot.id)).status == BotStatus.STOPPED


@pytest.mark.asyncio
async def test_auto_close_stops_bot_without_new_orders(worker, make_bot, simulator, session_maker, bot_service):
    config = grid_config(risk={"enableAutoClose": True, "autoCloseDrawdownPercent": "10"})
    bot = await make_bot(status=BotStatus.WAITING_TRIGGER, config=config, auto_close_reference_price="100")
    simulator.set_ticker(SYMBOL, "85")

    stats = await worker.tick()

    assert stats["errors"] == 0
    current = await bot_service.get_bot(bot.id)
    assert current.status == BotStatus.STOPPED
    assert current.auto_close_reason == "AUTO_CLOSE"
    assert await bot_orders(session_maker, bot.id) == []
    assert worker.metrics.sample("strategyhub_risk_triggered_total", {"type": "auto_close"}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("endpoint", ["fetch_open_orders", "get_ticker"])
async def test_exchange_failure_counts_as_error(worker, make_bot, simulator, bot_service, endpoint):
    bot = await make_bot(status=BotStatus.WAITING_TRIGGER, auto_close_reference_price="100")
    simulator.inject_error(endpoint, "timeout")

    stats = await worker.tick()

    assert stats == {"processed": 1, "errors": 1, "stopping_synced": 0}
    assert (await bot_service.get_bot(bot.id)).status == BotStatus.WAITING_TRIGGER
    assert worker.metrics.sample("strategyhub_worker_errors_total") == 1
    reconcile_failures = worker.metrics.sample(
        "strategyhub_reconcile_fail_total", {"exchange": "binance", "symbol": SYMBOL}
    )
    assert reconcile_failures == (1 if endpoint == "fetch_open_orders" else 0)


@pytest.mark.asyncio
async def test_max_bots_per_tick(executor_factory, session_maker, make_bot):
    worker = Worker(executor_factory, WorkerSettings(max_bots_per_tick=1), session_maker)
    await make_bot(status=BotStatus.RUNNING, auto_close_reference_price="100")
    await make_bot(status=BotStatus.RUNNING, auto_close_reference_price="100")

    stats = await worker.tick()
    assert stats["processed"] == 1


@pytest.mark.asyncio
async def test_idle_bots_are_not_ticked(worker, make_bot):
    await make_bot(status=BotStatus.PAUSED)
    await make_bot(status=BotStatus.DRAFT)
    assert await worker.tick() == {"processed": 0, "errors": 0, "stopping_synced": 0}


@pytest.mark.asyncio
async def test_start_and_stop_loop(worker, make_bot, bot_service):
    bot = await make_bot(status=BotStatus.STOPPING)

    assert await worker.start()
    assert worker.is_running
    assert not await worker.start()

    for _ in range(50):
        if (await bot_service.get_bot(bot.id)).status == BotStatus.STOPPED:
            break
        await asyncio.sleep(0.02)

    await worker.stop()
    assert not worker.is_running
    assert (await bot_service.get_bot(bot.id)).status == BotStatus.STOPPED
