"""Reconcile loop: bring local orders and trades in line with the exchange.

fetch open orders + fetch trades -> upsert Order -> insert Trade -> BotSnapshot

- A failed fetch aborts the pass without touching bot status
- Order status only moves forward (NEW -> PARTIALLY_FILLED -> FILLED/CANCELED)
- Trades are inserted once per (exchange, trade_id)
- The state hash covers ids only, so an unchanged exchange produces no snapshot
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    Bot,
    ACTIVE_STATUSES,
    BotStatus,
    BotSnapshot,
    Order,
    OrderStatus,
    ORDER_STATUS_RANK,
    Trade,
    async_session_maker,
)
from .bot_control import load_bot
from .decimals import FILL_TOLERANCE, format_decimal, parse_decimal
from .errors import ExchangeError
from .exchange import ExchangeExecutor, RemoteOrder, RemoteTrade
from .idempotency import bot_order_prefix, compute_state_hash, is_our_order

logger = logging.getLogger(__name__)

RECONCILE_STATUSES = (BotStatus.RUNNING, BotStatus.WAITING_TRIGGER, BotStatus.STOPPING)

EXCHANGE_UNAVAILABLE = "503 EXCHANGE_UNAVAILABLE"


@dataclass
class ReconcileResult:
    success: bool
    orders_upserted: int = 0
    trades_inserted: int = 0
    snapshot_created: bool = False
    state_hash: Optional[str] = None
    error: Optional[str] = None


def _intent_seq_from_client_id(client_order_id: str) -> Optional[int]:
    suffix = client_order_id.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else None


def _advance_status(current: OrderStatus, candidate: OrderStatus) -> OrderStatus:
    if ORDER_STATUS_RANK[candidate] > ORDER_STATUS_RANK[current]:
        return candidate
    return current


class Reconciler:
    """Runs one reconcile pass per bot."""

    def __init__(self, session_maker: async_sessionmaker = async_session_maker):
        self.session_maker = session_maker

    async def reconcile(self, bot_id: str, executor: ExchangeExecutor) -> ReconcileResult:
        """Reconcile a bot against its exchange account.

        Args:
            bot_id: Bot ID
            executor: Exchange executor for the bot's account

        Returns:
            ReconcileResult; success is False only for a missing bot or a
            failed exchange fetch
        """
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id)
        if not bot:
            return ReconcileResult(success=False, error="Bot not found")

        if bot.status not in RECONCILE_STATUSES:
            return ReconcileResult(success=True)

        try:
            open_orders = await executor.fetch_open_orders(bot.symbol)
        except ExchangeError as e:
            logger.error(f"Bot {bot_id}: failed to fetch open orders: {e}")
            return ReconcileResult(success=False, error=EXCHANGE_UNAVAILABLE)

        try:
            trades = await executor.fetch_my_trades(bot.symbol)
        except ExchangeError as e:
            logger.error(f"Bot {bot_id}: failed to fetch trades: {e}")
            return ReconcileResult(success=False, error=EXCHANGE_UNAVAILABLE)

        prefix = bot_order_prefix(bot.id)
        open_orders = [
            o for o in open_orders if is_our_order(o.client_order_id) and o.client_order_id.startswith(prefix)
        ]
        logger.debug(f"Bot {bot_id}: {len(open_orders)} open orders, {len(trades)} trades")

        async with self.session_maker() as session:
            async with session.begin():
                orders_upserted = 0
                for remote in open_orders:
                    await self._upsert_order(session, bot, remote)
                    orders_upserted += 1

                owned_trades = await self._attribute_trades(session, bot, trades)

                trades_inserted = 0
                for trade, client_order_id in owned_trades:
                    if await self._insert_trade(session, bot, trade, client_order_id):
                        trades_inserted += 1

                open_exchange_ids = {o.id for o in open_orders}
                for client_order_id in {cid for _, cid in owned_trades}:
                    await self._apply_fills(session, bot, client_order_id, open_exchange_ids)

        state_json, state_hash = compute_state_hash(
            [o.client_order_id for o in open_orders],
            [t.id for t, _ in owned_trades],
        )
        snapshot_created = await self._write_snapshot(bot, state_json, state_hash)

        return ReconcileResult(
            success=True,
            orders_upserted=orders_upserted,
            trades_inserted=trades_inserted,
            snapshot_created=snapshot_created,
            state_hash=state_hash,
        )

    # ========================================================================
    # Orders
    # ========================================================================

    async def _find_order(self, session: AsyncSession, exchange: str, client_order_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order).where(Order.exchange == exchange, Order.client_order_id == client_order_id)
        )
        return result.scalar_one_or_none()

    async def _upsert_order(self, session: AsyncSession, bot: Bot, remote: RemoteOrder) -> Order:
        order = await self._find_order(session, bot.exchange, remote.client_order_id)

        if order is None:
            order = Order(
                bot_id=bot.id,
                exchange=bot.exchange,
                symbol=remote.symbol,
                client_order_id=remote.client_order_id,
                intent_seq=_intent_seq_from_client_id(remote.client_order_id),
                exchange_order_id=remote.id,
                submitted_at=datetime.utcnow(),
                side=remote.side,
                type=remote.type,
                status=remote.status,
                price=remote.price,
                amount=remote.amount,
                filled_amount=remote.filled_amount or "0",
                avg_fill_price=remote.avg_fill_price,
            )
            session.add(order)
            logger.info(f"Bot {bot.id}: adopted exchange order {remote.client_order_id} ({remote.id})")
        else:
            order.exchange_order_id = remote.id
            if order.submitted_at is None:
                order.submitted_at = datetime.utcnow()
            if parse_decimal(remote.filled_amount) > parse_decimal(order.filled_amount):
                order.filled_amount = remote.filled_amount
            order.status = _advance_status(order.status, remote.status)

        await session.flush()
        return order

    # ========================================================================
    # Trades
    # ========================================================================

    async def _attribute_trades(self, session: AsyncSession, bot: Bot, trades: List[RemoteTrade]):
        """Resolve each trade to one of the bot's client order ids.

        Exchanges often omit the client id on trades, so the local order
        matched by exchange order id takes precedence over the reported id.
        """
        result = await session.execute(
            select(Order.exchange_order_id, Order.client_order_id).where(
                Order.bot_id == bot.id, Order.exchange_order_id.is_not(None)
            )
        )
        by_exchange_id: Dict[str, str] = {row[0]: row[1] for row in result.all()}

        prefix = bot_order_prefix(bot.id)
        owned = []
        for trade in trades:
            client_order_id = by_exchange_id.get(trade.order_id) if trade.order_id else None
            client_order_id = client_order_id or trade.client_order_id
            if is_our_order(client_order_id) and client_order_id.startswith(prefix):
                owned.append((trade, client_order_id))
        return owned

    async def _insert_trade(
        self, session: AsyncSession, bot: Bot, trade: RemoteTrade, client_order_id: str
    ) -> bool:
        existing = await session.scalar(
            select(Trade.id).where(Trade.exchange == bot.exchange, Trade.trade_id == trade.id)
        )
        if existing is not None:
            return False

        session.add(Trade(
            bot_id=bot.id,
            exchange=bot.exchange,
            symbol=trade.symbol,
            trade_id=trade.id,
            order_id=trade.order_id,
            client_order_id=client_order_id,
            side=trade.side,
            price=trade.price,
            amount=trade.amount,
            fee=trade.fee or "0",
            fee_currency=trade.fee_currency or None,
            timestamp=trade.timestamp,
        ))
        await session.flush()
        return True

    async def _apply_fills(
        self, session: AsyncSession, bot: Bot, client_order_id: str, open_exchange_ids: Set[str]
    ) -> None:
        """Recompute filled amount, weighted average price and status from recorded trades."""
        order = await self._find_order(session, bot.exchange, client_order_id)
        if order is None or order.bot_id != bot.id:
            return

        result = await session.execute(
            select(Trade.price, Trade.amount).where(
                Trade.exchange == bot.exchange, Trade.client_order_id == client_order_id
            )
        )
        total_filled = Decimal(0)
        total_notional = Decimal(0)
        for price, amount in result.all():
            amount_dec = parse_decimal(amount)
            total_filled += amount_dec
            total_notional += amount_dec * parse_decimal(price)

        order.filled_amount = format_decimal(total_filled, 8)
        if total_filled > 0:
            order.avg_fill_price = format_decimal(total_notional / total_filled, 8)

        still_open = order.exchange_order_id in open_exchange_ids
        if total_filled >= parse_decimal(order.amount) - FILL_TOLERANCE and not still_open:
            new_status = OrderStatus.FILLED
        elif total_filled > 0:
            new_status = OrderStatus.PARTIALLY_FILLED
        else:
            new_status = order.status

        previous = order.status
        order.status = _advance_status(order.status, new_status)
        if order.status != previous:
            logger.info(f"Order {client_order_id}: {previous.value} -> {order.status.value}")
        await session.flush()

    # ========================================================================
    # Snapshot
    # ========================================================================

    async def _write_snapshot(self, bot: Bot, state_json: str, state_hash: str) -> bool:
        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    select(BotSnapshot.state_hash)
                    .where(BotSnapshot.bot_id == bot.id)
                    .order_by(BotSnapshot.created_at.desc(), BotSnapshot.id.desc())
                    .limit(1)
                )
                if result.scalar_one_or_none() == state_hash:
                    logger.debug(f"Bot {bot.id}: state unchanged, no snapshot")
                    return False

                run_id = bot.run_id or await self._refresh_run_id(session, bot)
                session.add(BotSnapshot(
                    bot_id=bot.id,
                    run_id=run_id or f"reconcile-{int(time.time() * 1000)}",
                    reconciled_at=datetime.utcnow(),
                    state_json=state_json,
                    state_hash=state_hash,
                ))

        logger.info(f"Bot {bot.id}: snapshot written, hash={state_hash}")
        return True

    async def _refresh_run_id(self, session: AsyncSession, bot: Bot) -> Optional[str]:
        """Give an active bot without a run a fresh run_id.

        STOPPING bots keep run_id null; STOP cleared it.
        """
        if bot.status not in ACTIVE_STATUSES:
            return None

        run_id = str(uuid.uuid4())
        result = await session.execute(
            update(Bot)
            .where(Bot.id == bot.id, Bot.run_id.is_(None), Bot.status.in_(ACTIVE_STATUSES))
            .values(run_id=run_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return await session.scalar(select(Bot.run_id).where(Bot.id == bot.id))

        logger.info(f"Bot {bot.id}: run_id refreshed to {run_id}")
        return run_id
