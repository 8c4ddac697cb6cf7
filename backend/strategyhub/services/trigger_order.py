"""Trigger evaluation and the order outbox.

One bot holds at most one open order. Each tick either submits a pending
intent, waits for the open order, places the reverse leg of a filled order, or
(in WAITING_TRIGGER) evaluates the trigger and writes the first intent.

Intents are written to the database before any exchange call (Order row with
exchange_order_id and submitted_at null), so a crash between the two only
ever leads to resubmitting the same client_order_id.
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Optional, Callable

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    Bot,
    BotStatus,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    OPEN_ORDER_STATUSES,
    async_session_maker,
)
from .bot_control import BotControlService, apply_event, load_bot
from .decimals import parse_decimal, format_decimal
from .errors import BotErrorCode, DuplicateOrderError, ExchangeError
from .exchange import CreateOrderParams, ExchangeExecutor, MarketInfo, Ticker
from .gates import check_floor_price, check_price_bounds, check_risk_side
from .idempotency import generate_client_order_id
from .metrics import StrategyHubMetrics, metrics as default_metrics
from .preview import GridConfig, PreviewResult, calculate_preview
from .retry import BackoffOptions, RetryTracker, classify_retryable_error
from .state_machine import BotEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

# Statuses in which the outbox must not submit
NO_SUBMIT_STATUSES = (BotStatus.STOPPING, BotStatus.PAUSED, BotStatus.STOPPED, BotStatus.ERROR)


class TickAction(str, Enum):
    """What a processing tick did for a bot."""
    IDLE = "IDLE"
    SUBMITTED = "SUBMITTED"
    BACKING_OFF = "BACKING_OFF"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    WAITING_FILL = "WAITING_FILL"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"


def _system_now_ms() -> int:
    return int(time.time() * 1000)


def _limit_base_amount(preview: PreviewResult, side: str) -> Optional[str]:
    for order in preview.orders:
        if order.type == "limit" and order.side == side:
            return order.base_amount
    return None


def execution_config(bot: Bot, config: GridConfig) -> GridConfig:
    """Pin the base price for execution.

    basePriceType=current would move with every tick, so execution uses the
    reference price frozen at start/resume instead.

    Raises:
        ValueError: With the error code as message when the config cannot run
    """
    trigger = config.trigger
    if trigger.base_price_type in ("cost", "avg_24h"):
        raise ValueError(BotErrorCode.UNSUPPORTED_BASE_PRICE_TYPE.value)

    if trigger.base_price_type == "current":
        if not bot.auto_close_reference_price:
            raise ValueError(BotErrorCode.MISSING_FROZEN_REFERENCE_PRICE.value)
        trigger.base_price_type = "manual"
        trigger.base_price = bot.auto_close_reference_price

    return config


class TriggerOrderProcessor:
    """Per-bot trigger -> intent -> submit step, run once per worker tick."""

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: Optional[BackoffOptions] = None,
        now_ms: Optional[Callable[[], int]] = None,
        control: Optional[BotControlService] = None,
        metrics: Optional[StrategyHubMetrics] = None,
    ):
        self.session_maker = session_maker
        self.max_retries = max_retries
        self.retries = RetryTracker(now_ms or _system_now_ms, backoff or BackoffOptions())
        self.control = control or BotControlService(session_maker)
        self.metrics = metrics or default_metrics

    async def process(
        self,
        bot_id: str,
        executor: ExchangeExecutor,
        ticker_price: str,
        market: Optional[MarketInfo] = None,
        price_precision: int = 2,
        amount_precision: int = 8,
    ) -> TickAction:
        """Run one tick for a bot.

        Args:
            bot_id: Bot ID
            executor: Exchange executor for the bot's account
            ticker_price: Latest price
            market: Symbol rules; defaults to the given precisions with no minimums

        Returns:
            TickAction describing what happened
        """
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id)
            if not bot or bot.status not in (BotStatus.WAITING_TRIGGER, BotStatus.RUNNING):
                return TickAction.IDLE

            pending = await self._pending_intent(session, bot_id)
            open_order = None if pending else await self._open_order(session, bot_id)
            last_filled = None if (pending or open_order) else await self._last_filled(session, bot_id)

        if pending:
            return await self.submit(executor, pending, bot.status)
        if open_order:
            return TickAction.WAITING_FILL

        try:
            config = GridConfig.from_dict(bot.config_json)
        except (ValueError, TypeError) as e:
            logger.warning(f"Bot {bot_id}: unreadable config, skipping tick: {e}")
            return TickAction.IDLE

        if config.order.order_type != OrderType.LIMIT.value:
            logger.debug(f"Bot {bot_id}: only limit orders are executed")
            return TickAction.IDLE

        try:
            config = execution_config(bot, config)
        except ValueError as e:
            await self.control.mark_error(bot_id, str(e), "execution config cannot be priced")
            return TickAction.FAILED

        market = market or MarketInfo(
            symbol=bot.symbol,
            price_precision=price_precision,
            amount_precision=amount_precision,
        )
        ticker = Ticker(symbol=bot.symbol, last=ticker_price)

        gate = check_price_bounds(config, ticker_price)
        if gate.blocked:
            logger.info(f"Bot {bot_id}: {gate.reason}")
            return TickAction.BLOCKED

        if last_filled:
            return await self._place_reverse_leg(bot, config, market, ticker, last_filled, executor)

        if bot.status != BotStatus.WAITING_TRIGGER:
            return TickAction.IDLE

        return await self._evaluate_trigger(bot, config, market, ticker, executor)

    # ========================================================================
    # Queries
    # ========================================================================

    async def _pending_intent(self, session: AsyncSession, bot_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(
                Order.bot_id == bot_id,
                Order.submitted_at.is_(None),
                Order.exchange_order_id.is_(None),
            )
            .order_by(Order.intent_seq.desc(), Order.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _open_order(self, session: AsyncSession, bot_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(
                Order.bot_id == bot_id,
                or_(Order.exchange_order_id.is_not(None), Order.submitted_at.is_not(None)),
                Order.status.in_(OPEN_ORDER_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _last_filled(self, session: AsyncSession, bot_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(Order.bot_id == bot_id, Order.status == OrderStatus.FILLED)
            .order_by(Order.intent_seq.desc(), Order.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _next_intent_seq(self, session: AsyncSession, bot_id: str) -> int:
        current = await session.scalar(select(func.max(Order.intent_seq)).where(Order.bot_id == bot_id))
        return (current or 0) + 1

    # ========================================================================
    # Gates
    # ========================================================================

    async def _check_order_gates(
        self, bot: Bot, config: GridConfig, market: MarketInfo, side: str, price: str, amount: str
    ) -> TickAction:
        """Risk switches and floor price skip the tick; exchange minimums are fatal."""
        for gate in (check_risk_side(config, side), check_floor_price(config, price, side)):
            if gate.blocked:
                logger.info(f"Bot {bot.id}: {gate.reason}")
                return TickAction.BLOCKED

        amount_dec = parse_decimal(amount)
        notional = amount_dec * parse_decimal(price)

        if amount_dec < parse_decimal(market.min_amount):
            await self.control.mark_error(
                bot.id,
                BotErrorCode.BELOW_MIN_AMOUNT,
                f"order amount {amount} < minAmount {market.min_amount}",
            )
            return TickAction.FAILED

        if notional < parse_decimal(market.min_notional):
            await self.control.mark_error(
                bot.id,
                BotErrorCode.BELOW_MIN_NOTIONAL,
                f"notional {format_decimal(notional, 8)} < minNotional {market.min_notional}",
            )
            return TickAction.FAILED

        return TickAction.IDLE

    # ========================================================================
    # Legs
    # ========================================================================

    async def _evaluate_trigger(
        self, bot: Bot, config: GridConfig, market: MarketInfo, ticker: Ticker, executor: ExchangeExecutor
    ) -> TickAction:
        """First leg: buy at or below the buy trigger, sell at or above the sell trigger."""
        preview = calculate_preview(config, market, ticker)
        last = parse_decimal(ticker.last)

        if last <= parse_decimal(preview.buy_trigger_price):
            side, price = OrderSide.BUY, preview.buy_trigger_price
        elif last >= parse_decimal(preview.sell_trigger_price):
            side, price = OrderSide.SELL, preview.sell_trigger_price
        else:
            return TickAction.IDLE

        amount = _limit_base_amount(preview, side.value)
        if not amount:
            await self.control.mark_error(
                bot.id, BotErrorCode.CONFIG_VALIDATION_ERROR, f"no {side.value} amount in sizing config"
            )
            return TickAction.FAILED

        gate_action = await self._check_order_gates(bot, config, market, side.value, price, amount)
        if gate_action != TickAction.IDLE:
            return gate_action

        logger.info(f"Bot {bot.id}: trigger hit at {ticker.last}, {side.value} {amount} @ {price}")

        async with self.session_maker() as session:
            async with session.begin():
                current = await load_bot(session, bot.id)
                if not current or current.status != BotStatus.WAITING_TRIGGER:
                    return TickAction.IDLE

                # A concurrent tick may already have written the first intent
                existing = await session.scalar(select(Order.id).where(Order.bot_id == bot.id).limit(1))
                if existing is not None:
                    return TickAction.IDLE

                if not await apply_event(session, current, BotEvent.TRIGGER_HIT):
                    return TickAction.IDLE

                order = await self._write_intent(session, current, side, price, amount)

        return await self.submit(executor, order, BotStatus.RUNNING)

    async def _place_reverse_leg(
        self,
        bot: Bot,
        config: GridConfig,
        market: MarketInfo,
        ticker: Ticker,
        last_filled: Order,
        executor: ExchangeExecutor,
    ) -> TickAction:
        """Next leg after a fill: opposite side, priced off the fill."""
        ref_price = last_filled.avg_fill_price or last_filled.price
        if not ref_price:
            return TickAction.IDLE

        config.trigger.base_price_type = "manual"
        config.trigger.base_price = ref_price
        preview = calculate_preview(config, market, ticker)

        side = OrderSide.SELL if last_filled.side == OrderSide.BUY else OrderSide.BUY
        price = preview.sell_trigger_price if side == OrderSide.SELL else preview.buy_trigger_price
        amount = _limit_base_amount(preview, side.value)
        if not amount:
            await self.control.mark_error(
                bot.id, BotErrorCode.CONFIG_VALIDATION_ERROR, f"no {side.value} amount in sizing config"
            )
            return TickAction.FAILED

        gate_action = await self._check_order_gates(bot, config, market, side.value, price, amount)
        if gate_action != TickAction.IDLE:
            return gate_action

        async with self.session_maker() as session:
            async with session.begin():
                current = await load_bot(session, bot.id)
                if not current or current.status not in (BotStatus.WAITING_TRIGGER, BotStatus.RUNNING):
                    return TickAction.IDLE
                if await self._pending_intent(session, bot.id) or await self._open_order(session, bot.id):
                    return TickAction.IDLE

                # Resumed into WAITING_TRIGGER: the reverse leg is the trigger
                if current.status == BotStatus.WAITING_TRIGGER:
                    if not await apply_event(session, current, BotEvent.TRIGGER_HIT):
                        return TickAction.IDLE

                order = await self._write_intent(session, current, side, price, amount)

        logger.info(
            f"Bot {bot.id}: reverse leg {order.client_order_id} {side.value} {amount} @ {price} "
            f"(filled {last_filled.client_order_id} @ {ref_price})"
        )
        return await self.submit(executor, order, BotStatus.RUNNING)

    async def _write_intent(
        self, session: AsyncSession, bot: Bot, side: OrderSide, price: str, amount: str
    ) -> Order:
        intent_seq = await self._next_intent_seq(session, bot.id)
        order = Order(
            bot_id=bot.id,
            exchange=bot.exchange,
            symbol=bot.symbol,
            client_order_id=generate_client_order_id(bot.id, intent_seq),
            intent_seq=intent_seq,
            side=side,
            type=OrderType.LIMIT,
            status=OrderStatus.NEW,
            price=price,
            amount=amount,
            filled_amount="0",
        )
        session.add(order)
        await session.flush()
        return order

    # ========================================================================
    # Outbox submission
    # ========================================================================

    async def submit(self, executor: ExchangeExecutor, order: Order, bot_status: BotStatus) -> TickAction:
        """Submit an intent with its original client_order_id.

        Retryable failures back off in memory; anything else, or running out
        of attempts, moves the bot to ERROR. The intent row stays either way.
        """
        if bot_status in NO_SUBMIT_STATUSES:
            return TickAction.IDLE

        key = str(order.id)
        if order.is_submitted:
            self.retries.clear(key)
            return TickAction.IDLE

        if self.retries.in_backoff(key):
            return TickAction.BACKING_OFF

        if order.type == OrderType.LIMIT and not order.price:
            await self.control.mark_error(order.bot_id, BotErrorCode.ORDER_SUBMIT_FAILED, "MISSING_LIMIT_PRICE")
            return TickAction.FAILED

        params = CreateOrderParams(
            symbol=order.symbol,
            side=order.side,
            type=order.type,
            amount=order.amount,
            price=order.price,
            client_order_id=order.client_order_id,
        )

        try:
            placed = await executor.create_order(params)
        except DuplicateOrderError:
            # Already on the exchange; reconcile picks up the exchange order id
            logger.info(f"Order {order.client_order_id} already exists on the exchange")
            self.metrics.orders_duplicate.labels(exchange=order.exchange).inc()
            self.retries.clear(key)
            await self._mark_submitted(order, None, None)
            return TickAction.SUBMITTED
        except ExchangeError as e:
            return await self._handle_submit_failure(order, key, e)

        self.retries.clear(key)
        await self._mark_submitted(order, placed.exchange_order_id, placed.status)
        self.metrics.orders_placed.labels(
            exchange=order.exchange, symbol=order.symbol, side=order.side.value, type=order.type.value
        ).inc()
        logger.info(f"Submitted {order.client_order_id} as {placed.exchange_order_id}")
        return TickAction.SUBMITTED

    async def _mark_submitted(
        self, order: Order, exchange_order_id: Optional[str], status: Optional[OrderStatus]
    ) -> None:
        values = {"submitted_at": datetime.utcnow(), "updated_at": datetime.utcnow()}
        if exchange_order_id:
            values["exchange_order_id"] = exchange_order_id
        if status:
            values["status"] = status

        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.exchange == order.exchange, Order.client_order_id == order.client_order_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

    async def _handle_submit_failure(self, order: Order, key: str, error: ExchangeError) -> TickAction:
        info = classify_retryable_error(error)
        next_attempt = self.retries.attempts(key) + 1

        if info.retryable and next_attempt < self.max_retries:
            self.retries.record_failure(key, info.retry_after_ms)
            logger.warning(
                f"Submit of {order.client_order_id} failed ({info.code}: {info.message}), "
                f"attempt {next_attempt}/{self.max_retries}, retry at {self.retries.next_at_ms(key)}"
            )
            return TickAction.RETRY_SCHEDULED

        self.retries.clear(key)
        await self.control.mark_error(
            order.bot_id,
            BotErrorCode.ORDER_SUBMIT_FAILED,
            f"{info.code or 'UNKNOWN'}: {info.message}",
        )
        return TickAction.FAILED
