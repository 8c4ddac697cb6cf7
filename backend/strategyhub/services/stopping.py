"""STOPPING bots: cancel open orders, then STOPPED.

A failed fetch or cancel leaves the bot in STOPPING and retries with backoff
on later ticks. Once the retries run out the bot goes to ERROR.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import BotStatus, Order, OrderStatus, OPEN_ORDER_STATUSES, async_session_maker
from .bot_control import apply_event, load_bot
from .errors import BotErrorCode, ExchangeError
from .exchange import ExchangeExecutor
from .idempotency import bot_order_prefix, is_our_order
from .retry import BackoffOptions, RetryTracker, classify_retryable_error
from .state_machine import BotEvent

logger = logging.getLogger(__name__)

DEFAULT_STOP_MAX_RETRIES = 5


@dataclass
class StoppingResult:
    success: bool
    new_status: Optional[str] = None
    canceled_orders: int = 0
    error: Optional[str] = None


class StoppingProcessor:
    """Drives STOPPING bots to STOPPED."""

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        max_retries: int = DEFAULT_STOP_MAX_RETRIES,
        backoff: Optional[BackoffOptions] = None,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self.session_maker = session_maker
        self.max_retries = max_retries
        self.retries = RetryTracker(now_ms or (lambda: int(time.time() * 1000)), backoff or BackoffOptions())

    async def process(self, bot_id: str, executor: ExchangeExecutor) -> StoppingResult:
        """Cancel the bot's open orders and complete the stop.

        Args:
            bot_id: Bot ID
            executor: Exchange executor for the bot's account

        Returns:
            StoppingResult; success is True when the bot is stopped, was
            already moved by someone else, or is waiting out a backoff
        """
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id)
        if not bot:
            return StoppingResult(success=False, error="Bot not found")
        if bot.status != BotStatus.STOPPING:
            return StoppingResult(success=True)

        if self.retries.in_backoff(bot_id):
            return StoppingResult(success=True)

        try:
            remote_orders = await executor.fetch_open_orders(bot.symbol)
        except ExchangeError as e:
            logger.error(f"Bot {bot_id}: failed to fetch open orders while stopping: {e}")
            return await self._handle_failure(bot_id, bot.status_version, e, "503 EXCHANGE_UNAVAILABLE", 0)

        prefix = bot_order_prefix(bot.id)
        ours = [o for o in remote_orders if is_our_order(o.client_order_id) and o.client_order_id.startswith(prefix)]

        canceled: List[str] = []
        for remote in ours:
            try:
                await executor.cancel_order(remote.id, bot.symbol)
            except ExchangeError as e:
                logger.error(f"Bot {bot_id}: failed to cancel order {remote.id}: {e}")
                await self._mark_canceled(bot.exchange, canceled)
                return await self._handle_failure(
                    bot_id, bot.status_version, e, f"Failed to cancel order {remote.id}", len(canceled)
                )
            canceled.append(remote.client_order_id)
            logger.info(f"Bot {bot_id}: canceled order {remote.id}")

        await self._mark_canceled(bot.exchange, canceled)

        async with self.session_maker() as session:
            async with session.begin():
                current = await load_bot(session, bot_id)
                won = (
                    current is not None
                    and current.status == BotStatus.STOPPING
                    and current.status_version == bot.status_version
                    and await apply_event(session, current, BotEvent.STOPPED_COMPLETE, run_id=None)
                )

        self.retries.clear(bot_id)
        if not won:
            logger.info(f"Bot {bot_id}: stop already completed elsewhere")
            return StoppingResult(success=True, canceled_orders=len(canceled))

        logger.info(f"Bot {bot_id}: stopped, {len(canceled)} order(s) canceled")
        return StoppingResult(success=True, new_status=BotStatus.STOPPED.value, canceled_orders=len(canceled))

    async def _mark_canceled(self, exchange: str, client_order_ids: List[str]) -> None:
        if not client_order_ids:
            return
        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(
                        Order.exchange == exchange,
                        Order.client_order_id.in_(client_order_ids),
                        Order.status.in_(OPEN_ORDER_STATUSES),
                    )
                    .values(status=OrderStatus.CANCELED, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )

    async def _handle_failure(
        self, bot_id: str, status_version: int, error: ExchangeError, message: str, canceled_orders: int
    ) -> StoppingResult:
        info = classify_retryable_error(error)
        attempt = self.retries.attempts(bot_id) + 1

        if info.retryable and attempt < self.max_retries:
            self.retries.record_failure(bot_id, info.retry_after_ms)
            logger.warning(f"Bot {bot_id}: stop attempt {attempt}/{self.max_retries} failed, backing off")
            return StoppingResult(success=False, error=message, canceled_orders=canceled_orders)

        self.retries.clear(bot_id)
        last_error = f"{BotErrorCode.STOPPING_FAILED.value}: {info.code or 'UNKNOWN'}: {info.message}"
        async with self.session_maker() as session:
            async with session.begin():
                current = await load_bot(session, bot_id)
                won = (
                    current is not None
                    and current.status == BotStatus.STOPPING
                    and current.status_version == status_version
                    and await apply_event(session, current, BotEvent.FATAL_ERROR, last_error=last_error)
                )

        if not won:
            return StoppingResult(success=True, canceled_orders=canceled_orders)

        logger.critical(f"Bot {bot_id}: {last_error}")
        return StoppingResult(
            success=False,
            new_status=BotStatus.ERROR.value,
            error=message,
            canceled_orders=canceled_orders,
        )
