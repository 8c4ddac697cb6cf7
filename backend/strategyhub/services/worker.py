"""Worker loop for bot execution.

Each tick scans the active bots (RUNNING / WAITING_TRIGGER) and for each one
runs reconcile -> auto-close check -> trigger processing, then drives STOPPING
bots to STOPPED. Single instance; there is no leasing between workers.
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import Bot, BotStatus, ACTIVE_STATUSES, async_session_maker
from .auto_close import AutoCloseService
from .bot_control import BotControlService
from .config import WorkerSettings
from .errors import BotError, ExchangeError
from .executor_factory import ExecutorFactory
from .metrics import StrategyHubMetrics, metrics as default_metrics
from .reconcile import Reconciler
from .retry import BackoffOptions
from .stopping import StoppingProcessor
from .trigger_order import TriggerOrderProcessor

logger = logging.getLogger(__name__)


class Worker:
    """Periodic tick over all bots that need exchange work."""

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        settings: Optional[WorkerSettings] = None,
        session_maker: async_sessionmaker = async_session_maker,
        now_ms: Optional[Callable[[], int]] = None,
        metrics: Optional[StrategyHubMetrics] = None,
    ):
        self.executor_factory = executor_factory
        self.settings = settings or WorkerSettings()
        self.session_maker = session_maker
        self.metrics = metrics or default_metrics

        control = BotControlService(session_maker)
        self.reconciler = Reconciler(session_maker)
        self.auto_close = AutoCloseService(session_maker, metrics=self.metrics)
        self.trigger_processor = TriggerOrderProcessor(
            session_maker,
            max_retries=self.settings.order_max_retries,
            backoff=BackoffOptions(
                base_ms=self.settings.order_backoff_base_ms,
                max_ms=self.settings.order_backoff_max_ms,
            ),
            now_ms=now_ms,
            control=control,
            metrics=self.metrics,
        )
        self.stopping_processor = StoppingProcessor(
            session_maker,
            max_retries=self.settings.stop_max_retries,
            backoff=BackoffOptions(
                base_ms=self.settings.stop_backoff_base_ms,
                max_ms=self.settings.stop_backoff_max_ms,
            ),
            now_ms=now_ms,
        )

        self._task: Optional[asyncio.Task] = None
        self._stop_flag = True

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ========================================================================
    # Tick
    # ========================================================================

    async def tick(self) -> Dict[str, int]:
        """Process active bots, then STOPPING bots.

        Returns:
            Dict with processed, errors and stopping_synced counts
        """
        started = time.monotonic()
        limit = self.settings.max_bots_per_tick

        async with self.session_maker() as session:
            result = await session.execute(
                select(Bot).where(Bot.status.in_(ACTIVE_STATUSES)).order_by(Bot.created_at).limit(limit)
            )
            active_bots = list(result.scalars().all())

        logger.debug(f"Worker tick: {len(active_bots)} active bot(s)")

        processed = 0
        errors = 0
        for bot in active_bots:
            processed += 1
            try:
                if not await self._process_active_bot(bot):
                    errors += 1
            except Exception as e:
                logger.error(f"Bot {bot.id}: worker error: {e}", exc_info=True)
                errors += 1

        async with self.session_maker() as session:
            result = await session.execute(
                select(Bot).where(Bot.status == BotStatus.STOPPING).order_by(Bot.updated_at).limit(limit)
            )
            stopping_bots = list(result.scalars().all())

        stopping_synced = 0
        for bot in stopping_bots:
            try:
                executor = await self.executor_factory.for_bot(bot)
                await self.reconciler.reconcile(bot.id, executor)
                stopping = await self.stopping_processor.process(bot.id, executor)
            except Exception as e:
                logger.error(f"Bot {bot.id}: error while stopping: {e}", exc_info=True)
                errors += 1
                continue
            if stopping.success:
                stopping_synced += 1
            else:
                errors += 1

        self.metrics.record_tick(time.monotonic() - started, processed, errors, len(active_bots))
        return {"processed": processed, "errors": errors, "stopping_synced": stopping_synced}

    async def _process_active_bot(self, bot: Bot) -> bool:
        """Reconcile, risk-check and run the trigger step for one bot.

        Returns:
            False when the bot's tick failed
        """
        executor = await self.executor_factory.for_bot(bot)

        reconciled = await self.reconciler.reconcile(bot.id, executor)
        if not reconciled.success:
            self.metrics.reconcile_failures.labels(exchange=bot.exchange, symbol=bot.symbol).inc()
            logger.warning(f"Bot {bot.id}: reconcile failed ({reconciled.error}), skipping tick")
            return False

        try:
            ticker = await executor.get_ticker(bot.symbol)
        except ExchangeError as e:
            logger.warning(f"Bot {bot.id}: no ticker for {bot.symbol}: {e}")
            return False

        try:
            risk = await self.auto_close.check_and_trigger(bot.id, executor, last_price=ticker.last)
        except BotError as e:
            logger.warning(f"Bot {bot.id}: auto-close check failed: {e.code.value}: {e.message}")
            return False

        if risk.triggered or risk.new_status == BotStatus.STOPPING.value:
            logger.info(f"Bot {bot.id}: risk triggered, no new orders")
            return True

        try:
            market = await executor.get_market_info(bot.symbol)
        except ExchangeError as e:
            logger.warning(f"Bot {bot.id}: no market info for {bot.symbol}: {e}")
            return False

        await self.trigger_processor.process(
            bot.id,
            executor,
            ticker.last,
            market=market,
            price_precision=self.settings.price_precision,
            amount_precision=self.settings.amount_precision,
        )
        return True

    # ========================================================================
    # Loop
    # ========================================================================

    async def start(self) -> bool:
        """Start the periodic loop as a background task."""
        if self.is_running:
            logger.warning("Worker loop already running")
            return False

        self._stop_flag = False
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Worker started, interval={self.settings.interval_seconds}s, "
            f"max_bots_per_tick={self.settings.max_bots_per_tick}"
        )
        return True

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current tick."""
        self._stop_flag = True
        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for worker tick, cancelling...")
                task.cancel()

        await self.executor_factory.close()
        logger.info("Worker stopped")

    async def _run_loop(self) -> None:
        while not self._stop_flag:
            try:
                stats = await self.tick()
                if stats["processed"] or stats["stopping_synced"] or stats["errors"]:
                    logger.info(f"Worker tick: {stats}")
            except Exception as e:
                logger.error(f"Worker tick failed: {e}", exc_info=True)

            # Interruptible sleep
            remaining = self.settings.interval_seconds
            while remaining > 0 and not self._stop_flag:
                step = min(remaining, 0.5)
                await asyncio.sleep(step)
                remaining -= step
