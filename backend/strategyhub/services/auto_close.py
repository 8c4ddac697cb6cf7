"""Auto-close: stop a bot once price draws down from its frozen reference.

The reference price is frozen when the bot starts or resumes. The check fires
at most once per run; auto_close_triggered_at is part of the CAS condition.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import Bot, BotStatus, ACTIVE_STATUSES, async_session_maker
from .bot_control import load_bot
from .decimals import format_decimal, parse_decimal
from .errors import BotError, BotErrorCode, ExchangeError
from .exchange import MarketDataProvider
from .metrics import RISK_AUTO_CLOSE, StrategyHubMetrics, metrics as default_metrics
from .preview import GridConfig

logger = logging.getLogger(__name__)

AUTO_CLOSE_REASON = "AUTO_CLOSE"


@dataclass
class AutoCloseDecision:
    should_trigger: bool
    drawdown_percent: Optional[str] = None


@dataclass
class AutoCloseResult:
    triggered: bool
    previously_triggered: bool = False
    new_status: Optional[str] = None
    drawdown_percent: Optional[str] = None


def check_auto_close(reference_price: str, last_price: str, drawdown_percent: str) -> AutoCloseDecision:
    """Decide whether a drawdown threshold has been crossed.

    Fires when last <= reference * (1 - drawdown_percent / 100).

    Raises:
        ValueError: If any price is not a positive number
    """
    ref = parse_decimal(reference_price, default="NaN")
    last = parse_decimal(last_price, default="NaN")
    pct = parse_decimal(drawdown_percent, default="NaN")
    if not (ref.is_finite() and last.is_finite() and pct.is_finite()) or ref <= 0:
        raise ValueError(f"Invalid price data: ref={reference_price}, last={last_price}")

    threshold = ref * (1 - pct / 100)
    if last <= threshold:
        drawdown = (ref - last) / ref * 100
        return AutoCloseDecision(True, format_decimal(drawdown, 2))
    return AutoCloseDecision(False)


class AutoCloseService:
    """Evaluate and fire RISK_TRIGGERED(AUTO_CLOSE) for a bot."""

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        metrics: Optional[StrategyHubMetrics] = None,
    ):
        self.session_maker = session_maker
        self.metrics = metrics or default_metrics

    async def check_and_trigger(
        self,
        bot_id: str,
        provider: MarketDataProvider,
        user_id: Optional[str] = None,
        last_price: Optional[str] = None,
    ) -> AutoCloseResult:
        """Check the bot's drawdown and move it to STOPPING if crossed.

        Args:
            bot_id: Bot ID
            provider: Market data source, used when last_price is not given
            user_id: Owner check for API callers
            last_price: Ticker price already fetched by the caller

        Raises:
            BotError: BOT_NOT_FOUND, EXCHANGE_UNAVAILABLE or CONCURRENT_MODIFICATION
        """
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
        if not bot:
            raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")

        if bot.status not in ACTIVE_STATUSES:
            return AutoCloseResult(triggered=False)
        if bot.auto_close_triggered_at:
            return AutoCloseResult(triggered=False, previously_triggered=True)
        if not bot.auto_close_reference_price:
            return AutoCloseResult(triggered=False)

        try:
            risk = GridConfig.from_dict(bot.config_json).risk
        except (ValueError, TypeError):
            return AutoCloseResult(triggered=False)
        if not risk.enable_auto_close or not risk.auto_close_drawdown_percent:
            return AutoCloseResult(triggered=False)

        if last_price is None:
            try:
                last_price = (await provider.get_ticker(bot.symbol)).last
            except ExchangeError as e:
                raise BotError(BotErrorCode.EXCHANGE_UNAVAILABLE, f"Failed to get ticker: {e.message}")

        try:
            decision = check_auto_close(
                bot.auto_close_reference_price, last_price, risk.auto_close_drawdown_percent
            )
        except ValueError as e:
            logger.error(f"Bot {bot_id}: invalid price data for auto-close: {e}")
            raise BotError(BotErrorCode.EXCHANGE_UNAVAILABLE, "Invalid price data from exchange")

        if not decision.should_trigger:
            return AutoCloseResult(triggered=False)

        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Bot)
                    .where(
                        Bot.id == bot_id,
                        Bot.status_version == bot.status_version,
                        Bot.auto_close_triggered_at.is_(None),
                    )
                    .values(
                        status=BotStatus.STOPPING,
                        status_version=bot.status_version + 1,
                        auto_close_triggered_at=datetime.utcnow(),
                        auto_close_reason=AUTO_CLOSE_REASON,
                        last_error=f"AUTO_CLOSE triggered: drawdown {decision.drawdown_percent}%",
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1

        if not won:
            async with self.session_maker() as session:
                current = await load_bot(session, bot_id)
            if current and current.auto_close_triggered_at:
                return AutoCloseResult(triggered=False, previously_triggered=True)
            raise BotError(
                BotErrorCode.CONCURRENT_MODIFICATION,
                "Bot state changed during risk check, please retry",
            )

        self.metrics.record_risk_triggered(RISK_AUTO_CLOSE)
        logger.warning(
            f"Bot {bot_id}: auto-close triggered at {last_price} "
            f"(reference {bot.auto_close_reference_price}, drawdown {decision.drawdown_percent}%)"
        )
        return AutoCloseResult(
            triggered=True,
            new_status=BotStatus.STOPPING.value,
            drawdown_percent=decision.drawdown_percent,
        )
