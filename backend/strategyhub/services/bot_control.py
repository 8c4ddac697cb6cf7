"""Bot control: lifecycle commands, config edits and status CAS writes.

Every status change goes through compare_and_set_status, a single
UPDATE ... WHERE id = ? AND status_version = ? whose row count tells whether
the write won. Network I/O (config validation against the exchange) happens
before the write transaction is opened.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    Bot,
    BotSnapshot,
    BotStatus,
    Order,
    Trade,
    User,
    async_session_maker,
)
from .errors import BotError, BotErrorCode, ExchangeError
from .exchange import MarketDataProvider
from .preview import GridConfig, PreviewResult, calculate_preview, has_blocking_errors
from .state_machine import (
    BotEvent,
    KILL_SWITCH_GUARDED_EVENTS,
    TriggerPolicy,
    can_modify_config,
    has_trigger_condition,
    resolve_target,
    validate_transition,
)

logger = logging.getLogger(__name__)

DELETABLE_STATUSES = (BotStatus.DRAFT, BotStatus.STOPPED, BotStatus.ERROR)

_DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})


# ============================================================================
# CAS helpers
# ============================================================================

async def compare_and_set_status(
    session: AsyncSession,
    bot_id: str,
    expected_version: int,
    status: BotStatus,
    **values: Any,
) -> bool:
    """Move a bot to `status` if its status_version is still `expected_version`.

    Returns:
        True if this write won (exactly one row updated)
    """
    result = await session.execute(
        update(Bot)
        .where(Bot.id == bot_id, Bot.status_version == expected_version)
        .values(
            status=status,
            status_version=expected_version + 1,
            updated_at=datetime.utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def apply_event(
    session: AsyncSession,
    bot: Bot,
    event: BotEvent,
    policy: TriggerPolicy = has_trigger_condition,
    **values: Any,
) -> bool:
    """Validate a system event against the bot's status and CAS it in.

    Returns:
        True if the status moved; False when the event is idempotent for the
        current status or another writer got there first

    Raises:
        BotError: INVALID_STATE_TRANSITION if the event is not allowed
    """
    transition = validate_transition(bot.status, event)
    if not transition.valid:
        raise BotError(
            BotErrorCode.INVALID_STATE_TRANSITION,
            f"Cannot {event.value} from {bot.status.value}",
        )
    if transition.idempotent:
        return False

    target = resolve_target(transition.target, bot.config_json, policy)
    won = await compare_and_set_status(session, bot.id, bot.status_version, target, **values)
    if won:
        logger.info(f"Bot {bot.id}: {bot.status.value} -> {target.value} ({event.value})")
    return won


async def load_bot(session: AsyncSession, bot_id: str, user_id: Optional[str] = None) -> Optional[Bot]:
    """Read a bot fresh from the database, bypassing the identity map."""
    query = select(Bot).where(Bot.id == bot_id)
    if user_id is not None:
        query = query.where(Bot.user_id == user_id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Merge `source` into a copy of `target`, recursing into nested dicts."""
    merged = dict(target)
    for key, value in source.items():
        if key in _DANGEROUS_KEYS or value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _config_dict(config: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    if config is None:
        return {}
    if isinstance(config, str):
        try:
            config = json.loads(config)
        except ValueError:
            raise BotError(BotErrorCode.CONFIG_VALIDATION_ERROR, "Invalid config JSON")
    if not isinstance(config, dict):
        raise BotError(BotErrorCode.CONFIG_VALIDATION_ERROR, "Config must be an object")
    return config


class BotControlService:
    """Lifecycle and config commands issued by users and by the worker."""

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        trigger_policy: TriggerPolicy = has_trigger_condition,
    ):
        self.session_maker = session_maker
        self.trigger_policy = trigger_policy

    # ========================================================================
    # Users & bots
    # ========================================================================

    async def ensure_user(self, user_id: str) -> User:
        """Fetch a user, creating the row on first sight."""
        async with self.session_maker() as session:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id)
                session.add(user)
                await session.commit()
                logger.info(f"Registered user {user_id}")
            return user

    async def create_bot(
        self,
        user_id: str,
        symbol: str,
        exchange: str = "binance",
        config: Union[str, Dict[str, Any], None] = None,
        name: Optional[str] = None,
        exchange_account_id: Optional[str] = None,
    ) -> Bot:
        """Create a bot in DRAFT."""
        config_json = _config_dict(config)
        await self.ensure_user(user_id)

        async with self.session_maker() as session:
            bot = Bot(
                user_id=user_id,
                name=name,
                exchange=exchange,
                exchange_account_id=exchange_account_id,
                symbol=symbol,
                config_json=config_json,
                status=BotStatus.DRAFT,
                status_version=0,
            )
            session.add(bot)
            await session.commit()
            await session.refresh(bot)

        logger.info(f"Created bot {bot.id} for {symbol} on {exchange}")
        return bot

    async def list_bots(self, user_id: str) -> List[Bot]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Bot).where(Bot.user_id == user_id).order_by(Bot.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_bot(self, bot_id: str, user_id: Optional[str] = None) -> Bot:
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
        if not bot:
            raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")
        return bot

    async def update_config(self, bot_id: str, user_id: str, config: Union[str, Dict[str, Any]]) -> Bot:
        """Replace the bot config.

        Only allowed while the bot is not trading. Bumps config_revision, never
        status_version.
        """
        config_json = _config_dict(config)

        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
            if not bot:
                raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")

            if not can_modify_config(bot.status):
                raise BotError(
                    BotErrorCode.CONFIG_LOCKED,
                    f"Cannot modify config in {bot.status.value} state",
                )

            bot.config_json = config_json
            bot.config_revision = bot.config_revision + 1
            bot.updated_at = datetime.utcnow()
            await session.commit()
            await session.refresh(bot)

        logger.info(f"Bot {bot_id}: config updated to revision {bot.config_revision}")
        return bot

    async def delete_bot(self, bot_id: str, user_id: str) -> None:
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
            if not bot:
                raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")
            if bot.status not in DELETABLE_STATUSES:
                raise BotError(
                    BotErrorCode.INVALID_STATE_TRANSITION,
                    f"Cannot delete bot in {bot.status.value} state",
                )
            await session.delete(bot)
            await session.commit()
        logger.info(f"Deleted bot {bot_id}")

    # ========================================================================
    # Config validation
    # ========================================================================

    async def preview(
        self,
        bot: Bot,
        provider: MarketDataProvider,
        config_override: Optional[Dict[str, Any]] = None,
    ) -> PreviewResult:
        """Run the preview engine against live market data.

        Raises:
            BotError: CONFIG_VALIDATION_ERROR for unparsable config,
                EXCHANGE_UNAVAILABLE when market data cannot be fetched
        """
        config_dict = _config_dict(bot.config_json)
        if config_override:
            config_dict = deep_merge(config_dict, config_override)

        try:
            config = GridConfig.from_dict(config_dict)
        except (ValueError, TypeError) as e:
            raise BotError(BotErrorCode.CONFIG_VALIDATION_ERROR, f"Invalid config: {e}")

        try:
            market = await provider.get_market_info(bot.symbol)
        except ExchangeError as e:
            raise BotError(BotErrorCode.EXCHANGE_UNAVAILABLE, f"Failed to get market info: {e.message}")

        try:
            ticker = await provider.get_ticker(bot.symbol)
        except ExchangeError as e:
            raise BotError(BotErrorCode.EXCHANGE_UNAVAILABLE, f"Failed to get ticker: {e.message}")

        try:
            balance = await provider.get_balance(bot.symbol)
        except ExchangeError as e:
            # Preview reports BALANCE_UNAVAILABLE for percent sizing
            logger.warning(f"Bot {bot.id}: balance unavailable for preview: {e.message}")
            balance = None

        return calculate_preview(config, market, ticker, balance)

    # ========================================================================
    # Transitions
    # ========================================================================

    async def _kill_switch_enabled(self, session: AsyncSession, user_id: str) -> bool:
        result = await session.execute(select(User.kill_switch_enabled).where(User.id == user_id))
        return bool(result.scalar_one_or_none())

    async def transition(
        self,
        bot_id: str,
        user_id: str,
        event: BotEvent,
        provider: Optional[MarketDataProvider] = None,
    ) -> Bot:
        """Apply a user lifecycle command.

        Args:
            bot_id: Bot ID
            user_id: Owner, used for the ownership and kill switch checks
            event: START, PAUSE, RESUME or STOP
            provider: Market data, required for START/RESUME validation

        Returns:
            The bot after the transition (unchanged when idempotent)

        Raises:
            BotError: BOT_NOT_FOUND, KILL_SWITCH_LOCKED, INVALID_STATE_TRANSITION,
                CONFIG_VALIDATION_ERROR, EXCHANGE_UNAVAILABLE or CONCURRENT_MODIFICATION
        """
        event = BotEvent(event)
        is_activation = event in KILL_SWITCH_GUARDED_EVENTS

        # Pre-checks, outside any write transaction
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
            if not bot:
                raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")
            kill_switch_on = is_activation and await self._kill_switch_enabled(session, user_id)

        if kill_switch_on:
            raise BotError(
                BotErrorCode.KILL_SWITCH_LOCKED,
                "Kill switch is enabled, cannot start or resume bot",
            )

        transition = validate_transition(bot.status, event)
        if transition.idempotent:
            return bot
        if not transition.valid:
            raise BotError(
                BotErrorCode.INVALID_STATE_TRANSITION,
                f"Cannot {event.value} from {bot.status.value}",
            )

        reference_price = None
        if is_activation:
            if provider is None:
                raise BotError(BotErrorCode.EXCHANGE_UNAVAILABLE, "No market data provider available")
            preview = await self.preview(bot, provider)
            if has_blocking_errors(preview):
                errors = "; ".join(
                    f"{issue.code}: {issue.message}" for issue in preview.issues if issue.severity == "ERROR"
                )
                raise BotError(BotErrorCode.CONFIG_VALIDATION_ERROR, f"Config validation failed: {errors}")
            reference_price = preview.base_price

        # Write: re-read, resolve and CAS in one transaction
        async with self.session_maker() as session:
            async with session.begin():
                current = await load_bot(session, bot_id, user_id)
                if not current or current.status_version != bot.status_version:
                    raise BotError(BotErrorCode.CONCURRENT_MODIFICATION, "Bot state changed, please retry")

                if is_activation and await self._kill_switch_enabled(session, user_id):
                    raise BotError(
                        BotErrorCode.KILL_SWITCH_LOCKED,
                        "Kill switch is enabled, cannot start or resume bot",
                    )

                target = resolve_target(transition.target, current.config_json, self.trigger_policy)
                values: Dict[str, Any] = {}
                if is_activation:
                    values["run_id"] = str(uuid.uuid4())
                    values["started_at"] = datetime.utcnow()
                    values["last_error"] = None
                    if reference_price:
                        values["auto_close_reference_price"] = reference_price
                        values["auto_close_triggered_at"] = None
                        values["auto_close_reason"] = None
                elif event == BotEvent.STOP:
                    values["run_id"] = None

                won = await compare_and_set_status(session, bot_id, bot.status_version, target, **values)
                if not won:
                    raise BotError(BotErrorCode.CONCURRENT_MODIFICATION, "Bot state changed, please retry")

            updated = await load_bot(session, bot_id)

        logger.info(
            f"Bot {bot_id}: {bot.status.value} -> {target.value} ({event.value}, v{updated.status_version})"
        )
        return updated

    async def start(self, bot_id: str, user_id: str, provider: MarketDataProvider) -> Bot:
        return await self.transition(bot_id, user_id, BotEvent.START, provider)

    async def pause(self, bot_id: str, user_id: str) -> Bot:
        return await self.transition(bot_id, user_id, BotEvent.PAUSE)

    async def resume(self, bot_id: str, user_id: str, provider: MarketDataProvider) -> Bot:
        return await self.transition(bot_id, user_id, BotEvent.RESUME, provider)

    async def stop(self, bot_id: str, user_id: str) -> Bot:
        return await self.transition(bot_id, user_id, BotEvent.STOP)

    async def mark_error(self, bot_id: str, code: Union[BotErrorCode, str], message: str) -> bool:
        """Move a bot to ERROR (FATAL_ERROR) with `last_error = "{code}: {message}"`.

        Returns:
            True if this call moved the bot
        """
        code_value = code.value if isinstance(code, BotErrorCode) else str(code)
        async with self.session_maker() as session:
            async with session.begin():
                bot = await load_bot(session, bot_id)
                if not bot:
                    return False
                won = await apply_event(
                    session,
                    bot,
                    BotEvent.FATAL_ERROR,
                    last_error=f"{code_value}: {message}",
                )

        if won:
            logger.error(f"Bot {bot_id}: marked ERROR ({code_value}: {message})")
        return won

    # ========================================================================
    # Read models
    # ========================================================================

    async def get_runtime(self, bot_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Status, run and the latest reconcile snapshot for a bot."""
        async with self.session_maker() as session:
            bot = await load_bot(session, bot_id, user_id)
            if not bot:
                raise BotError(BotErrorCode.BOT_NOT_FOUND, "Bot not found")

            result = await session.execute(
                select(BotSnapshot)
                .where(BotSnapshot.bot_id == bot_id)
                .order_by(BotSnapshot.id.desc())
                .limit(1)
            )
            snapshot = result.scalar_one_or_none()

            order_count = await session.scalar(
                select(func.count()).select_from(Order).where(Order.bot_id == bot_id)
            )

        return {
            "bot_id": bot.id,
            "status": bot.status.value,
            "status_version": bot.status_version,
            "run_id": bot.run_id,
            "last_error": bot.last_error,
            "auto_close_reference_price": bot.auto_close_reference_price,
            "auto_close_triggered_at": bot.auto_close_triggered_at,
            "order_count": order_count or 0,
            "snapshot": json.loads(snapshot.state_json) if snapshot else None,
            "snapshot_hash": snapshot.state_hash if snapshot else None,
            "reconciled_at": snapshot.reconciled_at if snapshot else None,
        }

    async def list_orders(self, bot_id: str, user_id: Optional[str] = None) -> List[Order]:
        await self.get_bot(bot_id, user_id)
        async with self.session_maker() as session:
            result = await session.execute(
                select(Order).where(Order.bot_id == bot_id).order_by(Order.intent_seq.asc())
            )
            return list(result.scalars().all())

    async def list_trades(self, bot_id: str, user_id: Optional[str] = None, limit: int = 100) -> List[Trade]:
        await self.get_bot(bot_id, user_id)
        async with self.session_maker() as session:
            result = await session.execute(
                select(Trade).where(Trade.bot_id == bot_id).order_by(Trade.timestamp.desc()).limit(limit)
            )
            return list(result.scalars().all())
