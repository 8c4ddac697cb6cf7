"""Per-user kill switch.

Enabling the switch stops every bot of the user that can trade (RUNNING or
WAITING_TRIGGER) and blocks START/RESUME until it is disabled. Disabling does
not resume anything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import Bot, User, ACTIVE_STATUSES, async_session_maker
from .bot_control import apply_event
from .metrics import RISK_KILL_SWITCH, StrategyHubMetrics, metrics as default_metrics
from .state_machine import BotEvent

logger = logging.getLogger(__name__)

DEFAULT_REASON = "MANUAL"


@dataclass
class KillSwitchState:
    enabled: bool
    enabled_at: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass
class KillSwitchEnableResult:
    enabled: bool
    enabled_at: Optional[datetime]
    reason: Optional[str]
    affected_bots: int


class KillSwitchService:
    """Enable/disable the kill switch and sweep the user's bots."""

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        metrics: Optional[StrategyHubMetrics] = None,
    ):
        self.session_maker = session_maker
        self.metrics = metrics or default_metrics

    async def get_state(self, user_id: str) -> KillSwitchState:
        async with self.session_maker() as session:
            user = await session.get(User, user_id)
        if not user:
            return KillSwitchState(enabled=False)
        return KillSwitchState(
            enabled=user.kill_switch_enabled,
            enabled_at=user.kill_switch_enabled_at,
            reason=user.kill_switch_reason,
        )

    async def is_blocking(self, user_id: str) -> bool:
        """True while START/RESUME must be refused for this user."""
        return (await self.get_state(user_id)).enabled

    async def enable(self, user_id: str, reason: str = DEFAULT_REASON) -> KillSwitchEnableResult:
        """Turn the switch on and stop the user's trading bots.

        Every call sweeps, so a bot that became active while the switch was
        already on is still stopped. Only bots this call moved are counted;
        a repeat call on a clean state returns 0. enabled_at and reason are
        only written on the disabled -> enabled edge.

        Args:
            user_id: Owner of the bots
            reason: Recorded on the user and in each stopped bot's last_error

        Returns:
            KillSwitchEnableResult with the number of bots this call moved
        """
        reason = reason or DEFAULT_REASON
        now = datetime.utcnow()

        async with self.session_maker() as session:
            async with session.begin():
                if await session.get(User, user_id) is None:
                    session.add(User(id=user_id))
                    await session.flush()

                result = await session.execute(
                    update(User)
                    .where(User.id == user_id, User.kill_switch_enabled.is_(False))
                    .values(kill_switch_enabled=True, kill_switch_enabled_at=now, kill_switch_reason=reason)
                    .execution_options(synchronize_session=False)
                )
                newly_enabled = result.rowcount == 1

        state = await self.get_state(user_id)
        stop_reason = state.reason or reason
        affected = await self._stop_active_bots(user_id, stop_reason)
        self.metrics.record_risk_triggered(RISK_KILL_SWITCH, affected)

        if newly_enabled:
            logger.warning(f"Kill switch enabled for user {user_id} ({stop_reason}), {affected} bot(s) stopping")
        elif affected:
            logger.warning(f"Kill switch already enabled for user {user_id}, stopped {affected} straggler bot(s)")
        else:
            logger.info(f"Kill switch already enabled for user {user_id}")

        return KillSwitchEnableResult(
            enabled=True,
            enabled_at=state.enabled_at or now,
            reason=stop_reason,
            affected_bots=affected,
        )

    async def _stop_active_bots(self, user_id: str, reason: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Bot).where(Bot.user_id == user_id, Bot.status.in_(ACTIVE_STATUSES))
            )
            bots = list(result.scalars().all())

        affected = 0
        for bot in bots:
            async with self.session_maker() as session:
                async with session.begin():
                    # A CAS miss means another writer already moved the bot
                    won = await apply_event(
                        session, bot, BotEvent.KILL_SWITCH, last_error=f"KILL_SWITCH: {reason}"
                    )
            if won:
                affected += 1
        return affected

    async def disable(self, user_id: str) -> KillSwitchState:
        """Turn the switch off. enabled_at and reason are kept for audit."""
        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(kill_switch_enabled=False)
                    .execution_options(synchronize_session=False)
                )
        logger.info(f"Kill switch disabled for user {user_id}")
        return await self.get_state(user_id)
