# Database Models

from .database import Base, engine, async_session_maker, get_session_maker, init_db
from .user import User
from .bot import Bot, BotStatus, ACTIVE_STATUSES
from .order import (
    Order,
    OrderSide,
    OrderType,
    OrderStatus,
    OPEN_ORDER_STATUSES,
    ORDER_STATUS_RANK,
)
from .trade import Trade
from .bot_snapshot import BotSnapshot

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session_maker",
    "init_db",
    "User",
    "Bot",
    "BotStatus",
    "ACTIVE_STATUSES",
    "Order",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "OPEN_ORDER_STATUSES",
    "ORDER_STATUS_RANK",
    "Trade",
    "BotSnapshot",
]
