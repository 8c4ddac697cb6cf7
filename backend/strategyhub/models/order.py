"""Order model - one row per order intent (outbox)."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type enumeration."""
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(str, Enum):
    """Order status enumeration."""
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"


OPEN_ORDER_STATUSES = (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)

# Status only ever moves forward
ORDER_STATUS_RANK = {
    OrderStatus.NEW: 0,
    OrderStatus.PARTIALLY_FILLED: 1,
    OrderStatus.FILLED: 2,
    OrderStatus.CANCELED: 2,
}


class Order(Base):
    """Order intent keyed by a deterministic client_order_id.

    exchange_order_id and submitted_at stay null until the exchange accepts
    the order; that null/non-null pair is the outbox state.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("exchange", "client_order_id", name="uq_orders_exchange_client_order_id"),
        UniqueConstraint("bot_id", "intent_seq", name="uq_orders_bot_intent_seq"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(String(36), ForeignKey("bots.id"), nullable=False, index=True)
    exchange = Column(String(50), nullable=False)
    symbol = Column(String(50), nullable=False)

    client_order_id = Column(String(64), nullable=False)
    intent_seq = Column(Integer, nullable=True)
    exchange_order_id = Column(String(100), nullable=True)
    submitted_at = Column(DateTime, nullable=True)

    side = Column(SQLEnum(OrderSide), nullable=False)
    type = Column(SQLEnum(OrderType), nullable=False, default=OrderType.LIMIT)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.NEW)

    # Decimal strings
    price = Column(String(64), nullable=True)
    amount = Column(String(64), nullable=False)
    filled_amount = Column(String(64), nullable=False, default="0")
    avg_fill_price = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    bot = relationship("Bot", back_populates="orders")

    @property
    def is_submitted(self) -> bool:
        return self.submitted_at is not None or self.exchange_order_id is not None

    def __repr__(self):
        return f"<Order(client_order_id={self.client_order_id}, status={self.status.value})>"
