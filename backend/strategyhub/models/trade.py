"""Trade model - fills reported by the exchange.

Trades are what actually happened; orders are the intents behind them.
- Created only by the reconcile loop
- Immutable once recorded
- Unique per (exchange, trade_id), so re-delivery of a fill is a no-op
- client_order_id is the resolved owner: the local order matched by
  exchange order id wins over whatever the exchange reported
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base
from .order import OrderSide


class Trade(Base):
    """Trade execution record.

    Example:
        Order gb1-3f2a9c1d-1: "buy 0.1 BTC @ 95"
        Trades:
            - binance-trade-1: 0.05 BTC @ 95 (partial)
            - binance-trade-2: 0.05 BTC @ 94.9 (order now FILLED)
    """
    __tablename__ = "trades"
    __table_args__ = (
        UniqueConstraint("exchange", "trade_id", name="uq_trades_exchange_trade_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(String(36), ForeignKey("bots.id"), nullable=False, index=True)

    exchange = Column(String(50), nullable=False)
    symbol = Column(String(50), nullable=False, index=True)
    trade_id = Column(String(100), nullable=False)
    order_id = Column(String(100), nullable=True)  # exchange order id
    client_order_id = Column(String(64), nullable=False, index=True)

    side = Column(SQLEnum(OrderSide), nullable=False)
    price = Column(String(64), nullable=False)
    amount = Column(String(64), nullable=False)
    fee = Column(String(64), nullable=False, default="0")
    fee_currency = Column(String(20), nullable=True)

    timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    bot = relationship("Bot", back_populates="trades")

    def __repr__(self):
        return (
            f"<Trade(trade_id={self.trade_id}, client_order_id={self.client_order_id}, "
            f"side={self.side.value}, amount={self.amount}, price={self.price})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "exchange": self.exchange,
            "symbol": self.symbol,
            "trade_id": self.trade_id,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "side": self.side.value,
            "price": self.price,
            "amount": self.amount,
            "fee": self.fee,
            "fee_currency": self.fee_currency,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
