"""Bot model for trading bot instances."""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class BotStatus(str, Enum):
    """Bot lifecycle status."""
    DRAFT = "DRAFT"
    WAITING_TRIGGER = "WAITING_TRIGGER"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


# Bots the worker ticks over (reconcile + trigger processing)
ACTIVE_STATUSES = (BotStatus.RUNNING, BotStatus.WAITING_TRIGGER)


class Bot(Base):
    """Trading bot model.

    status_version is the optimistic-lock token: it moves if and only if
    status moves, and every status write is a CAS on it.
    """
    __tablename__ = "bots"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=True)

    # Exchange account
    exchange_account_id = Column(String(36), nullable=True)
    exchange = Column(String(50), nullable=False, default="binance")
    symbol = Column(String(50), nullable=False)

    # Lifecycle
    status = Column(SQLEnum(BotStatus), default=BotStatus.DRAFT, nullable=False, index=True)
    status_version = Column(Integer, default=0, nullable=False)
    run_id = Column(String(36), nullable=True)
    last_error = Column(Text, nullable=True)

    # Strategy config
    config_json = Column(JSON, default=dict, nullable=False)
    config_revision = Column(Integer, default=1, nullable=False)

    # Auto close (risk) state
    auto_close_reference_price = Column(String(64), nullable=True)  # frozen at start/resume
    auto_close_triggered_at = Column(DateTime, nullable=True)
    auto_close_reason = Column(String(50), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="bots")
    orders = relationship("Order", back_populates="bot", cascade="all, delete-orphan")
    trades = relationship("Trade", back_populates="bot", cascade="all, delete-orphan")
    snapshots = relationship("BotSnapshot", back_populates="bot", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Bot(id={self.id}, symbol='{self.symbol}', status={self.status.value}, v={self.status_version})>"
