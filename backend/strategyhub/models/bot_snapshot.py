"""Bot snapshot model for reconcile history."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from .database import Base


class BotSnapshot(Base):
    """Point-in-time reconcile record, written only when state_hash changes."""
    __tablename__ = "bot_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(String(36), ForeignKey("bots.id"), nullable=False, index=True)
    run_id = Column(String(64), nullable=False)

    reconciled_at = Column(DateTime, nullable=False)
    state_json = Column(Text, nullable=False)  # exactly the hashed payload
    state_hash = Column(String(16), nullable=False)

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    bot = relationship("Bot", back_populates="snapshots")

    def __repr__(self):
        return f"<BotSnapshot(bot_id={self.bot_id}, hash={self.state_hash})>"
