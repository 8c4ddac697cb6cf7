"""User model carrying the per-user kill switch."""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.orm import relationship

from .database import Base


class User(Base):
    """Bot owner.

    The kill switch lives on the user row so every start/resume attempt and
    every enable sweep reads the same persisted flag.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=True, unique=True)

    # Kill switch
    kill_switch_enabled = Column(Boolean, default=False, nullable=False)
    kill_switch_enabled_at = Column(DateTime, nullable=True)
    kill_switch_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    bots = relationship("Bot", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, kill_switch={self.kill_switch_enabled})>"
