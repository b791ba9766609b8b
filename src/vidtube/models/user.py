from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from ..database import Base, WatchHistoryEntry


class User(Base):
    """SQLAlchemy model for channel owners and viewers."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=False)
    avatar = Column(String, nullable=False)
    cover_image = Column(String, default="", nullable=False)
    password_hash = Column(String, nullable=False)
    refresh_token = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    history_entries = relationship(
        WatchHistoryEntry,
        order_by=WatchHistoryEntry.position,
        lazy="selectin",
    )

    @property
    def watch_history(self) -> list[int]:
        return [entry.video_id for entry in self.history_entries]
