"""Notification model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from clinic_scheduler.database import Base


class Notification(Base):
    """A message addressed to one user; only the read flag ever changes."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
