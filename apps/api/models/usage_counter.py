"""UsageCounter model for period-bounded quota accounting."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class UsageCounter(Base):
    """Per (user, feature, period) consumption count. Old periods are kept for history."""

    __tablename__ = "usage_counters"

    user_id = Column(String, primary_key=True)
    feature_key = Column(String, primary_key=True)
    period_start = Column(DateTime(timezone=True), primary_key=True)
    count = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
