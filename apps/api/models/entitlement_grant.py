"""EntitlementGrant model: one reason a user may use a feature."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


GRANT_SOURCE_PLAN = "plan"
GRANT_SOURCE_PROMO = "promo"
GRANT_SOURCE_ADMIN = "admin"
GRANT_SOURCE_TRIAL = "trial"
GRANT_SOURCES = (GRANT_SOURCE_PLAN, GRANT_SOURCE_PROMO, GRANT_SOURCE_ADMIN, GRANT_SOURCE_TRIAL)


class EntitlementGrant(Base):
    """Immutable grant row. Superseded by adding rows, never edited in place."""

    __tablename__ = "entitlement_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "feature_key", "source", "starts_at", name="uq_entitlement_grants_identity"),
        Index("ix_entitlement_grants_user_feature", "user_id", "feature_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    feature_key = Column(String, nullable=False)
    source = Column(String, nullable=False)
    subscription_id = Column(String, nullable=True, index=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="entitlement_grants")
