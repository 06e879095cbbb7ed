"""Ledger rows backing single-use capability tokens."""

from sqlalchemy import Column, DateTime, Index, String

from database import Base


class CapabilityLedgerEntry(Base):
    """Authorization record for one capability token id.

    consumed_at moves from NULL to a timestamp at most once, through a single
    conditional UPDATE in services.token_ledger.
    """

    __tablename__ = "capability_token_ledger"
    __table_args__ = (
        Index("ix_capability_token_ledger_expires_at", "expires_at"),
    )

    token_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    feature = Column(String, nullable=False)
    method = Column(String, nullable=False)
    path = Column(String, nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
