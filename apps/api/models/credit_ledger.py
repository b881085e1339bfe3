"""LedgerEntry model for the append-only balance audit log."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


ENTRY_TYPES = ("purchase", "usage", "bonus", "refund")
BALANCE_KINDS = ("credits", "downloads")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntry(Base):
    """Immutable record of one balance mutation."""

    __tablename__ = "ledger_entries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    description = Column(String, nullable=False, default="")
    type = Column(String, nullable=False, index=True)
    balance = Column(String, nullable=False, default="credits")
    metadata_json = Column(JSON, nullable=True)
    # Assigned in-process so entries written within one second still order correctly.
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    user = relationship("User", back_populates="ledger_entries")
