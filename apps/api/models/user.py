"""User account model holding the credit and download balances."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class User(Base):
    """Account balance row keyed by the identity provider's account id."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint("downloads_remaining >= 0", name="ck_users_downloads_non_negative"),
    )

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    downloads_remaining = Column(Integer, nullable=False, default=0)
    is_premium = Column(Boolean, nullable=False, default=False)
    # Bumped on every flush; a concurrent writer sees a stale version and fails.
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    ledger_entries = relationship(
        "LedgerEntry",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="LedgerEntry.created_at",
    )
