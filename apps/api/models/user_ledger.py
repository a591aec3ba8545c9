"""UserLedger model: per-identity plan, balance, and generation counters."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class UserLedger(Base):
    """One row per identity. Credit columns are null until credits are initialized."""

    __tablename__ = "user_ledgers"
    __table_args__ = (
        CheckConstraint("credits IS NULL OR credits >= 0", name="ck_user_ledgers_credits_non_negative"),
        CheckConstraint("active_generations >= 0", name="ck_user_ledgers_active_generations_non_negative"),
    )

    uid = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    display_name = Column(String, nullable=True)

    plan = Column(String, nullable=True)
    credits = Column(Integer, nullable=True)
    max_credits = Column(Integer, nullable=True)
    last_monthly_grant = Column(DateTime(timezone=True), nullable=True)

    active_generations = Column(Integer, nullable=False, default=0)
    last_generation_at = Column(DateTime(timezone=True), nullable=True)
    last_slot_acquired_at = Column(DateTime(timezone=True), nullable=True, index=True)
    used_free_onboarding_generation = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
