"""SubscriptionRecord model for renewal tracking."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionRecord(Base):
    """Paid-plan subscription, one per identity."""

    __tablename__ = "subscriptions"

    uid = Column(String, primary_key=True)
    product_id = Column(String, nullable=False)
    plan = Column(String, nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=False)
    expires_date = Column(DateTime(timezone=True), nullable=False, index=True)
    original_transaction_id = Column(String, nullable=False)
    last_credit_grant = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="active", index=True)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
