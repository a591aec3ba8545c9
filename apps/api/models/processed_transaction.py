"""ProcessedTransaction model: replay guard for one-time purchases."""

from sqlalchemy import Column, DateTime, Integer, String

from database import Base


class ProcessedTransaction(Base):
    """Keyed by the billing provider's transaction id."""

    __tablename__ = "processed_transactions"

    transaction_id = Column(String, primary_key=True)
    uid = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False)
    credits_granted = Column(Integer, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False)
