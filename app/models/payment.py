from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base import Base


class Payment(Base):
    """Ledger entry. Rows are inserted once and never updated or deleted."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    reference = Column(String(255), nullable=True, index=True)
    provider = Column(String(32), nullable=False)  # stripe, flutterwave
    status = Column(String(16), nullable=False, default="successful")  # successful, failed, pending

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        Index("idx_payments_subscription_date", "subscription_id", "date"),
    )
