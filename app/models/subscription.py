from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending, active, cancelled, expired
    plan = Column(String(16), nullable=False, default="free")  # free, pro
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    renewal_date = Column(DateTime(timezone=True), nullable=True)

    # Provider descriptor
    provider_name = Column(String(32), nullable=True)  # stripe, flutterwave, manual
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    flutterwave_tx_ref = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", backref="subscription")
    payments = relationship(
        "Payment",
        back_populates="subscription",
        order_by="Payment.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_subscriptions_status_end", "status", "end_date"),
    )
