import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String, UniqueConstraint, Uuid

from schoolpay.db.session import Base


class SubscriptionPlan(Base):
    """Subscription plan offered by the platform.

    Plans are immutable once a payment references them: a price change is a new plan,
    the old one is deactivated. Managed by Platform Admin only.
    """

    __tablename__ = "subscription_plans"
    __table_args__ = (
        UniqueConstraint("name", name="uq_subscription_plan_name"),
        CheckConstraint("amount > 0", name="chk_subscription_plan_amount_positive"),
        CheckConstraint("duration_days > 0", name="chk_subscription_plan_duration_positive"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    plan_type = Column(String(20), nullable=False)  # monthly, term, yearly
    amount = Column(Numeric(12, 2), nullable=False)
    duration_days = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")
    description = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
