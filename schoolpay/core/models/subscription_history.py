import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from schoolpay.core.enums import SubscriptionHistoryStatus
from schoolpay.db.session import Base


class SubscriptionHistory(Base):
    """Paid subscription periods. At most one active row per tenant."""

    __tablename__ = "subscription_history"
    __table_args__ = (
        CheckConstraint("status IN ('active','superseded')", name="chk_subscription_history_status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payment_records.id", ondelete="RESTRICT"), nullable=False)
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionHistoryStatus.active.value)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant")
    payment = relationship("PaymentRecord")
    plan = relationship("SubscriptionPlan")
