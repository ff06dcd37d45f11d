"""Scheduled plan change: a downgrade paid for by unused credit, effective at the current end date."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from schoolpay.core.enums import ScheduledChangeStatus
from schoolpay.db.session import Base


class ScheduledPlanChange(Base):
    __tablename__ = "scheduled_plan_changes"
    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled','applied','cancelled')",
            name="chk_scheduled_plan_change_status",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    from_plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    to_plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    effective_date = Column(Date, nullable=False)
    credit_amount = Column(Numeric(12, 2), nullable=False)
    months_covered = Column(Integer, nullable=False)
    # Credit left after whole periods are covered; carried forward, not spent yet
    remaining_credit = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ScheduledChangeStatus.scheduled.value)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    from_plan = relationship("SubscriptionPlan", foreign_keys=[from_plan_id])
    to_plan = relationship("SubscriptionPlan", foreign_keys=[to_plan_id])
