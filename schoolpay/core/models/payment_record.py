"""Payment record: the payment ledger. One row per system-generated reference."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from schoolpay.core.enums import PaymentStatus
from schoolpay.db.session import Base


class PaymentRecord(Base):
    """
    Payment intent and its terminal status.

    pending -> success and pending -> failed are the only transitions; both are terminal.
    The reference is the idempotency key shared with the gateway.
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        CheckConstraint("status IN ('pending','success','failed')", name="chk_payment_record_status"),
        CheckConstraint("purpose IN ('subscription','plan_change','fee')", name="chk_payment_record_purpose"),
        CheckConstraint("amount > 0", name="chk_payment_record_amount_positive"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reference = Column(String(150), nullable=False, unique=True, index=True)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    purpose = Column(String(20), nullable=False)
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=True)
    student_fee_id = Column(Uuid(as_uuid=True), ForeignKey("student_fees.id", ondelete="RESTRICT"), nullable=True)
    # Total charged through the gateway (fee + platform fee for fee payments)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.pending.value)
    gateway_reference = Column(String(150), nullable=True)
    channel = Column(String(50), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Authoritative sub-amounts and entity ids; see payment_ledger.PaymentMetadata
    payment_metadata = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant")
    plan = relationship("SubscriptionPlan")
    student_fee = relationship("StudentFee")
