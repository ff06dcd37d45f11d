"""Fee payment: a receipt against a student fee, from the gateway or a bank transfer."""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from schoolpay.core.enums import VerificationStatus
from schoolpay.db.session import Base


class FeePayment(Base):
    """
    Payment against a student fee. Supports partial payments.

    verified rows are reflected in StudentFee.amount_paid exactly once; pending bank
    transfers do not touch the balance until verified.
    """

    __tablename__ = "fee_payments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "receipt_no", name="uq_fee_payment_tenant_receipt"),
        UniqueConstraint("gateway_reference", name="uq_fee_payment_gateway_reference"),
        CheckConstraint("method IN ('bank_transfer','gateway')", name="chk_fee_payment_method"),
        CheckConstraint(
            "verification_status IN ('pending','verified','rejected')",
            name="chk_fee_payment_verification_status",
        ),
        CheckConstraint("amount > 0", name="chk_fee_payment_amount_positive"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid(as_uuid=True), ForeignKey("students.id", ondelete="RESTRICT"), nullable=False)
    student_fee_id = Column(Uuid(as_uuid=True), ForeignKey("student_fees.id", ondelete="RESTRICT"), nullable=False)
    receipt_no = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(20), nullable=False)
    verification_status = Column(String(20), nullable=False, default=VerificationStatus.pending.value)
    gateway_reference = Column(String(150), nullable=True)
    bank_name = Column(String(100), nullable=True)
    account_number = Column(String(20), nullable=True)
    transfer_receipt_url = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    payment_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(Uuid(as_uuid=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    tenant = relationship("Tenant")
    student = relationship("Student")
    student_fee = relationship("StudentFee", backref="payments")
