"""Student fee: a fee structure assigned to one student, with running payment totals."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from schoolpay.core.enums import StudentFeeStatus
from schoolpay.db.session import Base


class StudentFee(Base):
    """
    Fee owed by a student.

    amount_paid only grows and never exceeds amount_due. status is derived by
    money.derive_fee_status on every change; it is never set by hand.
    """

    __tablename__ = "student_fees"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','partial','paid','overdue','waived')",
            name="chk_student_fee_status",
        ),
        CheckConstraint("amount_paid >= 0", name="chk_student_fee_amount_paid_non_negative"),
        CheckConstraint("amount_paid <= amount_due", name="chk_student_fee_amount_paid_cap"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid(as_uuid=True), ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    fee_structure_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("fee_structures.id", ondelete="RESTRICT"),
        nullable=True,
    )
    amount_due = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=StudentFeeStatus.pending.value)
    is_waived = Column(Boolean, nullable=False, default=False)
    due_date = Column(Date, nullable=True)
    session = Column(String(20), nullable=True)
    term = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant")
    student = relationship("Student")
    fee_structure = relationship("FeeStructure")

    @property
    def balance(self):
        return self.amount_due - self.amount_paid
