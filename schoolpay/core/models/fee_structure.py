"""Fee structure: a fee a school charges per session/term. Assignment to students happens elsewhere."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from schoolpay.db.session import Base


class FeeStructure(Base):
    __tablename__ = "fee_structures"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)  # fee category, e.g. "Tuition"
    amount = Column(Numeric(12, 2), nullable=False)
    session = Column(String(20), nullable=True)  # e.g. 2025/2026
    term = Column(String(20), nullable=True)
    due_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant")
