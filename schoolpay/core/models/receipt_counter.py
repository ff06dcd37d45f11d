from sqlalchemy import Column, ForeignKey, Integer, Uuid

from schoolpay.db.session import Base


class ReceiptCounter(Base):
    """Per-tenant, per-year sequence behind receipt numbers (RCT/<year>/<seq>)."""

    __tablename__ = "receipt_counters"

    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
