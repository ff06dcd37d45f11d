import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, String, Uuid

from schoolpay.core.enums import SubscriptionStatus
from schoolpay.db.session import Base


class Tenant(Base):
    """
    School (tenant) in the multi-tenant platform.

    - subscription_status: trial, active or expired. Mutated only by the subscription
      state machine; expired never returns to active except through a verified payment.
    - settlement_subaccount_code: gateway subaccount that receives fee payments directly.
      When unset, fee payments settle to the platform account.
    """

    __tablename__ = "tenants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    subscription_status = Column(String(20), nullable=False, default=SubscriptionStatus.TRIAL.value)
    subscription_end_date = Column(Date, nullable=True)
    trial_end_date = Column(Date, nullable=True)
    settlement_subaccount_code = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
