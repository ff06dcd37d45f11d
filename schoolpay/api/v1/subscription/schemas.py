"""Subscription schemas."""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, model_validator

from schoolpay.core.enums import PlanType
from schoolpay.core.schemas import (
    PaymentInitializationResponse,
    PaymentRecordResponse,
    PaymentVerificationResponse,
)


class InitializeSubscriptionPaymentRequest(BaseModel):
    plan_id: Optional[UUID] = None
    plan_type: Optional[PlanType] = None
    email: Optional[EmailStr] = None  # defaults to the school's billing email
    callback_url: Optional[str] = None

    @model_validator(mode="after")
    def require_plan(self) -> "InitializeSubscriptionPaymentRequest":
        if self.plan_id is None and self.plan_type is None:
            raise ValueError("plan_id or plan_type is required")
        return self


class ChangePlanRequest(BaseModel):
    new_plan_type: Optional[PlanType] = None
    new_plan_id: Optional[UUID] = None
    email: Optional[EmailStr] = None
    callback_url: Optional[str] = None

    @model_validator(mode="after")
    def require_plan(self) -> "ChangePlanRequest":
        if self.new_plan_id is None and self.new_plan_type is None:
            raise ValueError("new_plan_type or new_plan_id is required")
        return self


class SubscriptionPaymentInitialization(PaymentInitializationResponse):
    plan_id: UUID
    plan_name: str


class ProrationResponse(BaseModel):
    is_upgrade: bool
    days_remaining: int
    unused_amount: Decimal
    credit_applied: Decimal
    amount_to_charge: Decimal
    immediate: bool
    effective_date: date
    new_end_date: date
    months_covered: int = 0
    remaining_credit: Decimal = Decimal("0")
    next_payment_date: Optional[date] = None

    class Config:
        from_attributes = True


class ScheduledPlanChangeResponse(BaseModel):
    id: UUID
    from_plan_id: UUID
    to_plan_id: UUID
    effective_date: date
    credit_amount: Decimal
    months_covered: int
    remaining_credit: Decimal
    status: str

    class Config:
        from_attributes = True


class PlanChangeResponse(BaseModel):
    scheduled: bool
    proration: ProrationResponse
    scheduled_change: Optional[ScheduledPlanChangeResponse] = None
    payment: Optional[SubscriptionPaymentInitialization] = None


class SubscriptionHistoryResponse(BaseModel):
    id: UUID
    plan_id: UUID
    plan_name: Optional[str] = None
    start_date: date
    end_date: date
    status: str


class SubscriptionStatusResponse(BaseModel):
    has_access: bool
    status: str
    days_remaining: int
    end_date: Optional[date] = None
    trial_end_date: Optional[date] = None
    message: str
    current_subscription: Optional[SubscriptionHistoryResponse] = None
    recent_payments: List[PaymentRecordResponse] = []
    scheduled_change: Optional[ScheduledPlanChangeResponse] = None


class SubscriptionVerificationResponse(PaymentVerificationResponse):
    subscription_status: str
    subscription_end_date: Optional[date] = None
