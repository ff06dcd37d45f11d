from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from schoolpay.core.enums import PlanType

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope for every billing response: {success, message, data}."""

    success: bool = True
    message: str
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: Optional[Any] = None


class SubscriptionPlanCreate(BaseModel):
    """Payload to create a subscription plan."""

    name: str = Field(..., min_length=2, max_length=255)
    plan_type: PlanType
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    duration_days: int = Field(..., gt=0)
    currency: str = Field("NGN", min_length=3, max_length=3)
    description: Optional[str] = Field(None, max_length=500)


class SubscriptionPlanResponse(BaseModel):
    """Subscription plan response (list and get)."""

    id: UUID
    name: str
    plan_type: PlanType
    amount: Decimal
    duration_days: int
    currency: str
    description: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ----- Payments (shared by subscription and fee flows) -----
class PaymentRecordResponse(BaseModel):
    id: UUID
    reference: str
    purpose: str
    amount: Decimal
    currency: str
    status: str
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentInitializationResponse(BaseModel):
    reference: str
    authorization_url: str
    access_code: str
    amount: Decimal
    currency: str


class PaymentVerificationResponse(BaseModel):
    reference: str
    status: str
    already_applied: bool
    amount: Decimal
    currency: str
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    failure_reason: Optional[str] = None
