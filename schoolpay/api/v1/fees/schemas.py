"""Fees schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from schoolpay.core.schemas import PaymentInitializationResponse, PaymentVerificationResponse


# --- Gateway payments ---
class InitializeFeePaymentRequest(BaseModel):
    student_id: UUID
    student_fee_id: UUID
    amount: Decimal = Field(..., gt=0, description="Amount applied to the fee, excluding the platform fee")
    email: Optional[EmailStr] = None  # payer email; defaults to the signed-in user's
    callback_url: Optional[str] = None


class FeePaymentInitialization(PaymentInitializationResponse):
    """amount is the total charged: fee_amount plus platform_fee."""

    student_fee_id: UUID
    fee_amount: Decimal
    platform_fee: Decimal
    outstanding_balance: Decimal


class FeeVerificationResponse(PaymentVerificationResponse):
    student_fee_id: UUID
    fee_amount: Optional[Decimal] = None
    amount_paid: Decimal
    balance: Decimal
    fee_status: str
    receipt_no: Optional[str] = None


# --- Manual bank transfers ---
class ManualPaymentCreate(BaseModel):
    student_id: UUID
    student_fee_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_date: date
    bank_name: Optional[str] = Field(None, max_length=100)
    account_number: Optional[str] = Field(None, max_length=20)
    transfer_receipt_url: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None


class VerifyManualPaymentRequest(BaseModel):
    notes: Optional[str] = None


class RejectManualPaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class FeePaymentResponse(BaseModel):
    id: UUID
    student_id: UUID
    student_fee_id: UUID
    receipt_no: str
    amount: Decimal
    method: str
    verification_status: str
    gateway_reference: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    transfer_receipt_url: Optional[str] = None
    notes: Optional[str] = None
    payment_date: date
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    class Config:
        from_attributes = True


class MarkOverdueResponse(BaseModel):
    as_of: date
    updated: int
