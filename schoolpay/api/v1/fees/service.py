"""Fees service: online fee checkout and verification, bank transfer review, overdue sweep."""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.auth.rbac import PARENT_ROLE
from schoolpay.auth.schemas import CurrentUser
from schoolpay.core.config import settings
from schoolpay.core.enums import PaymentPurpose
from schoolpay.core.exceptions import ServiceError, ValidationError
from schoolpay.core.fee_reconciliation import (
    get_student,
    get_student_fee_for_student,
    list_payment_history,
    list_pending_payments,
    mark_overdue_fees,
    reject_manual_payment,
    submit_manual_payment,
    verify_manual_payment,
)
from schoolpay.core.gateway_client import PaystackClient
from schoolpay.core.logging import get_logger
from schoolpay.core.models import Student, StudentFee
from schoolpay.core.money import compute_fee_application, compute_settlement_split, to_money
from schoolpay.core.payment_ledger import PaymentMetadata, create_pending_with_retry, parse_metadata
from schoolpay.core.reconciliation import verify_payment
from schoolpay.core.subscription_service import get_tenant

from .schemas import (
    FeePaymentInitialization,
    FeePaymentResponse,
    FeeVerificationResponse,
    InitializeFeePaymentRequest,
    ManualPaymentCreate,
    MarkOverdueResponse,
)

logger = get_logger(__name__)


def _ensure_can_pay_for(student: Student, current_user: CurrentUser) -> None:
    """Parents may only act on their own children; staff act on any student in the school."""
    if current_user.role == PARENT_ROLE and student.parent_user_id != current_user.id:
        raise ServiceError("You can only manage fees for your own children", status.HTTP_403_FORBIDDEN)


async def initialize_fee_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    current_user: CurrentUser,
    payload: InitializeFeePaymentRequest,
    today: date,
) -> FeePaymentInitialization:
    tenant_id = current_user.tenant_id
    student = await get_student(db, tenant_id, payload.student_id)
    _ensure_can_pay_for(student, current_user)
    fee = await get_student_fee_for_student(db, tenant_id, student.id, payload.student_fee_id)
    # Rejected here, before the ledger or the gateway sees anything
    compute_fee_application(fee, payload.amount, today)

    email = payload.email or current_user.email
    if not email:
        raise ValidationError("An email address is required for online payment")

    tenant = await get_tenant(db, tenant_id)
    subaccount = tenant.settlement_subaccount_code
    split = compute_settlement_split(payload.amount, settings.platform_fee_minor, bool(subaccount))
    metadata = PaymentMetadata(
        tenant_id=tenant_id,
        purpose=PaymentPurpose.FEE,
        student_id=student.id,
        student_fee_id=fee.id,
        fee_amount=split.fee_amount,
        platform_fee=split.platform_fee,
    )
    balance = fee.balance
    record = await create_pending_with_retry(
        db,
        tenant_id=tenant_id,
        purpose=PaymentPurpose.FEE,
        entity_id=fee.id,
        amount=split.total_amount,
        currency=settings.currency,
        metadata=metadata,
        student_fee_id=fee.id,
    )
    init = await gateway.initialize(
        email=str(email),
        amount_minor=split.total_minor,
        reference=record.reference,
        metadata=metadata.to_json(),
        currency=settings.currency,
        subaccount=subaccount,
        transaction_charge_minor=split.transaction_charge_minor,
        callback_url=payload.callback_url,
    )
    logger.info(
        "fee_payment_initialized",
        extra={
            "reference": record.reference,
            "tenant_id": str(tenant_id),
            "school_share_minor": split.school_share_minor,
            "platform_share_minor": split.platform_share_minor,
        },
    )
    return FeePaymentInitialization(
        reference=record.reference,
        authorization_url=init.authorization_url,
        access_code=init.access_code,
        amount=split.total_amount,
        currency=record.currency,
        student_fee_id=fee.id,
        fee_amount=split.fee_amount,
        platform_fee=split.platform_fee,
        outstanding_balance=to_money(balance),
    )


async def verify_fee_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    current_user: CurrentUser,
    reference: str,
    today: date,
) -> FeeVerificationResponse:
    result = await verify_payment(db, gateway, reference, current_user.tenant_id, today, PaymentPurpose.FEE)
    payment = result.payment
    metadata = parse_metadata(payment.payment_metadata)
    if current_user.role == PARENT_ROLE:
        student = await get_student(db, current_user.tenant_id, metadata.student_id)
        _ensure_can_pay_for(student, current_user)
    fee = await db.get(StudentFee, payment.student_fee_id or metadata.student_fee_id, populate_existing=True)
    return FeeVerificationResponse(
        reference=result.reference,
        status=result.status.value,
        already_applied=result.already_applied,
        amount=payment.amount,
        currency=payment.currency,
        paid_at=payment.paid_at,
        channel=payment.channel,
        failure_reason=payment.failure_reason,
        student_fee_id=fee.id,
        fee_amount=metadata.fee_amount,
        amount_paid=to_money(fee.amount_paid),
        balance=to_money(fee.balance),
        fee_status=fee.status,
        receipt_no=result.fee_payment.receipt_no if result.fee_payment else None,
    )


async def submit_bank_transfer(
    db: AsyncSession,
    current_user: CurrentUser,
    payload: ManualPaymentCreate,
) -> FeePaymentResponse:
    student = await get_student(db, current_user.tenant_id, payload.student_id)
    _ensure_can_pay_for(student, current_user)
    payment = await submit_manual_payment(
        db,
        current_user.tenant_id,
        student.id,
        payload.student_fee_id,
        payload.amount,
        payload.payment_date,
        bank_name=payload.bank_name,
        account_number=payload.account_number,
        transfer_receipt_url=payload.transfer_receipt_url,
        notes=payload.notes,
        submitted_by=current_user.id,
    )
    return FeePaymentResponse.model_validate(payment)


async def get_pending_payments(db: AsyncSession, tenant_id: UUID) -> List[FeePaymentResponse]:
    return [FeePaymentResponse.model_validate(p) for p in await list_pending_payments(db, tenant_id)]


async def approve_bank_transfer(
    db: AsyncSession,
    current_user: CurrentUser,
    payment_id: UUID,
    notes: Optional[str] = None,
) -> FeePaymentResponse:
    payment = await verify_manual_payment(db, current_user.tenant_id, payment_id, current_user.id, notes)
    return FeePaymentResponse.model_validate(payment)


async def decline_bank_transfer(
    db: AsyncSession,
    current_user: CurrentUser,
    payment_id: UUID,
    reason: str,
) -> FeePaymentResponse:
    payment = await reject_manual_payment(db, current_user.tenant_id, payment_id, reason, current_user.id)
    return FeePaymentResponse.model_validate(payment)


async def get_payment_history(
    db: AsyncSession,
    current_user: CurrentUser,
    student_id: UUID,
) -> List[FeePaymentResponse]:
    student = await get_student(db, current_user.tenant_id, student_id)
    _ensure_can_pay_for(student, current_user)
    payments = await list_payment_history(db, current_user.tenant_id, student.id)
    return [FeePaymentResponse.model_validate(p) for p in payments]


async def run_overdue_sweep(db: AsyncSession, current_user: CurrentUser, today: date) -> MarkOverdueResponse:
    updated = await mark_overdue_fees(db, current_user.tenant_id, today, changed_by=current_user.id)
    return MarkOverdueResponse(as_of=today, updated=updated)
