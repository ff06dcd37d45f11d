from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.api.v1.subscription.dependencies import require_active_subscription
from schoolpay.auth.dependencies import get_current_user
from schoolpay.auth.rbac import require_school_admin
from schoolpay.auth.schemas import CurrentUser
from schoolpay.core.enums import PaymentStatus
from schoolpay.core.exceptions import ServiceError
from schoolpay.core.gateway_client import PaystackClient, get_gateway_client
from schoolpay.core.schemas import ApiResponse
from schoolpay.db.session import get_db

from .schemas import (
    FeePaymentInitialization,
    FeePaymentResponse,
    FeeVerificationResponse,
    InitializeFeePaymentRequest,
    ManualPaymentCreate,
    MarkOverdueResponse,
    RejectManualPaymentRequest,
    VerifyManualPaymentRequest,
)
from .service import (
    approve_bank_transfer,
    decline_bank_transfer,
    get_payment_history,
    get_pending_payments,
    initialize_fee_payment,
    run_overdue_sweep,
    submit_bank_transfer,
    verify_fee_payment,
)

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


# --- Online payments ---
@router.post("/initialize-payment", response_model=ApiResponse[FeePaymentInitialization])
async def initialize_payment(
    payload: InitializeFeePaymentRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[FeePaymentInitialization]:
    """Start checkout for a student fee. The platform fee is added on top of the amount."""
    try:
        data = await initialize_fee_payment(db, gateway, current_user, payload, date.today())
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment initialized", data=data)


@router.get("/verify-payment", response_model=ApiResponse[FeeVerificationResponse])
async def verify_payment(
    reference: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[FeeVerificationResponse]:
    """Confirm a fee payment after the checkout redirect. Safe to call repeatedly."""
    try:
        data = await verify_fee_payment(db, gateway, current_user, reference, date.today())
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if data.status == PaymentStatus.success.value:
        return ApiResponse(message="Payment verified successfully", data=data)
    if data.status == PaymentStatus.pending.value:
        return ApiResponse(success=False, message="Payment has not been completed yet", data=data)
    raise HTTPException(
        status_code=http_status.HTTP_400_BAD_REQUEST,
        detail=data.failure_reason or "Payment was not successful",
    )


# --- Bank transfers ---
@router.post(
    "/submit-manual-payment",
    response_model=ApiResponse[FeePaymentResponse],
    status_code=http_status.HTTP_201_CREATED,
)
async def submit_manual_payment(
    payload: ManualPaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[FeePaymentResponse]:
    """Report a bank transfer. The balance changes only when an admin verifies it."""
    try:
        data = await submit_bank_transfer(db, current_user, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment submitted for verification", data=data)


@router.get(
    "/payments/pending",
    response_model=ApiResponse[List[FeePaymentResponse]],
    dependencies=[Depends(require_active_subscription)],
)
async def list_pending(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[List[FeePaymentResponse]]:
    """Bank transfers awaiting review. School admin only."""
    data = await get_pending_payments(db, current_user.tenant_id)
    return ApiResponse(message="Pending payments retrieved", data=data)


@router.post(
    "/payments/{payment_id}/verify",
    response_model=ApiResponse[FeePaymentResponse],
    dependencies=[Depends(require_active_subscription)],
)
async def verify_manual_payment(
    payment_id: UUID,
    payload: Optional[VerifyManualPaymentRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[FeePaymentResponse]:
    """Approve a bank transfer and apply it to the fee balance. School admin only."""
    try:
        data = await approve_bank_transfer(db, current_user, payment_id, payload.notes if payload else None)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment verified successfully", data=data)


@router.post(
    "/payments/{payment_id}/reject",
    response_model=ApiResponse[FeePaymentResponse],
    dependencies=[Depends(require_active_subscription)],
)
async def reject_manual_payment(
    payment_id: UUID,
    payload: RejectManualPaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[FeePaymentResponse]:
    """Reject a bank transfer. School admin only."""
    try:
        data = await decline_bank_transfer(db, current_user, payment_id, payload.reason)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment rejected", data=data)


# --- History and maintenance ---
@router.get("/payment-history/{student_id}", response_model=ApiResponse[List[FeePaymentResponse]])
async def payment_history(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[List[FeePaymentResponse]]:
    try:
        data = await get_payment_history(db, current_user, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment history retrieved", data=data)


@router.post(
    "/mark-overdue",
    response_model=ApiResponse[MarkOverdueResponse],
    dependencies=[Depends(require_active_subscription)],
)
async def mark_overdue(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[MarkOverdueResponse]:
    """Move unpaid fees past their due date to overdue. School admin only."""
    data = await run_overdue_sweep(db, current_user, date.today())
    return ApiResponse(message=f"{data.updated} fee(s) marked overdue", data=data)
