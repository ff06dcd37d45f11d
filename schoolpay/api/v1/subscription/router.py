from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.auth.dependencies import get_current_user
from schoolpay.auth.rbac import require_school_admin
from schoolpay.auth.schemas import CurrentUser
from schoolpay.core.enums import PaymentStatus
from schoolpay.core.exceptions import ServiceError
from schoolpay.core.gateway_client import PaystackClient, get_gateway_client
from schoolpay.core.schemas import ApiResponse
from schoolpay.db.session import get_db

from .schemas import (
    ChangePlanRequest,
    InitializeSubscriptionPaymentRequest,
    PlanChangeResponse,
    SubscriptionHistoryResponse,
    SubscriptionPaymentInitialization,
    SubscriptionStatusResponse,
    SubscriptionVerificationResponse,
)
from .service import (
    change_plan,
    get_subscription_history,
    get_subscription_status,
    initialize_subscription_payment,
    verify_subscription_payment,
)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


@router.get("/status", response_model=ApiResponse[SubscriptionStatusResponse])
async def subscription_status(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[SubscriptionStatusResponse]:
    """Access state of the current school, with its active period and recent payments."""
    try:
        data = await get_subscription_status(db, current_user.tenant_id, date.today())
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message=data.message, data=data)


@router.get("/history", response_model=ApiResponse[List[SubscriptionHistoryResponse]])
async def subscription_history(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[List[SubscriptionHistoryResponse]]:
    """Every subscription period of the current school, newest first. School admin only."""
    try:
        data = await get_subscription_history(db, current_user.tenant_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Subscription history retrieved", data=data)


@router.post("/initialize-payment", response_model=ApiResponse[SubscriptionPaymentInitialization])
async def initialize_payment(
    payload: InitializeSubscriptionPaymentRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[SubscriptionPaymentInitialization]:
    """Start checkout for a subscription plan. School admin only."""
    try:
        data = await initialize_subscription_payment(db, gateway, current_user, payload, date.today())
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Payment initialized", data=data)


@router.post("/change-plan", response_model=ApiResponse[PlanChangeResponse])
async def change_subscription_plan(
    payload: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[PlanChangeResponse]:
    """Upgrade or downgrade mid-cycle. School admin only."""
    try:
        data = await change_plan(db, gateway, current_user, payload, date.today())
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if data.scheduled:
        message = f"Plan change scheduled for {data.proration.effective_date.isoformat()}"
    else:
        message = "Payment initialized for plan change"
    return ApiResponse(message=message, data=data)


@router.get("/verify-payment", response_model=ApiResponse[SubscriptionVerificationResponse])
async def verify_payment(
    reference: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway_client),
    current_user: CurrentUser = Depends(require_school_admin),
) -> ApiResponse[SubscriptionVerificationResponse]:
    """Confirm a subscription payment after the checkout redirect. Safe to call repeatedly."""
    try:
        data = await verify_subscription_payment(db, gateway, current_user, reference, date.today())
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
