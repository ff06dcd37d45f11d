from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.auth.rbac import require_platform_admin
from schoolpay.core.schemas import ApiResponse, SubscriptionPlanCreate, SubscriptionPlanResponse
from schoolpay.core.services import (
    ServiceError,
    create_subscription_plan,
    deactivate_subscription_plan,
    get_subscription_plan,
    list_subscription_plans,
)
from schoolpay.db.session import get_db

router = APIRouter(prefix="/api/v1/subscription-plans", tags=["subscription-plans"])


@router.get("", response_model=ApiResponse[List[SubscriptionPlanResponse]])
async def list_plans(
    include_inactive: bool = Query(False, description="Include retired plans"),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[List[SubscriptionPlanResponse]]:
    """List subscription plans. No authentication required."""
    plans = await list_subscription_plans(db, include_inactive)
    return ApiResponse(message="Subscription plans retrieved", data=plans)


@router.get("/{plan_id}", response_model=ApiResponse[SubscriptionPlanResponse])
async def get_plan(
    plan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[SubscriptionPlanResponse]:
    """Get a single subscription plan by id. No authentication required."""
    try:
        plan = await get_subscription_plan(db, plan_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Subscription plan retrieved", data=plan)


@router.post(
    "",
    response_model=ApiResponse[SubscriptionPlanResponse],
    status_code=http_status.HTTP_201_CREATED,
    dependencies=[Depends(require_platform_admin)],
)
async def create_plan(
    payload: SubscriptionPlanCreate,
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[SubscriptionPlanResponse]:
    """Create a subscription plan. Platform Admin only."""
    try:
        plan = await create_subscription_plan(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Subscription plan created", data=plan)


@router.patch(
    "/{plan_id}/deactivate",
    response_model=ApiResponse[SubscriptionPlanResponse],
    dependencies=[Depends(require_platform_admin)],
)
async def deactivate_plan(
    plan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[SubscriptionPlanResponse]:
    """Retire a subscription plan. Platform Admin only."""
    try:
        plan = await deactivate_subscription_plan(db, plan_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ApiResponse(message="Subscription plan deactivated", data=plan)
