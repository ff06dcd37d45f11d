from typing import List
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.exceptions import ServiceError
from schoolpay.core.logging import get_logger
from schoolpay.core.models import SubscriptionPlan
from schoolpay.core.schemas import SubscriptionPlanCreate, SubscriptionPlanResponse

logger = get_logger(__name__)


# ----- Subscription plans -----
def _subscription_plan_to_response(plan: SubscriptionPlan) -> SubscriptionPlanResponse:
    return SubscriptionPlanResponse.model_validate(plan)


async def list_subscription_plans(
    db: AsyncSession,
    include_inactive: bool = False,
) -> List[SubscriptionPlanResponse]:
    """List subscription plans, cheapest first. No auth required."""
    stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.amount, SubscriptionPlan.name)
    if not include_inactive:
        stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
    result = await db.execute(stmt)
    plans = result.scalars().all()
    return [_subscription_plan_to_response(p) for p in plans]


async def get_subscription_plan(
    db: AsyncSession, plan_id: UUID
) -> SubscriptionPlanResponse:
    """Get a single subscription plan by id. No auth required."""
    plan = await db.get(SubscriptionPlan, plan_id)
    if not plan:
        raise ServiceError(
            f"Subscription plan not found: {plan_id}",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    return _subscription_plan_to_response(plan)


async def create_subscription_plan(
    db: AsyncSession, payload: SubscriptionPlanCreate
) -> SubscriptionPlanResponse:
    """Create a subscription plan. Platform Admin only."""
    existing = await db.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.name == payload.name)
    )
    if existing.scalar_one_or_none():
        raise ServiceError(
            f"Subscription plan '{payload.name}' already exists",
            status_code=status.HTTP_409_CONFLICT,
        )
    plan = SubscriptionPlan(
        name=payload.name,
        plan_type=payload.plan_type.value,
        amount=payload.amount,
        duration_days=payload.duration_days,
        currency=payload.currency.upper(),
        description=payload.description,
        is_active=True,
    )
    db.add(plan)
    await db.commit()
    await db.refresh(plan)
    logger.info("subscription_plan_created", extra={"plan_id": str(plan.id), "plan_name": plan.name})
    return _subscription_plan_to_response(plan)


async def deactivate_subscription_plan(db: AsyncSession, plan_id: UUID) -> SubscriptionPlanResponse:
    """
    Retire a plan. Plans are never edited or deleted once payments may reference
    them; a price change is a new plan plus deactivation of the old one.
    """
    plan = await db.get(SubscriptionPlan, plan_id)
    if not plan:
        raise ServiceError(
            f"Subscription plan not found: {plan_id}",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    if plan.is_active:
        plan.is_active = False
        await db.commit()
        await db.refresh(plan)
        logger.info("subscription_plan_deactivated", extra={"plan_id": str(plan.id)})
    return _subscription_plan_to_response(plan)
