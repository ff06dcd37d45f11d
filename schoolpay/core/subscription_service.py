"""
Subscription state machine for tenants.

    trial   -> active   successful subscription payment
    trial   -> expired  trial_end_date passed (corrected lazily on read)
    active  -> expired  subscription_end_date passed (corrected lazily on read)
    expired -> active   new successful payment

There is no transition back to trial. Expiry corrections are conditional updates so
a read racing a payment can never undo an activation.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from schoolpay.core.config import settings
from schoolpay.core.enums import (
    PLAN_NAMES,
    PlanChangeType,
    PlanType,
    ScheduledChangeStatus,
    SubscriptionHistoryStatus,
    SubscriptionStatus,
)
from schoolpay.core.exceptions import NotFoundError, ValidationError
from schoolpay.core.logging import get_logger
from schoolpay.core.models import (
    PaymentRecord,
    ScheduledPlanChange,
    SubscriptionHistory,
    SubscriptionPlan,
    Tenant,
)
from schoolpay.core.money import ProrationResult, days_until

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessState:
    has_access: bool
    status: SubscriptionStatus
    days_remaining: int
    end_date: Optional[date]
    message: str


def start_trial(tenant: Tenant, today: date) -> None:
    """Assign the signup trial. Called once when the tenant is created."""
    tenant.subscription_status = SubscriptionStatus.TRIAL.value
    tenant.trial_end_date = today + timedelta(days=settings.trial_days)
    tenant.subscription_end_date = None


async def get_tenant(db: AsyncSession, tenant_id: UUID) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError("School not found")
    return tenant


async def resolve_plan(
    db: AsyncSession,
    plan_id: Optional[UUID] = None,
    plan_type: Optional[PlanType] = None,
) -> SubscriptionPlan:
    """Find an active plan by id, or by plan type through the catalogue names."""
    if plan_id is not None:
        stmt = select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
    elif plan_type is not None:
        stmt = select(SubscriptionPlan).where(SubscriptionPlan.name == PLAN_NAMES[PlanType(plan_type)])
    else:
        raise ValidationError("plan_id or plan_type is required")
    plan = (await db.execute(stmt.where(SubscriptionPlan.is_active.is_(True)))).scalar_one_or_none()
    if not plan:
        raise NotFoundError("Plan not found")
    return plan


async def get_active_subscription(db: AsyncSession, tenant_id: UUID) -> Optional[SubscriptionHistory]:
    result = await db.execute(
        select(SubscriptionHistory)
        .options(joinedload(SubscriptionHistory.plan))
        .where(
            SubscriptionHistory.tenant_id == tenant_id,
            SubscriptionHistory.status == SubscriptionHistoryStatus.active.value,
        )
        .order_by(SubscriptionHistory.end_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_scheduled_plan_change(db: AsyncSession, tenant_id: UUID) -> Optional[ScheduledPlanChange]:
    result = await db.execute(
        select(ScheduledPlanChange)
        .options(joinedload(ScheduledPlanChange.to_plan))
        .where(
            ScheduledPlanChange.tenant_id == tenant_id,
            ScheduledPlanChange.status == ScheduledChangeStatus.scheduled.value,
        )
        .order_by(ScheduledPlanChange.effective_date)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _expire(db: AsyncSession, tenant: Tenant, from_status: SubscriptionStatus, today: date) -> None:
    if from_status == SubscriptionStatus.TRIAL:
        lapsed = (Tenant.trial_end_date.is_(None)) | (Tenant.trial_end_date < today)
    else:
        lapsed = (Tenant.subscription_end_date.is_(None)) | (Tenant.subscription_end_date < today)
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant.id, Tenant.subscription_status == from_status.value, lapsed)
        .values(subscription_status=SubscriptionStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(tenant)
    if result.rowcount:
        logger.info(
            "subscription_expired",
            extra={"tenant_id": str(tenant.id), "from_status": from_status.value},
        )


async def evaluate_access(db: AsyncSession, tenant: Tenant, today: date) -> AccessState:
    """
    Derive access from stored status and the calendar.

    Lapsed trials and subscriptions are persisted as expired on the read; repeating
    the read is a no-op. A due scheduled downgrade is applied before the expiry check.
    """
    status = SubscriptionStatus(tenant.subscription_status)

    if status == SubscriptionStatus.TRIAL:
        if tenant.trial_end_date and tenant.trial_end_date >= today:
            remaining = days_until(tenant.trial_end_date, today)
            return AccessState(
                has_access=True,
                status=SubscriptionStatus.TRIAL,
                days_remaining=remaining,
                end_date=tenant.trial_end_date,
                message=f"Trial access - {remaining} days remaining",
            )
        await _expire(db, tenant, SubscriptionStatus.TRIAL, today)
        if tenant.subscription_status == SubscriptionStatus.EXPIRED.value:
            return AccessState(
                has_access=False,
                status=SubscriptionStatus.EXPIRED,
                days_remaining=0,
                end_date=tenant.trial_end_date,
                message="Free trial has expired. Please subscribe to continue.",
            )
        # A payment activated the tenant between our read and the update
        return await evaluate_access(db, tenant, today)

    if status == SubscriptionStatus.ACTIVE:
        await apply_due_plan_changes(db, tenant, today)
        if tenant.subscription_end_date and tenant.subscription_end_date >= today:
            return AccessState(
                has_access=True,
                status=SubscriptionStatus.ACTIVE,
                days_remaining=days_until(tenant.subscription_end_date, today),
                end_date=tenant.subscription_end_date,
                message="Active subscription",
            )
        await _expire(db, tenant, SubscriptionStatus.ACTIVE, today)
        if tenant.subscription_status != SubscriptionStatus.EXPIRED.value:
            return await evaluate_access(db, tenant, today)
        return AccessState(
            has_access=False,
            status=SubscriptionStatus.EXPIRED,
            days_remaining=0,
            end_date=tenant.subscription_end_date,
            message="Subscription has expired",
        )

    return AccessState(
        has_access=False,
        status=SubscriptionStatus.EXPIRED,
        days_remaining=0,
        end_date=tenant.subscription_end_date,
        message="Subscription required",
    )


async def _cancel_scheduled_changes(db: AsyncSession, tenant_id: UUID) -> None:
    await db.execute(
        update(ScheduledPlanChange)
        .where(
            ScheduledPlanChange.tenant_id == tenant_id,
            ScheduledPlanChange.status == ScheduledChangeStatus.scheduled.value,
        )
        .values(status=ScheduledChangeStatus.cancelled.value)
        .execution_options(synchronize_session=False)
    )


async def _supersede_active(db: AsyncSession, tenant_id: UUID) -> None:
    await db.execute(
        update(SubscriptionHistory)
        .where(
            SubscriptionHistory.tenant_id == tenant_id,
            SubscriptionHistory.status == SubscriptionHistoryStatus.active.value,
        )
        .values(status=SubscriptionHistoryStatus.superseded.value)
        .execution_options(synchronize_session=False)
    )


async def apply_successful_subscription_payment(
    db: AsyncSession,
    tenant: Tenant,
    plan: SubscriptionPlan,
    payment: PaymentRecord,
    today: date,
    change_type: PlanChangeType = PlanChangeType.NEW,
) -> SubscriptionHistory:
    """
    Activate or extend the tenant's subscription for a payment that just won finalize.

    Plan changes cut over today. New purchases and renewals extend from
    max(today, current end date) so unused paid time is kept. Does not commit.
    """
    if change_type in (PlanChangeType.UPGRADE, PlanChangeType.DOWNGRADE):
        start_date = today
    else:
        current_end = tenant.subscription_end_date
        start_date = max(today, current_end) if current_end else today
    end_date = start_date + timedelta(days=plan.duration_days)

    await _supersede_active(db, tenant.id)
    await _cancel_scheduled_changes(db, tenant.id)
    history = SubscriptionHistory(
        tenant_id=tenant.id,
        payment_id=payment.id,
        plan_id=plan.id,
        start_date=start_date,
        end_date=end_date,
        status=SubscriptionHistoryStatus.active.value,
    )
    db.add(history)
    tenant.subscription_status = SubscriptionStatus.ACTIVE.value
    tenant.subscription_end_date = end_date
    await db.flush()
    logger.info(
        "subscription_activated",
        extra={
            "tenant_id": str(tenant.id),
            "reference": payment.reference,
            "change_type": PlanChangeType(change_type).value,
            "end_date": end_date.isoformat(),
        },
    )
    return history


async def schedule_plan_change(
    db: AsyncSession,
    tenant: Tenant,
    from_plan: SubscriptionPlan,
    to_plan: SubscriptionPlan,
    proration: ProrationResult,
) -> ScheduledPlanChange:
    """Record a credit-funded downgrade. Replaces any change already scheduled."""
    await _cancel_scheduled_changes(db, tenant.id)
    change = ScheduledPlanChange(
        tenant_id=tenant.id,
        from_plan_id=from_plan.id,
        to_plan_id=to_plan.id,
        effective_date=proration.effective_date,
        credit_amount=proration.unused_amount,
        months_covered=proration.months_covered,
        remaining_credit=proration.remaining_credit,
        status=ScheduledChangeStatus.scheduled.value,
    )
    db.add(change)
    await db.commit()
    await db.refresh(change)
    logger.info(
        "plan_change_scheduled",
        extra={"tenant_id": str(tenant.id), "effective_date": proration.effective_date.isoformat()},
    )
    return change


async def apply_due_plan_changes(db: AsyncSession, tenant: Tenant, today: date) -> Optional[SubscriptionHistory]:
    """Switch to a scheduled plan once its effective date arrives. Applied at most once."""
    change = (
        await db.execute(
            select(ScheduledPlanChange).where(
                ScheduledPlanChange.tenant_id == tenant.id,
                ScheduledPlanChange.status == ScheduledChangeStatus.scheduled.value,
                ScheduledPlanChange.effective_date <= today,
            ).order_by(ScheduledPlanChange.effective_date).limit(1)
        )
    ).scalar_one_or_none()
    if not change:
        return None

    current = await get_active_subscription(db, tenant.id)
    claimed = await db.execute(
        update(ScheduledPlanChange)
        .where(
            ScheduledPlanChange.id == change.id,
            ScheduledPlanChange.status == ScheduledChangeStatus.scheduled.value,
        )
        .values(
            status=(ScheduledChangeStatus.applied if current else ScheduledChangeStatus.cancelled).value
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1 or current is None:
        await db.commit()
        return None

    to_plan = await db.get(SubscriptionPlan, change.to_plan_id)
    end_date = change.effective_date + timedelta(days=change.months_covered * to_plan.duration_days)
    await _supersede_active(db, tenant.id)
    history = SubscriptionHistory(
        tenant_id=tenant.id,
        # Funded by the credit of the payment behind the superseded period
        payment_id=current.payment_id,
        plan_id=to_plan.id,
        start_date=change.effective_date,
        end_date=end_date,
        status=SubscriptionHistoryStatus.active.value,
    )
    db.add(history)
    tenant.subscription_status = SubscriptionStatus.ACTIVE.value
    tenant.subscription_end_date = end_date
    await db.commit()
    await db.refresh(history)
    logger.info(
        "plan_change_applied",
        extra={"tenant_id": str(tenant.id), "to_plan_id": str(to_plan.id), "end_date": end_date.isoformat()},
    )
    return history


async def list_subscription_history(db: AsyncSession, tenant_id: UUID) -> List[SubscriptionHistory]:
    result = await db.execute(
        select(SubscriptionHistory)
        .options(joinedload(SubscriptionHistory.plan))
        .where(SubscriptionHistory.tenant_id == tenant_id)
        .order_by(SubscriptionHistory.start_date.desc(), SubscriptionHistory.end_date.desc())
    )
    return list(result.scalars().all())
