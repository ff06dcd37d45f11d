"""Subscription service: status, checkout and plan changes for the current school."""

from datetime import date
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.auth.schemas import CurrentUser
from schoolpay.core.enums import PaymentPurpose, PaymentStatus, PlanChangeType, SubscriptionStatus
from schoolpay.core.exceptions import ValidationError
from schoolpay.core.gateway_client import PaystackClient
from schoolpay.core.logging import get_logger
from schoolpay.core.models import PaymentRecord, SubscriptionHistory, SubscriptionPlan, Tenant
from schoolpay.core.money import compute_proration, days_until, to_minor_units
from schoolpay.core.payment_ledger import PaymentMetadata, create_pending_with_retry, list_for_tenant
from schoolpay.core.reconciliation import verify_payment
from schoolpay.core.schemas import PaymentRecordResponse
from schoolpay.core.subscription_service import (
    evaluate_access,
    get_active_subscription,
    get_scheduled_plan_change,
    get_tenant,
    list_subscription_history,
    resolve_plan,
    schedule_plan_change,
)

from .schemas import (
    ChangePlanRequest,
    InitializeSubscriptionPaymentRequest,
    PlanChangeResponse,
    ProrationResponse,
    ScheduledPlanChangeResponse,
    SubscriptionHistoryResponse,
    SubscriptionPaymentInitialization,
    SubscriptionStatusResponse,
    SubscriptionVerificationResponse,
)

logger = get_logger(__name__)

SUBSCRIPTION_PURPOSES = (PaymentPurpose.SUBSCRIPTION, PaymentPurpose.PLAN_CHANGE)


def _history_to_response(history: SubscriptionHistory) -> SubscriptionHistoryResponse:
    return SubscriptionHistoryResponse(
        id=history.id,
        plan_id=history.plan_id,
        plan_name=history.plan.name if history.plan else None,
        start_date=history.start_date,
        end_date=history.end_date,
        status=history.status,
    )


async def get_subscription_status(db: AsyncSession, tenant_id, today: date) -> SubscriptionStatusResponse:
    tenant = await get_tenant(db, tenant_id)
    access = await evaluate_access(db, tenant, today)
    current = await get_active_subscription(db, tenant_id)
    payments = await list_for_tenant(
        db, tenant_id, status_filter=PaymentStatus.success, purposes=SUBSCRIPTION_PURPOSES, limit=5
    )
    scheduled = await get_scheduled_plan_change(db, tenant_id)
    return SubscriptionStatusResponse(
        has_access=access.has_access,
        status=access.status.value,
        days_remaining=access.days_remaining,
        end_date=access.end_date,
        trial_end_date=tenant.trial_end_date,
        message=access.message,
        current_subscription=_history_to_response(current) if current and access.has_access else None,
        recent_payments=[PaymentRecordResponse.model_validate(p) for p in payments],
        scheduled_change=ScheduledPlanChangeResponse.model_validate(scheduled) if scheduled else None,
    )


async def get_subscription_history(db: AsyncSession, tenant_id) -> List[SubscriptionHistoryResponse]:
    await get_tenant(db, tenant_id)
    return [_history_to_response(h) for h in await list_subscription_history(db, tenant_id)]


async def _start_checkout(
    db: AsyncSession,
    gateway: PaystackClient,
    tenant: Tenant,
    plan: SubscriptionPlan,
    purpose: PaymentPurpose,
    change_type: PlanChangeType,
    amount,
    email: str,
    callback_url: Optional[str],
) -> SubscriptionPaymentInitialization:
    """Write the pending ledger row, then ask the gateway for a checkout URL."""
    metadata = PaymentMetadata(
        tenant_id=tenant.id,
        purpose=purpose,
        plan_id=plan.id,
        change_type=change_type,
    )
    record: PaymentRecord = await create_pending_with_retry(
        db,
        tenant_id=tenant.id,
        purpose=purpose,
        entity_id=plan.id,
        amount=amount,
        currency=plan.currency,
        metadata=metadata,
        plan_id=plan.id,
    )
    # A gateway failure leaves the record pending; the school simply starts again
    init = await gateway.initialize(
        email=email,
        amount_minor=to_minor_units(record.amount),
        reference=record.reference,
        metadata=metadata.to_json(),
        currency=plan.currency,
        callback_url=callback_url,
    )
    return SubscriptionPaymentInitialization(
        reference=record.reference,
        authorization_url=init.authorization_url,
        access_code=init.access_code,
        amount=record.amount,
        currency=record.currency,
        plan_id=plan.id,
        plan_name=plan.name,
    )


async def initialize_subscription_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    current_user: CurrentUser,
    payload: InitializeSubscriptionPaymentRequest,
    today: date,
) -> SubscriptionPaymentInitialization:
    tenant = await get_tenant(db, current_user.tenant_id)
    plan = await resolve_plan(db, plan_id=payload.plan_id, plan_type=payload.plan_type)
    renewing = (
        tenant.subscription_status == SubscriptionStatus.ACTIVE.value
        and tenant.subscription_end_date is not None
        and tenant.subscription_end_date >= today
    )
    return await _start_checkout(
        db,
        gateway,
        tenant,
        plan,
        PaymentPurpose.SUBSCRIPTION,
        PlanChangeType.RENEWAL if renewing else PlanChangeType.NEW,
        plan.amount,
        str(payload.email or current_user.email or tenant.email),
        payload.callback_url,
    )


async def change_plan(
    db: AsyncSession,
    gateway: PaystackClient,
    current_user: CurrentUser,
    payload: ChangePlanRequest,
    today: date,
) -> PlanChangeResponse:
    """
    Price a plan change against the unused part of the current period.

    Credit-funded downgrades are scheduled for the current end date; anything else
    is charged now and takes effect once the payment is verified.
    """
    tenant = await get_tenant(db, current_user.tenant_id)
    access = await evaluate_access(db, tenant, today)
    if access.status != SubscriptionStatus.ACTIVE:
        raise ValidationError("An active subscription is required to change plans")
    current = await get_active_subscription(db, tenant.id)
    if current is None:
        raise ValidationError("An active subscription is required to change plans")

    new_plan = await resolve_plan(db, plan_id=payload.new_plan_id, plan_type=payload.new_plan_type)
    proration = compute_proration(
        current.plan,
        new_plan,
        days_until(tenant.subscription_end_date, today),
        today,
        tenant.subscription_end_date,
    )
    proration_response = ProrationResponse.model_validate(proration)

    if not proration.immediate:
        change = await schedule_plan_change(db, tenant, current.plan, new_plan, proration)
        return PlanChangeResponse(
            scheduled=True,
            proration=proration_response,
            scheduled_change=ScheduledPlanChangeResponse.model_validate(change),
        )

    if proration.amount_to_charge <= 0:
        raise ValidationError("Unused credit exceeds the price of the new plan; switch plans at your next renewal")
    logger.info(
        "plan_change_checkout",
        extra={"tenant_id": str(tenant.id), "to_plan_id": str(new_plan.id), "is_upgrade": proration.is_upgrade},
    )
    payment = await _start_checkout(
        db,
        gateway,
        tenant,
        new_plan,
        PaymentPurpose.PLAN_CHANGE,
        PlanChangeType.UPGRADE if proration.is_upgrade else PlanChangeType.DOWNGRADE,
        proration.amount_to_charge,
        str(payload.email or current_user.email or tenant.email),
        payload.callback_url,
    )
    return PlanChangeResponse(scheduled=False, proration=proration_response, payment=payment)


async def verify_subscription_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    current_user: CurrentUser,
    reference: str,
    today: date,
) -> SubscriptionVerificationResponse:
    result = await verify_payment(db, gateway, reference, current_user.tenant_id, today, SUBSCRIPTION_PURPOSES)
    tenant = await db.get(Tenant, current_user.tenant_id, populate_existing=True)
    payment = result.payment
    return SubscriptionVerificationResponse(
        reference=result.reference,
        status=result.status.value,
        already_applied=result.already_applied,
        amount=payment.amount,
        currency=payment.currency,
        paid_at=payment.paid_at,
        channel=payment.channel,
        failure_reason=payment.failure_reason,
        subscription_status=tenant.subscription_status,
        subscription_end_date=tenant.subscription_end_date,
    )
