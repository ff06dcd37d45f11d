"""
Reconciliation pipeline shared by the client verify path and the gateway webhook.

Both paths end in reconcile_payment, which owns the only write transaction:

    finalize (pending -> success|failed)
      -> first winner and success: apply to subscription or fee ledger
      -> commit

No transaction is held open while the gateway is being called.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.enums import FeePaymentMethod, PaymentPurpose, PaymentStatus, PlanChangeType
from schoolpay.core.exceptions import (
    InvariantViolation,
    NotFoundError,
    ServiceError,
    SignatureInvalid,
    ValidationError,
)
from schoolpay.core.fee_reconciliation import apply_verified_payment, get_fee_payment_by_gateway_reference
from schoolpay.core.gateway_client import (
    GatewayVerification,
    PaystackClient,
    normalise_gateway_status,
    parse_gateway_datetime,
)
from schoolpay.core.logging import get_logger
from schoolpay.core.models import FeePayment, PaymentRecord, SubscriptionHistory, SubscriptionPlan, Tenant
from schoolpay.core.money import to_minor_units
from schoolpay.core.payment_ledger import (
    Finalized,
    LedgerOutcome,
    PaymentMetadata,
    finalize,
    get_by_reference,
    parse_metadata,
)
from schoolpay.core.subscription_service import apply_successful_subscription_payment

logger = get_logger(__name__)

CHARGE_SUCCESS_EVENT = "charge.success"


@dataclass(frozen=True)
class PaymentOutcome:
    """What the gateway says happened to a reference, from either entry point."""

    status: PaymentStatus
    amount_minor: Optional[int] = None
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    gateway_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_verification(cls, verification: GatewayVerification) -> "PaymentOutcome":
        return cls(
            status=PaymentStatus(verification.status),
            amount_minor=verification.amount_minor,
            paid_at=verification.paid_at,
            channel=verification.channel,
            gateway_reference=verification.gateway_reference,
            metadata=verification.metadata,
        )

    @classmethod
    def from_webhook(cls, data: Dict[str, Any]) -> "PaymentOutcome":
        metadata = data.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                raise ValidationError("Payment metadata is not valid JSON")
        status = data.get("status") or "success"
        if not isinstance(status, str):
            raise ValidationError("Payment status is not readable")
        return cls(
            status=PaymentStatus(normalise_gateway_status(status)),
            amount_minor=_parse_minor_amount(data.get("amount")),
            paid_at=parse_gateway_datetime(data.get("paid_at") or data.get("paidAt")),
            channel=data.get("channel"),
            gateway_reference=str(data["id"]) if data.get("id") is not None else None,
            metadata=metadata if isinstance(metadata, dict) else {},
        )


def _parse_minor_amount(value: Any) -> Optional[int]:
    """Webhook amounts are whole minor units; anything else is refused."""
    if value is None:
        return None
    if isinstance(value, bool) or isinstance(value, float) and not value.is_integer():
        raise ValidationError("Payment amount must be a whole number of minor units")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Payment amount must be a whole number of minor units")


@dataclass
class ReconciliationResult:
    reference: str
    status: PaymentStatus
    already_applied: bool
    payment: PaymentRecord
    fee_payment: Optional[FeePayment] = None
    subscription: Optional[SubscriptionHistory] = None
    message: str = ""


@dataclass
class WebhookAck:
    handled: bool
    message: str
    result: Optional[ReconciliationResult] = None
    # Well-signed but refused (metadata mismatch, balance exceeded); still acknowledged
    rejected: bool = False


def _check_metadata(record: PaymentRecord, reported: Dict[str, Any]) -> PaymentMetadata:
    """The ledger's metadata is authoritative; the gateway's copy must agree with it when present."""
    stored = parse_metadata(record.payment_metadata)
    if not reported:
        return stored
    echoed = parse_metadata(reported)
    if echoed.tenant_id != record.tenant_id or echoed.purpose.value != record.purpose:
        raise ValidationError("Payment metadata does not match the payment record")
    if echoed.purpose == PaymentPurpose.FEE and echoed.student_fee_id != stored.student_fee_id:
        raise ValidationError("Payment metadata does not match the payment record")
    if echoed.purpose != PaymentPurpose.FEE and echoed.plan_id != stored.plan_id:
        raise ValidationError("Payment metadata does not match the payment record")
    return stored


def _ledger_outcome(record: PaymentRecord, outcome: PaymentOutcome) -> LedgerOutcome:
    status = PaymentStatus(outcome.status)
    failure_reason = None
    if status == PaymentStatus.success and outcome.amount_minor is not None:
        expected = to_minor_units(record.amount)
        if outcome.amount_minor < expected:
            logger.error(
                "payment_amount_mismatch",
                extra={"reference": record.reference, "expected_minor": expected, "paid_minor": outcome.amount_minor},
            )
            status = PaymentStatus.failed
            failure_reason = f"Amount mismatch: expected {expected}, received {outcome.amount_minor}"
    elif status == PaymentStatus.failed:
        failure_reason = "Payment was not successful"
    return LedgerOutcome(
        status=status,
        gateway_reference=outcome.gateway_reference,
        channel=outcome.channel,
        paid_at=outcome.paid_at,
        failure_reason=failure_reason,
    )


async def _load_effects(db: AsyncSession, record: PaymentRecord):
    """Fetch what an already-finalized payment produced, so repeat callers see the same state."""
    if record.status != PaymentStatus.success.value:
        return None, None
    if record.purpose == PaymentPurpose.FEE.value:
        return await get_fee_payment_by_gateway_reference(db, record.reference), None
    history = (
        await db.execute(select(SubscriptionHistory).where(SubscriptionHistory.payment_id == record.id).limit(1))
    ).scalar_one_or_none()
    return None, history


async def _apply_subscription(
    db: AsyncSession,
    record: PaymentRecord,
    metadata: PaymentMetadata,
    today: date,
) -> SubscriptionHistory:
    tenant = await db.get(Tenant, record.tenant_id, with_for_update=True, populate_existing=True)
    plan = await db.get(SubscriptionPlan, record.plan_id or metadata.plan_id)
    if tenant is None or plan is None:
        raise InvariantViolation("Payment references a missing school or plan")
    change_type = metadata.change_type or PlanChangeType.NEW
    return await apply_successful_subscription_payment(db, tenant, plan, record, today, change_type)


async def _apply_fee(
    db: AsyncSession,
    record: PaymentRecord,
    metadata: PaymentMetadata,
    outcome: PaymentOutcome,
) -> FeePayment:
    notes = f"Paid online via {outcome.channel}" if outcome.channel else "Paid online"
    return await apply_verified_payment(
        db,
        tenant_id=record.tenant_id,
        student_fee_id=record.student_fee_id or metadata.student_fee_id,
        amount=metadata.fee_amount,
        method=FeePaymentMethod.GATEWAY,
        gateway_reference=record.reference,
        student_id=metadata.student_id,
        notes=notes,
        paid_at=record.paid_at,
    )


async def reconcile_payment(
    db: AsyncSession,
    reference: str,
    outcome: PaymentOutcome,
    today: date,
) -> ReconciliationResult:
    """
    Finalize a reference and, if this call won, apply it. One transaction.

    Any failure rolls back the finalize too, leaving the record pending for a later
    verify or webhook retry.
    """
    try:
        record = await get_by_reference(db, reference)
        if record is None:
            raise NotFoundError("Payment not found")
        metadata = _check_metadata(record, outcome.metadata)
        finalized = await finalize(db, reference, _ledger_outcome(record, outcome))
        record = finalized.record
        fee_payment = subscription = None
        if isinstance(finalized, Finalized):
            if record.status == PaymentStatus.success.value:
                if record.purpose == PaymentPurpose.FEE.value:
                    fee_payment = await _apply_fee(db, record, metadata, outcome)
                else:
                    subscription = await _apply_subscription(db, record, metadata, today)
        else:
            fee_payment, subscription = await _load_effects(db, record)
        await db.commit()
    except InvariantViolation as e:
        await db.rollback()
        logger.error("payment_invariant_violation", extra={"reference": reference, "error": e.message})
        raise
    except Exception:
        await db.rollback()
        raise

    already = not isinstance(finalized, Finalized)
    status = PaymentStatus(record.status)
    if status == PaymentStatus.success:
        message = "Payment verified successfully"
    else:
        message = record.failure_reason or "Payment was not successful"
    logger.info(
        "payment_reconciled",
        extra={"reference": reference, "status": status.value, "already_applied": already},
    )
    return ReconciliationResult(
        reference=reference,
        status=status,
        already_applied=already,
        payment=record,
        fee_payment=fee_payment,
        subscription=subscription,
        message=message,
    )


async def verify_payment(
    db: AsyncSession,
    gateway: PaystackClient,
    reference: str,
    tenant_id: UUID,
    today: date,
    purpose: Optional[Union[PaymentPurpose, tuple]] = None,
) -> ReconciliationResult:
    """Client-initiated verification after the checkout redirect."""
    record = await get_by_reference(db, reference)
    if record is None or record.tenant_id != tenant_id:
        raise NotFoundError("Payment not found")
    if purpose is not None:
        allowed = purpose if isinstance(purpose, tuple) else (purpose,)
        if record.purpose not in {PaymentPurpose(p).value for p in allowed}:
            raise NotFoundError("Payment not found")

    if record.status != PaymentStatus.pending.value:
        fee_payment, subscription = await _load_effects(db, record)
        await db.commit()
        status = PaymentStatus(record.status)
        return ReconciliationResult(
            reference=reference,
            status=status,
            already_applied=True,
            payment=record,
            fee_payment=fee_payment,
            subscription=subscription,
            message=(
                "Payment verified successfully"
                if status == PaymentStatus.success
                else record.failure_reason or "Payment was not successful"
            ),
        )

    # End the read transaction before the network call
    await db.commit()
    verification = await gateway.verify(reference)
    if verification.status == PaymentStatus.pending.value:
        logger.info(
            "payment_still_pending",
            extra={"reference": reference, "gateway_status": verification.gateway_status},
        )
        return ReconciliationResult(
            reference=reference,
            status=PaymentStatus.pending,
            already_applied=False,
            payment=record,
            message="Payment has not been completed yet",
        )
    return await reconcile_payment(db, reference, PaymentOutcome.from_verification(verification), today)


async def handle_webhook(
    db: AsyncSession,
    gateway: PaystackClient,
    raw_body: bytes,
    signature: Optional[str],
    today: date,
) -> WebhookAck:
    """
    Gateway push notification. Raises SignatureInvalid on a bad HMAC; everything else
    that is well-signed is acknowledged so the gateway does not retry forever.
    """
    if not gateway.verify_webhook_signature(raw_body, signature):
        logger.warning("webhook_signature_invalid", extra={"has_signature": bool(signature)})
        raise SignatureInvalid()

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("webhook_payload_unreadable")
        return WebhookAck(handled=False, message="Payload ignored")
    if not isinstance(payload, dict):
        return WebhookAck(handled=False, message="Payload ignored")

    event = payload.get("event")
    if event != CHARGE_SUCCESS_EVENT:
        logger.info("webhook_event_ignored", extra={"event": event})
        return WebhookAck(handled=False, message="Event ignored")

    data = payload.get("data") or {}
    reference = data.get("reference") if isinstance(data, dict) else None
    if not reference:
        logger.info("webhook_reference_missing")
        return WebhookAck(handled=False, message="Event ignored")

    record = await get_by_reference(db, reference)
    await db.commit()
    if record is None:
        logger.info("webhook_reference_unknown", extra={"reference": reference})
        return WebhookAck(handled=False, message="Unknown reference ignored")

    try:
        outcome = PaymentOutcome.from_webhook(data)
        if outcome.status == PaymentStatus.pending:
            logger.info("webhook_payment_not_final", extra={"reference": reference})
            return WebhookAck(handled=False, message="Event ignored")
        result = await reconcile_payment(db, reference, outcome, today)
    except ServiceError as e:
        logger.warning("webhook_payment_rejected", extra={"reference": reference, "error": e.message})
        return WebhookAck(handled=False, message=e.message, rejected=True)
    return WebhookAck(handled=True, message=result.message, result=result)
