"""
Payment ledger: the single source of truth for "has this reference been applied".

- create_pending writes a pending PaymentRecord and commits it before the gateway
  is contacted, so a later verify or webhook can always find it.
- finalize is the idempotency boundary: one conditional UPDATE from pending to a
  terminal status. Only the caller that wins it may touch balances; everyone else
  gets AlreadyFinalized. It never commits; the caller owns the transaction.
"""

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Union
from uuid import UUID

from fastapi import status
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from pydantic import model_validator
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.enums import PaymentPurpose, PaymentStatus, PlanChangeType
from schoolpay.core.exceptions import DuplicateReference, NotFoundError, ServiceError, ValidationError
from schoolpay.core.logging import get_logger
from schoolpay.core.models import PaymentRecord
from schoolpay.core.money import to_money

logger = get_logger(__name__)

REFERENCE_PREFIXES = {
    PaymentPurpose.SUBSCRIPTION: "SUB",
    PaymentPurpose.PLAN_CHANGE: "CHG",
    PaymentPurpose.FEE: "FEE",
}


class PaymentMetadata(BaseModel):
    """Explicit shape of the metadata blob sent to the gateway and stored on the ledger row."""

    tenant_id: UUID
    purpose: PaymentPurpose
    plan_id: Optional[UUID] = None
    change_type: Optional[PlanChangeType] = None
    student_id: Optional[UUID] = None
    student_fee_id: Optional[UUID] = None
    fee_amount: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None

    class Config:
        extra = "ignore"

    @model_validator(mode="after")
    def check_purpose_fields(self) -> "PaymentMetadata":
        if self.purpose in (PaymentPurpose.SUBSCRIPTION, PaymentPurpose.PLAN_CHANGE):
            if self.plan_id is None:
                raise ValueError("plan_id is required for subscription payments")
        if self.purpose == PaymentPurpose.FEE:
            if self.student_id is None or self.student_fee_id is None or self.fee_amount is None:
                raise ValueError("student_id, student_fee_id and fee_amount are required for fee payments")
            if self.fee_amount <= 0:
                raise ValueError("fee_amount must be positive")
        return self

    def to_json(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


def parse_metadata(raw: Any) -> PaymentMetadata:
    """Validate a metadata blob on ingress. Malformed metadata is a ValidationError."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValidationError("Payment metadata is not valid JSON")
    if not isinstance(raw, dict):
        raise ValidationError("Payment metadata is missing")
    try:
        return PaymentMetadata.model_validate(raw)
    except SchemaValidationError as e:
        raise ValidationError(f"Malformed payment metadata: {e.errors()[0].get('msg', 'invalid')}")


@dataclass(frozen=True)
class LedgerOutcome:
    status: PaymentStatus
    gateway_reference: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class Finalized:
    record: PaymentRecord
    already_finalized: bool = False


@dataclass(frozen=True)
class AlreadyFinalized:
    record: PaymentRecord
    already_finalized: bool = True


FinalizeResult = Union[Finalized, AlreadyFinalized]


def generate_reference(
    purpose: PaymentPurpose,
    tenant_id: UUID,
    entity_id: UUID,
    now: Optional[datetime] = None,
) -> str:
    """<PURPOSE>_<tenant>_<entity>_<unix timestamp>_<random suffix>; unique without a central counter."""
    now = now or datetime.now(timezone.utc)
    prefix = REFERENCE_PREFIXES[PaymentPurpose(purpose)]
    return f"{prefix}_{tenant_id.hex}_{entity_id.hex}_{int(now.timestamp())}_{secrets.token_hex(3)}"


async def get_by_reference(db: AsyncSession, reference: str) -> Optional[PaymentRecord]:
    result = await db.execute(
        select(PaymentRecord)
        .where(PaymentRecord.reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_pending(
    db: AsyncSession,
    *,
    reference: str,
    tenant_id: UUID,
    purpose: PaymentPurpose,
    amount: Decimal,
    currency: str,
    metadata: PaymentMetadata,
    plan_id: Optional[UUID] = None,
    student_fee_id: Optional[UUID] = None,
) -> PaymentRecord:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    record = PaymentRecord(
        reference=reference,
        tenant_id=tenant_id,
        purpose=PaymentPurpose(purpose).value,
        plan_id=plan_id,
        student_fee_id=student_fee_id,
        amount=amount,
        currency=currency,
        status=PaymentStatus.pending.value,
        payment_metadata=metadata.to_json(),
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise DuplicateReference(reference)
    await db.refresh(record)
    logger.info(
        "payment_pending_created",
        extra={"reference": reference, "tenant_id": str(tenant_id), "purpose": record.purpose},
    )
    return record


async def create_pending_with_retry(
    db: AsyncSession,
    *,
    tenant_id: UUID,
    purpose: PaymentPurpose,
    entity_id: UUID,
    max_attempts: int = 5,
    **kwargs: Any,
) -> PaymentRecord:
    """Generate a reference and create the pending record, regenerating on collision."""
    for _ in range(max_attempts):
        reference = generate_reference(purpose, tenant_id, entity_id)
        try:
            return await create_pending(db, reference=reference, tenant_id=tenant_id, purpose=purpose, **kwargs)
        except DuplicateReference:
            logger.warning("payment_reference_collision", extra={"reference": reference})
            continue
    raise ServiceError(
        "Could not generate unique payment reference",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


async def finalize(db: AsyncSession, reference: str, outcome: LedgerOutcome) -> FinalizeResult:
    """
    Move a pending record to success or failed in one conditional UPDATE.

    rowcount == 1 means this caller won and must apply downstream effects;
    rowcount == 0 on an existing row means someone else already finalized it.
    """
    new_status = PaymentStatus(outcome.status)
    if new_status == PaymentStatus.pending:
        raise ValidationError("A payment can only be finalized as success or failed")

    stmt = (
        update(PaymentRecord)
        .where(
            PaymentRecord.reference == reference,
            PaymentRecord.status == PaymentStatus.pending.value,
        )
        .values(
            status=new_status.value,
            gateway_reference=outcome.gateway_reference,
            channel=outcome.channel,
            paid_at=(outcome.paid_at or datetime.now(timezone.utc)) if new_status == PaymentStatus.success else None,
            failure_reason=outcome.failure_reason,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    record = await get_by_reference(db, reference)
    if record is None:
        raise NotFoundError("Payment not found")
    if result.rowcount == 1:
        logger.info("payment_finalized", extra={"reference": reference, "status": new_status.value})
        return Finalized(record)
    logger.info("payment_already_finalized", extra={"reference": reference, "status": record.status})
    return AlreadyFinalized(record)


async def list_for_tenant(
    db: AsyncSession,
    tenant_id: UUID,
    status_filter: Optional[PaymentStatus] = None,
    purposes: Optional[Sequence[PaymentPurpose]] = None,
    limit: Optional[int] = None,
) -> List[PaymentRecord]:
    stmt = select(PaymentRecord).where(PaymentRecord.tenant_id == tenant_id)
    if status_filter is not None:
        stmt = stmt.where(PaymentRecord.status == PaymentStatus(status_filter).value)
    if purposes:
        stmt = stmt.where(PaymentRecord.purpose.in_([PaymentPurpose(p).value for p in purposes]))
    stmt = stmt.order_by(PaymentRecord.paid_at.desc().nullslast(), PaymentRecord.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
