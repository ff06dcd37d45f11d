from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.enums import PaymentPurpose, PaymentStatus, PlanType
from schoolpay.core.exceptions import DuplicateReference, NotFoundError, ValidationError
from schoolpay.core.models import PaymentRecord
from schoolpay.core.payment_ledger import (
    AlreadyFinalized,
    Finalized,
    LedgerOutcome,
    PaymentMetadata,
    create_pending,
    create_pending_with_retry,
    finalize,
    generate_reference,
    parse_metadata,
)


def _metadata(tenant_id, plan_id) -> PaymentMetadata:
    return PaymentMetadata(tenant_id=tenant_id, purpose=PaymentPurpose.SUBSCRIPTION, plan_id=plan_id)


def test_reference_format() -> None:
    tenant_id, plan_id = uuid4(), uuid4()
    reference = generate_reference(PaymentPurpose.SUBSCRIPTION, tenant_id, plan_id)

    prefix, tenant_hex, plan_hex, timestamp, suffix = reference.split("_")
    assert prefix == "SUB"
    assert tenant_hex == tenant_id.hex
    assert plan_hex == plan_id.hex
    assert timestamp.isdigit()
    assert len(suffix) == 6


def test_metadata_requires_purpose_fields() -> None:
    with pytest.raises(ValidationError):
        parse_metadata({"tenant_id": str(uuid4()), "purpose": "fee", "student_id": str(uuid4())})
    with pytest.raises(ValidationError):
        parse_metadata("not json")

    raw = '{"tenant_id": "%s", "purpose": "subscription", "plan_id": "%s", "referrer": "x"}' % (uuid4(), uuid4())
    meta = parse_metadata(raw)
    assert meta.purpose == PaymentPurpose.SUBSCRIPTION


@pytest.mark.asyncio
async def test_duplicate_reference_is_rejected(db_session: AsyncSession, make_tenant, plans) -> None:
    tenant = await make_tenant()
    plan = plans[PlanType.MONTHLY]
    kwargs = dict(
        reference="SUB_fixed",
        tenant_id=tenant.id,
        purpose=PaymentPurpose.SUBSCRIPTION,
        amount=plan.amount,
        currency="NGN",
        metadata=_metadata(tenant.id, plan.id),
        plan_id=plan.id,
    )
    await create_pending(db_session, **kwargs)

    with pytest.raises(DuplicateReference):
        await create_pending(db_session, **kwargs)

    count = await db_session.scalar(select(func.count()).select_from(PaymentRecord))
    assert count == 1


@pytest.mark.asyncio
async def test_zero_amount_is_rejected(db_session: AsyncSession, make_tenant, plans) -> None:
    tenant = await make_tenant()
    plan = plans[PlanType.MONTHLY]
    with pytest.raises(ValidationError):
        await create_pending_with_retry(
            db_session,
            tenant_id=tenant.id,
            purpose=PaymentPurpose.SUBSCRIPTION,
            entity_id=plan.id,
            amount=Decimal("0"),
            currency="NGN",
            metadata=_metadata(tenant.id, plan.id),
            plan_id=plan.id,
        )


@pytest.mark.asyncio
async def test_finalize_is_idempotent(db_session: AsyncSession, make_tenant, plans) -> None:
    tenant = await make_tenant()
    plan = plans[PlanType.MONTHLY]
    record = await create_pending_with_retry(
        db_session,
        tenant_id=tenant.id,
        purpose=PaymentPurpose.SUBSCRIPTION,
        entity_id=plan.id,
        amount=plan.amount,
        currency="NGN",
        metadata=_metadata(tenant.id, plan.id),
        plan_id=plan.id,
    )
    assert record.status == PaymentStatus.pending.value

    first = await finalize(db_session, record.reference, LedgerOutcome(status=PaymentStatus.success, channel="card"))
    await db_session.commit()
    assert isinstance(first, Finalized)
    assert first.record.status == PaymentStatus.success.value
    assert first.record.paid_at is not None

    # A late, contradicting outcome changes nothing
    second = await finalize(db_session, record.reference, LedgerOutcome(status=PaymentStatus.failed))
    await db_session.commit()
    assert isinstance(second, AlreadyFinalized)
    assert second.record.status == PaymentStatus.success.value
    assert second.record.failure_reason is None


@pytest.mark.asyncio
async def test_finalize_unknown_reference(db_session: AsyncSession) -> None:
    with pytest.raises(NotFoundError):
        await finalize(db_session, "SUB_missing", LedgerOutcome(status=PaymentStatus.success))


@pytest.mark.asyncio
async def test_finalize_refuses_pending_outcome(db_session: AsyncSession) -> None:
    with pytest.raises(ValidationError):
        await finalize(db_session, "SUB_any", LedgerOutcome(status=PaymentStatus.pending))
