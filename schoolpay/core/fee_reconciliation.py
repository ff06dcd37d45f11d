"""Fee reconciliation: applies verified payments to student fee balances. Financial logic with audit."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.core.enums import FeePaymentMethod, StudentFeeStatus, VerificationStatus
from schoolpay.core.exceptions import NotFoundError, ValidationError
from schoolpay.core.logging import get_logger
from schoolpay.core.models import FeeAuditLog, FeePayment, ReceiptCounter, Student, StudentFee
from schoolpay.core.money import compute_fee_application, derive_fee_status, to_money

logger = get_logger(__name__)


# --- Audit helper ---
async def _log_fee_audit(
    db: AsyncSession,
    tenant_id: UUID,
    reference_table: str,
    reference_id: UUID,
    action_type: str,
    old_value: Optional[dict],
    new_value: Optional[dict],
    changed_by: Optional[UUID],
) -> None:
    log = FeeAuditLog(
        tenant_id=tenant_id,
        reference_table=reference_table,
        reference_id=reference_id,
        action_type=action_type,
        old_value=old_value,
        new_value=new_value,
        changed_by=changed_by,
    )
    db.add(log)


# --- Lookups ---
async def get_student(db: AsyncSession, tenant_id: UUID, student_id: UUID) -> Student:
    student = (
        await db.execute(select(Student).where(Student.id == student_id, Student.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if not student:
        raise NotFoundError("Student not found")
    return student


async def get_student_fee_for_student(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    student_fee_id: UUID,
    for_update: bool = False,
) -> StudentFee:
    stmt = select(StudentFee).where(
        StudentFee.id == student_fee_id,
        StudentFee.tenant_id == tenant_id,
        StudentFee.student_id == student_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    fee = (await db.execute(stmt)).scalar_one_or_none()
    if not fee:
        raise NotFoundError("Fee record not found")
    return fee


async def _get_fee_for_update(db: AsyncSession, tenant_id: UUID, student_fee_id: UUID) -> StudentFee:
    fee = (
        await db.execute(
            select(StudentFee)
            .where(StudentFee.id == student_fee_id, StudentFee.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not fee:
        raise NotFoundError("Fee record not found")
    return fee


async def get_fee_payment_by_gateway_reference(db: AsyncSession, gateway_reference: str) -> Optional[FeePayment]:
    return (
        await db.execute(select(FeePayment).where(FeePayment.gateway_reference == gateway_reference))
    ).scalar_one_or_none()


# --- Receipt numbers ---
async def next_receipt_number(db: AsyncSession, tenant_id: UUID, year: int) -> str:
    """Allocate the next sequential receipt number for a tenant and year: RCT/<year>/<00001>."""
    table = ReceiptCounter.__table__
    upsert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = (
        upsert(table)
        .values(tenant_id=tenant_id, year=year, last_value=1)
        .on_conflict_do_update(
            index_elements=[table.c.tenant_id, table.c.year],
            set_={"last_value": table.c.last_value + 1},
        )
        .returning(table.c.last_value)
    )
    value = (await db.execute(stmt)).scalar_one()
    return f"RCT/{year}/{value:05d}"


def _fee_snapshot(fee: StudentFee) -> dict:
    return {"amount_paid": str(to_money(fee.amount_paid)), "status": fee.status}


async def _apply_to_fee(
    db: AsyncSession,
    fee: StudentFee,
    amount: Decimal,
    today: date,
    changed_by: Optional[UUID],
) -> None:
    application = compute_fee_application(fee, amount, today)
    old = _fee_snapshot(fee)
    fee.amount_paid = application.amount_paid
    fee.status = application.status.value
    await _log_fee_audit(
        db, fee.tenant_id, "student_fees", fee.id,
        "UPDATE",
        old,
        {"amount_paid": str(application.amount_paid), "status": application.status.value},
        changed_by,
    )


# --- Gateway payments ---
async def apply_verified_payment(
    db: AsyncSession,
    tenant_id: UUID,
    student_fee_id: UUID,
    amount: Decimal,
    method: FeePaymentMethod,
    gateway_reference: Optional[str],
    student_id: Optional[UUID] = None,
    notes: Optional[str] = None,
    paid_at: Optional[datetime] = None,
    changed_by: Optional[UUID] = None,
) -> FeePayment:
    """
    Record a verified payment and raise the fee's amount_paid by exactly its amount.

    A gateway reference that already has a FeePayment returns that row untouched.
    Runs inside the caller's transaction; does not commit.
    """
    if gateway_reference:
        existing = await get_fee_payment_by_gateway_reference(db, gateway_reference)
        if existing:
            logger.info("fee_payment_already_recorded", extra={"gateway_reference": gateway_reference})
            return existing

    fee = await _get_fee_for_update(db, tenant_id, student_fee_id)
    if student_id is not None and fee.student_id != student_id:
        raise ValidationError("Fee does not belong to this student")

    paid_at = paid_at or datetime.now(timezone.utc)
    payment_day = paid_at.date()
    await _apply_to_fee(db, fee, to_money(amount), payment_day, changed_by)

    payment = FeePayment(
        tenant_id=tenant_id,
        student_id=fee.student_id,
        student_fee_id=fee.id,
        receipt_no=await next_receipt_number(db, tenant_id, payment_day.year),
        amount=to_money(amount),
        method=FeePaymentMethod(method).value,
        verification_status=VerificationStatus.verified.value,
        gateway_reference=gateway_reference,
        notes=notes,
        payment_date=payment_day,
        verified_at=paid_at,
        verified_by=changed_by,
    )
    db.add(payment)
    await db.flush()
    await _log_fee_audit(
        db, tenant_id, "fee_payments", payment.id,
        "CREATE",
        None,
        {
            "amount": str(payment.amount),
            "method": payment.method,
            "receipt_no": payment.receipt_no,
            "gateway_reference": gateway_reference,
        },
        changed_by,
    )
    logger.info(
        "fee_payment_applied",
        extra={
            "tenant_id": str(tenant_id),
            "student_fee_id": str(fee.id),
            "receipt_no": payment.receipt_no,
            "fee_status": fee.status,
        },
    )
    return payment


# --- Manual bank transfers ---
async def submit_manual_payment(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    student_fee_id: UUID,
    amount: Decimal,
    payment_date: date,
    bank_name: Optional[str] = None,
    account_number: Optional[str] = None,
    transfer_receipt_url: Optional[str] = None,
    notes: Optional[str] = None,
    submitted_by: Optional[UUID] = None,
) -> FeePayment:
    """Record a bank transfer awaiting verification. The fee balance is not touched."""
    fee = await get_student_fee_for_student(db, tenant_id, student_id, student_fee_id)
    # Validated now so an impossible transfer is refused before an admin sees it
    compute_fee_application(fee, amount)

    payment = FeePayment(
        tenant_id=tenant_id,
        student_id=student_id,
        student_fee_id=student_fee_id,
        receipt_no=await next_receipt_number(db, tenant_id, payment_date.year),
        amount=to_money(amount),
        method=FeePaymentMethod.BANK_TRANSFER.value,
        verification_status=VerificationStatus.pending.value,
        bank_name=(bank_name or "").strip() or None,
        account_number=(account_number or "").strip() or None,
        transfer_receipt_url=transfer_receipt_url,
        notes=(notes or "").strip() or None,
        payment_date=payment_date,
    )
    db.add(payment)
    await db.flush()
    await _log_fee_audit(
        db, tenant_id, "fee_payments", payment.id,
        "CREATE",
        None,
        {"amount": str(payment.amount), "method": payment.method, "verification_status": payment.verification_status},
        submitted_by,
    )
    await db.commit()
    await db.refresh(payment)
    logger.info(
        "manual_payment_submitted",
        extra={"tenant_id": str(tenant_id), "student_fee_id": str(student_fee_id), "receipt_no": payment.receipt_no},
    )
    return payment


async def _claim_pending_transfer(
    db: AsyncSession,
    tenant_id: UUID,
    payment_id: UUID,
    new_status: VerificationStatus,
    values: dict,
) -> FeePayment:
    """Move a pending bank transfer to verified or rejected; only one admin action wins."""
    payment = (
        await db.execute(select(FeePayment).where(FeePayment.id == payment_id, FeePayment.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.method != FeePaymentMethod.BANK_TRANSFER.value:
        raise ValidationError("Only bank transfer payments can be reviewed")
    result = await db.execute(
        update(FeePayment)
        .where(
            FeePayment.id == payment_id,
            FeePayment.verification_status == VerificationStatus.pending.value,
        )
        .values(verification_status=new_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ValidationError("Payment has already been processed")
    await db.refresh(payment)
    return payment


async def verify_manual_payment(
    db: AsyncSession,
    tenant_id: UUID,
    payment_id: UUID,
    verified_by: Optional[UUID],
    notes: Optional[str] = None,
    today: Optional[date] = None,
) -> FeePayment:
    """Admin approval of a bank transfer: applies its amount to the fee exactly once."""
    values = {"verified_at": datetime.now(timezone.utc), "verified_by": verified_by}
    if notes:
        values["notes"] = notes.strip()
    try:
        payment = await _claim_pending_transfer(db, tenant_id, payment_id, VerificationStatus.verified, values)
        fee = await _get_fee_for_update(db, tenant_id, payment.student_fee_id)
        await _apply_to_fee(db, fee, to_money(payment.amount), today or date.today(), verified_by)
        await _log_fee_audit(
            db, tenant_id, "fee_payments", payment.id,
            "VERIFY",
            {"verification_status": VerificationStatus.pending.value},
            {"verification_status": VerificationStatus.verified.value},
            verified_by,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(payment)
    logger.info(
        "manual_payment_verified",
        extra={"tenant_id": str(tenant_id), "payment_id": str(payment_id), "fee_status": fee.status},
    )
    return payment


async def reject_manual_payment(
    db: AsyncSession,
    tenant_id: UUID,
    payment_id: UUID,
    reason: str,
    rejected_by: Optional[UUID],
) -> FeePayment:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    payment = await _claim_pending_transfer(
        db, tenant_id, payment_id, VerificationStatus.rejected,
        {"rejection_reason": reason, "verified_by": rejected_by, "verified_at": datetime.now(timezone.utc)},
    )
    await _log_fee_audit(
        db, tenant_id, "fee_payments", payment.id,
        "REJECT",
        {"verification_status": VerificationStatus.pending.value},
        {"verification_status": VerificationStatus.rejected.value, "rejection_reason": reason},
        rejected_by,
    )
    await db.commit()
    await db.refresh(payment)
    logger.info("manual_payment_rejected", extra={"tenant_id": str(tenant_id), "payment_id": str(payment_id)})
    return payment


# --- Overdue sweep ---
async def mark_overdue_fees(
    db: AsyncSession,
    tenant_id: UUID,
    today: date,
    changed_by: Optional[UUID] = None,
) -> int:
    """Move unpaid fees past their due date to overdue. Returns how many changed."""
    fees = (
        await db.execute(
            select(StudentFee).where(
                StudentFee.tenant_id == tenant_id,
                StudentFee.status == StudentFeeStatus.pending.value,
                StudentFee.is_waived.is_(False),
                StudentFee.due_date.is_not(None),
                StudentFee.due_date < today,
            )
        )
    ).scalars().all()
    changed = 0
    for fee in fees:
        new_status = derive_fee_status(fee.amount_paid, fee.amount_due, fee.due_date, fee.is_waived, today)
        if new_status.value == fee.status:
            continue
        old = _fee_snapshot(fee)
        fee.status = new_status.value
        await _log_fee_audit(
            db, tenant_id, "student_fees", fee.id,
            "UPDATE", old, {"status": new_status.value}, changed_by,
        )
        changed += 1
    await db.commit()
    logger.info("overdue_sweep_completed", extra={"tenant_id": str(tenant_id), "updated": changed})
    return changed


# --- Listings ---
async def list_payment_history(db: AsyncSession, tenant_id: UUID, student_id: UUID) -> List[FeePayment]:
    result = await db.execute(
        select(FeePayment)
        .where(FeePayment.tenant_id == tenant_id, FeePayment.student_id == student_id)
        .order_by(FeePayment.payment_date.desc(), FeePayment.created_at.desc())
    )
    return list(result.scalars().all())


async def list_pending_payments(db: AsyncSession, tenant_id: UUID) -> List[FeePayment]:
    result = await db.execute(
        select(FeePayment)
        .where(
            FeePayment.tenant_id == tenant_id,
            FeePayment.verification_status == VerificationStatus.pending.value,
        )
        .order_by(FeePayment.created_at)
    )
    return list(result.scalars().all())
