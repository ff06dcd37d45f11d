"""Money and proration arithmetic for billing. Pure functions, no I/O.

All amounts are Decimal. Rounding happens once, on the final charged amount,
using ROUND_HALF_UP to the currency minor unit.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from schoolpay.core.config import settings
from schoolpay.core.enums import StudentFeeStatus
from schoolpay.core.exceptions import BalanceExceeded, InvariantViolation, ValidationError

ZERO = Decimal("0")


def _exponent(exponent: Optional[int]) -> int:
    return settings.currency_minor_unit_exponent if exponent is None else exponent


def to_money(val: Any) -> Decimal:
    if val is None:
        return ZERO
    return val if isinstance(val, Decimal) else Decimal(str(val))


def quantize_money(val: Any, exponent: Optional[int] = None) -> Decimal:
    quantum = Decimal(1).scaleb(-_exponent(exponent))
    return to_money(val).quantize(quantum, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any, exponent: Optional[int] = None) -> int:
    """Convert a major-unit amount (e.g. naira) to integer minor units (kobo)."""
    exp = _exponent(exponent)
    return int(quantize_money(amount, exp).scaleb(exp))


def from_minor_units(minor: int, exponent: Optional[int] = None) -> Decimal:
    exp = _exponent(exponent)
    return quantize_money(Decimal(int(minor)).scaleb(-exp), exp)


def days_until(end_date: Optional[date], today: date) -> int:
    if end_date is None:
        return 0
    return (end_date - today).days


# --- Proration ---
@dataclass(frozen=True)
class ProrationResult:
    is_upgrade: bool
    days_remaining: int
    unused_amount: Decimal
    credit_applied: Decimal
    amount_to_charge: Decimal
    immediate: bool
    effective_date: date
    new_end_date: date
    months_covered: int = 0
    remaining_credit: Decimal = ZERO
    next_payment_date: Optional[date] = None

    def as_dict(self) -> dict:
        return {
            "is_upgrade": self.is_upgrade,
            "days_remaining": self.days_remaining,
            "unused_amount": str(self.unused_amount),
            "credit_applied": str(self.credit_applied),
            "amount_to_charge": str(self.amount_to_charge),
            "immediate": self.immediate,
            "effective_date": self.effective_date.isoformat(),
            "new_end_date": self.new_end_date.isoformat(),
            "months_covered": self.months_covered,
            "remaining_credit": str(self.remaining_credit),
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
        }


def _same_plan(old_plan: Any, new_plan: Any) -> bool:
    old_id = getattr(old_plan, "id", None)
    new_id = getattr(new_plan, "id", None)
    if old_id is not None and new_id is not None:
        return old_id == new_id
    return getattr(old_plan, "name", None) == getattr(new_plan, "name", None)


def compute_proration(
    old_plan: Any,
    new_plan: Any,
    days_remaining: int,
    today: date,
    current_end_date: Optional[date] = None,
) -> ProrationResult:
    """
    Price a mid-cycle plan change.

    Upgrade: charge the new plan less the unused value of the old one, cut over today.
    Downgrade: the unused value becomes credit. If it covers at least one full period
    of the new plan, nothing is charged and the change is scheduled for the current
    end date; otherwise the shortfall is charged and the change is immediate.
    """
    if _same_plan(old_plan, new_plan):
        raise ValidationError("You are already on this plan")
    if not old_plan.duration_days or not new_plan.duration_days:
        raise ValidationError("Plan duration must be positive")

    days = max(1, int(days_remaining))
    old_amount = to_money(old_plan.amount)
    new_amount = to_money(new_plan.amount)
    if new_amount <= 0:
        raise ValidationError("Plan amount must be positive")

    daily_rate_old = old_amount / Decimal(old_plan.duration_days)
    unused = daily_rate_old * days
    immediate_end = today + timedelta(days=new_plan.duration_days)

    if new_amount > old_amount:
        charge = max(ZERO, quantize_money(new_amount - unused))
        return ProrationResult(
            is_upgrade=True,
            days_remaining=days,
            unused_amount=quantize_money(unused),
            credit_applied=new_amount - charge,
            amount_to_charge=charge,
            immediate=True,
            effective_date=today,
            new_end_date=immediate_end,
        )

    credit = unused
    months_covered = int(credit // new_amount)
    if months_covered >= 1:
        effective = current_end_date if current_end_date and current_end_date > today else today
        next_payment = effective + timedelta(days=months_covered * new_plan.duration_days)
        return ProrationResult(
            is_upgrade=False,
            days_remaining=days,
            unused_amount=quantize_money(unused),
            credit_applied=quantize_money(months_covered * new_amount),
            amount_to_charge=ZERO,
            immediate=False,
            effective_date=effective,
            new_end_date=next_payment,
            months_covered=months_covered,
            remaining_credit=quantize_money(credit - months_covered * new_amount),
            next_payment_date=next_payment,
        )

    charge = max(ZERO, quantize_money(new_amount - credit))
    return ProrationResult(
        is_upgrade=False,
        days_remaining=days,
        unused_amount=quantize_money(unused),
        credit_applied=new_amount - charge,
        amount_to_charge=charge,
        immediate=True,
        effective_date=today,
        new_end_date=immediate_end,
    )


# --- Student fees ---
def derive_fee_status(
    amount_paid: Any,
    amount_due: Any,
    due_date: Optional[date] = None,
    is_waived: bool = False,
    today: Optional[date] = None,
) -> StudentFeeStatus:
    """Single source of truth for a student fee's status. Partial wins over overdue."""
    if is_waived:
        return StudentFeeStatus.waived
    paid = to_money(amount_paid)
    due = to_money(amount_due)
    if paid >= due:
        return StudentFeeStatus.paid
    if paid > 0:
        return StudentFeeStatus.partial
    if due_date is not None and today is not None and due_date < today:
        return StudentFeeStatus.overdue
    return StudentFeeStatus.pending


@dataclass(frozen=True)
class FeeApplication:
    amount: Decimal
    amount_paid: Decimal
    balance: Decimal
    status: StudentFeeStatus


def compute_fee_application(fee: Any, payment_amount: Any, today: Optional[date] = None) -> FeeApplication:
    if fee.is_waived or fee.status == StudentFeeStatus.waived.value:
        raise InvariantViolation("Payments cannot be accepted against a waived fee")
    amount = to_money(payment_amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if amount != quantize_money(amount):
        raise ValidationError("Payment amount has more precision than the currency allows")
    due = to_money(fee.amount_due)
    paid = to_money(fee.amount_paid)
    if amount > due - paid:
        raise BalanceExceeded("Payment amount exceeds outstanding balance")
    new_paid = paid + amount
    return FeeApplication(
        amount=amount,
        amount_paid=new_paid,
        balance=due - new_paid,
        status=derive_fee_status(new_paid, due, fee.due_date, False, today),
    )


# --- Settlement split ---
@dataclass(frozen=True)
class SettlementSplit:
    fee_amount: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    total_minor: int
    school_share_minor: int
    platform_share_minor: int
    # Passed to the gateway as transaction_charge when a subaccount receives the fee
    transaction_charge_minor: Optional[int]


def compute_settlement_split(fee_amount: Any, platform_fee_minor: int, has_subaccount: bool) -> SettlementSplit:
    fee_minor = to_minor_units(fee_amount)
    total_minor = fee_minor + platform_fee_minor
    if has_subaccount:
        school_share, platform_share, charge = fee_minor, platform_fee_minor, platform_fee_minor
    else:
        # Everything settles to the platform; the school is paid out manually
        school_share, platform_share, charge = 0, total_minor, None
    return SettlementSplit(
        fee_amount=quantize_money(fee_amount),
        platform_fee=from_minor_units(platform_fee_minor),
        total_amount=from_minor_units(total_minor),
        total_minor=total_minor,
        school_share_minor=school_share,
        platform_share_minor=platform_share,
        transaction_charge_minor=charge,
    )
