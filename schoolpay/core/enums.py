from enum import Enum


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


class PlanType(str, Enum):
    MONTHLY = "monthly"
    TERM = "term"
    YEARLY = "yearly"


# Plan names used by the catalogue; plan_type lookups resolve through this map
PLAN_NAMES = {
    PlanType.MONTHLY: "Monthly Plan",
    PlanType.TERM: "Per Term Plan",
    PlanType.YEARLY: "Yearly Plan",
}


class PaymentPurpose(str, Enum):
    SUBSCRIPTION = "subscription"
    PLAN_CHANGE = "plan_change"
    FEE = "fee"


class PaymentStatus(str, Enum):
    pending = "pending"
    success = "success"
    failed = "failed"


class SubscriptionHistoryStatus(str, Enum):
    active = "active"
    superseded = "superseded"


class PlanChangeType(str, Enum):
    NEW = "new"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class ScheduledChangeStatus(str, Enum):
    scheduled = "scheduled"
    applied = "applied"
    cancelled = "cancelled"


class StudentFeeStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    paid = "paid"
    overdue = "overdue"
    waived = "waived"


class FeePaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    GATEWAY = "gateway"


class VerificationStatus(str, Enum):
    pending = "pending"
    verified = "verified"
    rejected = "rejected"
