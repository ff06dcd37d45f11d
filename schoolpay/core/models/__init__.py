from schoolpay.core.models.tenant import Tenant
from schoolpay.core.models.student import Student
from schoolpay.core.models.subscription_plan import SubscriptionPlan
from schoolpay.core.models.fee_structure import FeeStructure
from schoolpay.core.models.student_fee import StudentFee
from schoolpay.core.models.payment_record import PaymentRecord
from schoolpay.core.models.subscription_history import SubscriptionHistory
from schoolpay.core.models.scheduled_plan_change import ScheduledPlanChange
from schoolpay.core.models.fee_payment import FeePayment
from schoolpay.core.models.receipt_counter import ReceiptCounter
from schoolpay.core.models.fee_audit_log import FeeAuditLog

__all__ = [
    "Tenant",
    "Student",
    "SubscriptionPlan",
    "FeeStructure",
    "StudentFee",
    "PaymentRecord",
    "SubscriptionHistory",
    "ScheduledPlanChange",
    "FeePayment",
    "ReceiptCounter",
    "FeeAuditLog",
]
