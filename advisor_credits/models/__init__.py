from advisor_credits.models.audit_log import AuditLog
from advisor_credits.models.credit_account import CreditAccount
from advisor_credits.models.credit_assignment import AssignmentStatus, CreditAssignment
from advisor_credits.models.credit_subscription import RecurringCreditSubscription, SubscriptionStatus
from advisor_credits.models.entitlement import Entitlement
from advisor_credits.models.failed_job import FailedJob
from advisor_credits.models.pricing import CreditPricing, CreditSubscriptionPlan
from advisor_credits.models.purchase_history import PurchaseHistoryEntry, PurchaseStatus

__all__ = [
    "AuditLog",
    "CreditAccount",
    "AssignmentStatus",
    "CreditAssignment",
    "RecurringCreditSubscription",
    "SubscriptionStatus",
    "Entitlement",
    "FailedJob",
    "CreditPricing",
    "CreditSubscriptionPlan",
    "PurchaseHistoryEntry",
    "PurchaseStatus",
]
