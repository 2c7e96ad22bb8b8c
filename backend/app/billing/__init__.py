"""Billing domain package keeping local plans and users in sync with the payment provider."""

from .errors import (
    BillingError,
    InconsistentState,
    MalformedEvent,
    NotFound,
    ProviderObjectMissing,
    ProviderRejected,
    ProviderUnavailable,
    SignatureVerificationError,
)
from .events import ProviderEvent, construct_event, parse_event
from .gateway import PaymentGateway, StripePaymentGateway
from .interfaces import BillingRepository
from .models import (
    AuditAction,
    AuditLogEntry,
    EventOutcome,
    EventOutcomeStatus,
    Plan,
    PlanAssignmentResult,
    PlanInterval,
    ProvisioningResult,
    ProvisioningStep,
    SubscriptionStatus,
    SyncPlanOutcome,
    SyncPlanResult,
    TransactionRecord,
    User,
    ValidationResult,
    ValidationStatus,
)
from .service import BillingSyncEngine
from .status_mapping import map_provider_status

__all__ = [
    "AuditAction",
    "AuditLogEntry",
    "BillingError",
    "BillingRepository",
    "BillingSyncEngine",
    "EventOutcome",
    "EventOutcomeStatus",
    "InconsistentState",
    "MalformedEvent",
    "NotFound",
    "PaymentGateway",
    "Plan",
    "PlanAssignmentResult",
    "PlanInterval",
    "ProviderEvent",
    "ProviderObjectMissing",
    "ProviderRejected",
    "ProviderUnavailable",
    "ProvisioningResult",
    "ProvisioningStep",
    "SignatureVerificationError",
    "StripePaymentGateway",
    "SubscriptionStatus",
    "SyncPlanOutcome",
    "SyncPlanResult",
    "TransactionRecord",
    "User",
    "ValidationResult",
    "ValidationStatus",
    "construct_event",
    "map_provider_status",
    "parse_event",
]
