"""Domain models for the billing synchronization engine."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Local three-state view of a user's subscription."""

    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PlanInterval(str, Enum):
    """Supported billing frequencies."""

    MONTH = "month"
    YEAR = "year"


class TransactionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Plan(BaseModel):
    """Catalog entry. The plan owns catalog data; provider ids are back-references."""

    id: str
    name: str = ""
    description: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    is_free: bool = False
    level: int = 0
    currency: str = "usd"
    interval: PlanInterval = PlanInterval.MONTH
    provider_product_id: Optional[str] = None
    provider_price_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return (value or "usd").lower()

    @property
    def amount_minor(self) -> int:
        """Price in minor currency units (cents)."""
        return int((self.price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def is_synced(self) -> bool:
        return bool(self.provider_product_id and self.provider_price_id)

    @property
    def is_partially_synced(self) -> bool:
        return bool(self.provider_product_id) != bool(self.provider_price_id)


class User(BaseModel):
    """Identity plus billing pointers for a local account."""

    id: str
    email: str
    name: str = ""
    plan_id: str
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    subscription_canceled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TransactionRecord(BaseModel):
    """Append-only financial fact derived from a provider payment event."""

    id: str
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    status: TransactionStatus = TransactionStatus.SUCCEEDED
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return (value or "usd").lower()


class AuditAction(str, Enum):
    """Actions recorded in the system log."""

    SYNC_PLAN = "sync_plan_with_provider"
    ROTATE_PLAN_PRICE = "rotate_plan_price"
    FIX_USER_CUSTOMER = "fix_user_provider_customer"
    UPDATE_USER_PLAN = "update_user_plan"
    CHECKOUT_COMPLETED = "webhook_checkout_completed"
    SUBSCRIPTION_CHANGED = "webhook_subscription_changed"
    SUBSCRIPTION_CANCELED = "webhook_subscription_canceled"
    TRANSACTION_RECORDED = "webhook_transaction_recorded"


SYSTEM_ACTOR = "system"


class AuditLogEntry(BaseModel):
    """Who changed what, when, with before/after details."""

    actor_id: str = SYSTEM_ACTOR
    action: AuditAction
    object_type: str
    object_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderCustomer(BaseModel):
    id: str
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProviderProduct(BaseModel):
    id: str
    name: str = ""
    active: bool = True
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ProviderPrice(BaseModel):
    id: str
    product_id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: str = ""
    interval: Optional[str] = None
    active: bool = True

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    """The provider's current view of a subscription."""

    id: str
    customer_id: Optional[str] = None
    status: str = ""
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    item_id: Optional[str] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class SyncPlanOutcome(str, Enum):
    SYNCED = "synced"
    ALREADY_SYNCED = "already_synced"
    NOT_APPLICABLE = "not_applicable"
    PRICE_ROTATED = "price_rotated"


class SyncPlanResult(BaseModel):
    """Outcome of a plan catalog sync or price rotation."""

    plan_id: str
    outcome: SyncPlanOutcome
    provider_product_id: Optional[str] = None
    provider_price_id: Optional[str] = None
    created: List[str] = Field(default_factory=list)
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProvisioningStep(str, Enum):
    CREATED = "created"
    ALREADY_PRESENT = "already_present"
    NOT_APPLICABLE = "not_applicable"
    FAILED = "failed"


class ProvisioningResult(BaseModel):
    """Per-field report of an ensure/repair run."""

    user_id: str
    customer: ProvisioningStep
    subscription: ProvisioningStep
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    errors: Dict[str, str] = Field(default_factory=dict)
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def partial(self) -> bool:
        """Some work succeeded while another step failed."""
        created = ProvisioningStep.CREATED in {self.customer, self.subscription}
        return bool(self.errors) and created


class PlanAssignmentResult(BaseModel):
    user_id: str
    old_plan_id: str
    new_plan_id: str
    provider_changes: List[str] = Field(default_factory=list)
    provisioning: Optional[ProvisioningResult] = None
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ValidationStatus(str, Enum):
    VALID = "valid"
    NOT_SYNCED = "not_synced"
    STALE_ID = "stale_id"
    MISMATCH = "mismatch"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"


class ValidationResult(BaseModel):
    plan_id: str
    valid: bool
    status: ValidationStatus
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class EventOutcomeStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


class EventOutcome(BaseModel):
    """What the processor did with one delivery."""

    event_id: str
    event_type: str
    status: EventOutcomeStatus
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "AuditAction",
    "AuditLogEntry",
    "EventOutcome",
    "EventOutcomeStatus",
    "Plan",
    "PlanAssignmentResult",
    "PlanInterval",
    "ProviderCustomer",
    "ProviderPrice",
    "ProviderProduct",
    "ProviderSubscription",
    "ProvisioningResult",
    "ProvisioningStep",
    "SYSTEM_ACTOR",
    "SubscriptionStatus",
    "SyncPlanOutcome",
    "SyncPlanResult",
    "TransactionRecord",
    "TransactionStatus",
    "User",
    "ValidationResult",
    "ValidationStatus",
]
