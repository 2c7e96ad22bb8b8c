"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    EventOutcome,
    PlanAssignmentResult,
    ProvisioningResult,
    SyncPlanResult,
    ValidationResult,
)


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str = Field(alias="eventId")
    event_type: str = Field(alias="eventType")
    status: str
    reason: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: EventOutcome) -> "WebhookAckResponse":
        return cls(
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            status=outcome.status.value,
            reason=outcome.reason,
        )


class PlanSyncResponse(BaseModel):
    plan_id: str = Field(alias="planId")
    outcome: str
    provider_product_id: Optional[str] = Field(alias="providerProductId", default=None)
    provider_price_id: Optional[str] = Field(alias="providerPriceId", default=None)
    created: List[str] = Field(default_factory=list)
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SyncPlanResult) -> "PlanSyncResponse":
        return cls(
            plan_id=result.plan_id,
            outcome=result.outcome.value,
            provider_product_id=result.provider_product_id,
            provider_price_id=result.provider_price_id,
            created=list(result.created),
            message=result.reason,
        )


class PlanValidationResponse(BaseModel):
    plan_id: str = Field(alias="planId")
    valid: bool
    status: str
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ValidationResult) -> "PlanValidationResponse":
        return cls(
            plan_id=result.plan_id,
            valid=result.valid,
            status=result.status.value,
            reason=result.reason,
            details=dict(result.details),
        )


class UserRepairResponse(BaseModel):
    user_id: str = Field(alias="userId")
    success: bool
    partial: bool
    customer: str
    subscription: str
    provider_customer_id: Optional[str] = Field(alias="providerCustomerId", default=None)
    provider_subscription_id: Optional[str] = Field(alias="providerSubscriptionId", default=None)
    errors: Dict[str, str] = Field(default_factory=dict)
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ProvisioningResult) -> "UserRepairResponse":
        return cls(
            user_id=result.user_id,
            success=result.success,
            partial=result.partial,
            customer=result.customer.value,
            subscription=result.subscription.value,
            provider_customer_id=result.provider_customer_id,
            provider_subscription_id=result.provider_subscription_id,
            errors=dict(result.errors),
            message=result.reason,
        )


class PlanAssignmentRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PlanAssignmentResponse(BaseModel):
    user_id: str = Field(alias="userId")
    old_plan_id: str = Field(alias="oldPlanId")
    new_plan_id: str = Field(alias="newPlanId")
    provider_changes: List[str] = Field(alias="providerChanges", default_factory=list)
    provisioning: Optional[UserRepairResponse] = None
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PlanAssignmentResult) -> "PlanAssignmentResponse":
        return cls(
            user_id=result.user_id,
            old_plan_id=result.old_plan_id,
            new_plan_id=result.new_plan_id,
            provider_changes=list(result.provider_changes),
            provisioning=UserRepairResponse.from_result(result.provisioning) if result.provisioning else None,
            message=result.reason,
        )


__all__ = [
    "PlanAssignmentRequest",
    "PlanAssignmentResponse",
    "PlanSyncResponse",
    "PlanValidationResponse",
    "UserRepairResponse",
    "WebhookAckResponse",
]
