"""Ensures users have a provider customer and, on paid plans, a subscription."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .audit import AuditLog
from .catalog import PlanCatalogSync
from .errors import BillingError, NotFound, ProviderObjectMissing
from .gateway import PaymentGateway, subscription_idempotency_key
from .interfaces import BillingRepository
from .models import (
    AuditAction,
    Plan,
    PlanAssignmentResult,
    ProvisioningResult,
    ProvisioningStep,
    SubscriptionStatus,
    User,
)
from .status_mapping import map_provider_status

logger = logging.getLogger(__name__)

_STEP_WORDING = {
    ProvisioningStep.CREATED: "created",
    ProvisioningStep.ALREADY_PRESENT: "already present",
    ProvisioningStep.NOT_APPLICABLE: "not applicable",
    ProvisioningStep.FAILED: "failed",
}


class CustomerProvisioner:
    """Idempotent ensure/repair of a user's provider records.

    Safe to call on every plan assignment and from the explicit repair action:
    when everything is already in place it does nothing but report so.
    """

    def __init__(
        self,
        repository: BillingRepository,
        gateway: PaymentGateway,
        catalog: PlanCatalogSync,
        audit_log: AuditLog,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._catalog = catalog
        self._audit_log = audit_log

    def _load(self, user_id: str) -> Tuple[User, Plan]:
        user = self._repository.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        plan = self._repository.get_plan(user.plan_id)
        if plan is None:
            raise NotFound("plan", user.plan_id)
        return user, plan

    def ensure_customer_and_subscription(
        self,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> ProvisioningResult:
        user, plan = self._load(user_id)
        errors: Dict[str, str] = {}

        customer_step, user = self._ensure_customer(user, errors)
        subscription_step, user = self._ensure_subscription(user, plan, errors)

        reason = (
            f"customer {_STEP_WORDING[customer_step]}, "
            f"subscription {_STEP_WORDING[subscription_step]}"
        )
        if errors:
            reason = f"{reason} ({'; '.join(errors.values())})"

        created = [
            field
            for field, step in (("customer", customer_step), ("subscription", subscription_step))
            if step == ProvisioningStep.CREATED
        ]
        already_present = [
            field
            for field, step in (("customer", customer_step), ("subscription", subscription_step))
            if step == ProvisioningStep.ALREADY_PRESENT
        ]
        self._audit_log.record(
            AuditAction.FIX_USER_CUSTOMER,
            object_type="user",
            object_id=user.id,
            actor_id=actor_id,
            details={
                "created": created,
                "already_present": already_present,
                "errors": dict(errors),
                "provider_customer_id": user.provider_customer_id,
                "provider_subscription_id": user.provider_subscription_id,
                "plan_name": plan.name,
            },
        )
        return ProvisioningResult(
            user_id=user.id,
            customer=customer_step,
            subscription=subscription_step,
            provider_customer_id=user.provider_customer_id,
            provider_subscription_id=user.provider_subscription_id,
            errors=errors,
            reason=reason,
        )

    def _ensure_customer(self, user: User, errors: Dict[str, str]) -> Tuple[ProvisioningStep, User]:
        if user.provider_customer_id:
            return ProvisioningStep.ALREADY_PRESENT, user

        try:
            customer_id = self._gateway.find_or_create_customer(user.email, user.name, user.id)
        except BillingError as exc:
            logger.warning("Customer provisioning failed for user %s: %s", user.id, exc.message)
            errors["customer"] = f"{exc.code}: {exc.message}"
            return ProvisioningStep.FAILED, user

        stored = self._repository.set_user_customer_id(user.id, customer_id)
        if stored is None:
            raise NotFound("user", user.id)
        if stored.provider_customer_id != customer_id:
            logger.warning(
                "User %s gained customer %s concurrently; keeping it over %s",
                user.id,
                stored.provider_customer_id,
                customer_id,
            )
            return ProvisioningStep.ALREADY_PRESENT, stored
        return ProvisioningStep.CREATED, stored

    def _ensure_subscription(
        self,
        user: User,
        plan: Plan,
        errors: Dict[str, str],
    ) -> Tuple[ProvisioningStep, User]:
        if plan.is_free:
            return ProvisioningStep.NOT_APPLICABLE, user
        if user.provider_subscription_id:
            return ProvisioningStep.ALREADY_PRESENT, user
        if not plan.provider_price_id:
            errors["subscription"] = f"inconsistent_state: plan {plan.id} is not synced with the provider"
            return ProvisioningStep.FAILED, user
        if not user.provider_customer_id:
            errors.setdefault("subscription", "no provider customer to subscribe")
            return ProvisioningStep.FAILED, user

        try:
            subscription = self._gateway.create_subscription(
                user.provider_customer_id,
                plan.provider_price_id,
                {"user_id": user.id, "plan_id": plan.id},
                idempotency_key=subscription_idempotency_key(user, plan.provider_price_id),
            )
        except BillingError as exc:
            logger.warning("Subscription creation failed for user %s: %s", user.id, exc.message)
            errors["subscription"] = f"{exc.code}: {exc.message}"
            return ProvisioningStep.FAILED, user

        stored = self._repository.attach_subscription(
            user.id,
            subscription_id=subscription.id,
            status=map_provider_status(subscription.status),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
        if stored is not None:
            logger.info("Attached subscription %s to user %s", subscription.id, user.id)
            return ProvisioningStep.CREATED, stored

        current = self._repository.get_user(user.id)
        if current is not None and current.provider_subscription_id:
            if current.provider_subscription_id != subscription.id:
                logger.warning(
                    "User %s already has subscription %s; provider subscription %s is orphaned",
                    user.id,
                    current.provider_subscription_id,
                    subscription.id,
                )
            return ProvisioningStep.ALREADY_PRESENT, current
        errors["subscription"] = (
            f"inconsistent_state: user left plan {plan.id} while subscription {subscription.id} was created"
        )
        logger.warning("Subscription %s not attached to user %s", subscription.id, user.id)
        return ProvisioningStep.FAILED, current or user

    def assign_plan(
        self,
        user_id: str,
        plan_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> PlanAssignmentResult:
        """Move a user to ``plan_id`` and bring provider state in line with it."""

        user = self._repository.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        new_plan = self._repository.get_plan(plan_id)
        if new_plan is None:
            raise NotFound("plan", plan_id)

        changes: List[str] = []
        live_subscription = (
            user.provider_subscription_id
            if user.subscription_status == SubscriptionStatus.ACTIVE
            else None
        )

        if new_plan.is_free:
            if live_subscription:
                self._cancel_remote(live_subscription)
                changes.append(f"subscription {live_subscription} canceled")
            updated = self._repository.assign_plan(user.id, new_plan.id, clear_subscription=True)
        else:
            if not new_plan.provider_price_id:
                sync = self._catalog.sync_plan(new_plan.id, actor_id=actor_id)
                changes.append(sync.reason)
                new_plan = self._repository.get_plan(new_plan.id) or new_plan
            if live_subscription and user.plan_id != new_plan.id:
                self._gateway.update_subscription_price(live_subscription, new_plan.provider_price_id)
                changes.append(f"subscription {live_subscription} moved to price {new_plan.provider_price_id}")
            updated = self._repository.assign_plan(
                user.id,
                new_plan.id,
                clear_subscription=live_subscription is None and user.provider_subscription_id is not None,
            )
        if updated is None:
            raise NotFound("user", user.id)

        provisioning = self.ensure_customer_and_subscription(user.id, actor_id=actor_id)
        self._audit_log.record(
            AuditAction.UPDATE_USER_PLAN,
            object_type="user",
            object_id=user.id,
            actor_id=actor_id,
            details={
                "before": {"plan_id": user.plan_id, "provider_subscription_id": user.provider_subscription_id},
                "after": {
                    "plan_id": new_plan.id,
                    "provider_subscription_id": provisioning.provider_subscription_id,
                },
                "provider_changes": changes,
                "plan_name": new_plan.name,
            },
        )
        return PlanAssignmentResult(
            user_id=user.id,
            old_plan_id=user.plan_id,
            new_plan_id=new_plan.id,
            provider_changes=changes,
            provisioning=provisioning,
            reason=f"Plan changed to {new_plan.name or new_plan.id}; {provisioning.reason}",
        )

    def _cancel_remote(self, subscription_id: str) -> None:
        try:
            self._gateway.cancel_subscription(subscription_id)
        except ProviderObjectMissing:
            logger.info("Subscription %s already gone at the provider", subscription_id)


__all__ = ["CustomerProvisioner"]
