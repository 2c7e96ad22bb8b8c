"""Keeps paid plans mapped to a provider product and price."""
from __future__ import annotations

import logging
from typing import List, Optional

from .audit import AuditLog
from .errors import InconsistentState, NotFound, ProviderObjectMissing
from .gateway import PaymentGateway
from .interfaces import BillingRepository
from .models import AuditAction, Plan, SyncPlanOutcome, SyncPlanResult
from .validator import price_mismatches

logger = logging.getLogger(__name__)


class PlanCatalogSync:
    """Creates provider objects on first use and freezes the mapping afterwards.

    Each provider id is written to the plan right after the call that minted
    it, so an interrupted run resumes from the stored ids instead of creating
    duplicates.
    """

    def __init__(self, repository: BillingRepository, gateway: PaymentGateway, audit_log: AuditLog) -> None:
        self._repository = repository
        self._gateway = gateway
        self._audit_log = audit_log

    def _load_plan(self, plan_id: str) -> Plan:
        plan = self._repository.get_plan(plan_id)
        if plan is None:
            raise NotFound("plan", plan_id)
        return plan

    def sync_plan(self, plan_id: str, *, actor_id: Optional[str] = None) -> SyncPlanResult:
        plan = self._load_plan(plan_id)
        if plan.is_free:
            return SyncPlanResult(
                plan_id=plan.id,
                outcome=SyncPlanOutcome.NOT_APPLICABLE,
                reason="Free plans are never synced with the provider",
            )

        created: List[str] = []
        if not plan.provider_product_id and plan.provider_price_id:
            plan = self._adopt_product_from_price(plan)

        if not plan.provider_product_id:
            product = self._gateway.create_product(plan)
            plan = self._store_product_id(plan.id, product.id)
            if plan.provider_product_id == product.id:
                created.append("product")

        if not plan.provider_price_id:
            price = self._gateway.create_price(plan.provider_product_id, plan)
            plan = self._store_price_id(plan.id, price.id, expected=None)
            if plan.provider_price_id == price.id:
                created.append("price")

        outcome = SyncPlanOutcome.SYNCED if created else SyncPlanOutcome.ALREADY_SYNCED
        reason = (
            f"Plan {plan.name or plan.id} synced with the provider ({', '.join(created)} created)"
            if created
            else f"Plan {plan.name or plan.id} was already synced with the provider"
        )
        self._audit_log.record(
            AuditAction.SYNC_PLAN,
            object_type="plan",
            object_id=plan.id,
            actor_id=actor_id,
            details={
                "provider_product_id": plan.provider_product_id,
                "provider_price_id": plan.provider_price_id,
                "created": created,
                "plan_name": plan.name,
            },
        )
        logger.info("Plan %s sync finished outcome=%s created=%s", plan.id, outcome.value, created)
        return SyncPlanResult(
            plan_id=plan.id,
            outcome=outcome,
            provider_product_id=plan.provider_product_id,
            provider_price_id=plan.provider_price_id,
            created=created,
            reason=reason,
        )

    def rotate_price(self, plan_id: str, *, actor_id: Optional[str] = None) -> SyncPlanResult:
        """Mint a new provider price when the plan's amount, currency or interval changed.

        Provider prices are immutable, so the old price is left untouched and
        the plan's price id is swapped only if nobody else swapped it first.
        """

        plan = self._load_plan(plan_id)
        if plan.is_free:
            return SyncPlanResult(
                plan_id=plan.id,
                outcome=SyncPlanOutcome.NOT_APPLICABLE,
                reason="Free plans have no provider price",
            )
        if not plan.is_synced:
            return self.sync_plan(plan_id, actor_id=actor_id)

        old_price_id = plan.provider_price_id
        try:
            current = self._gateway.get_price(old_price_id)
            problems = price_mismatches(plan, current)
        except ProviderObjectMissing:
            problems = [f"price {old_price_id} was deleted upstream"]

        if not problems:
            return SyncPlanResult(
                plan_id=plan.id,
                outcome=SyncPlanOutcome.ALREADY_SYNCED,
                provider_product_id=plan.provider_product_id,
                provider_price_id=old_price_id,
                reason="Provider price already matches the plan",
            )

        price = self._gateway.create_price(plan.provider_product_id, plan)
        stored = self._store_price_id(plan.id, price.id, expected=old_price_id)
        if stored.provider_price_id != price.id:
            logger.warning(
                "Price rotation for plan %s lost a race; stored=%s minted=%s",
                plan.id,
                stored.provider_price_id,
                price.id,
            )
        self._audit_log.record(
            AuditAction.ROTATE_PLAN_PRICE,
            object_type="plan",
            object_id=plan.id,
            actor_id=actor_id,
            details={
                "before": {"provider_price_id": old_price_id},
                "after": {"provider_price_id": stored.provider_price_id},
                "reasons": problems,
            },
        )
        return SyncPlanResult(
            plan_id=plan.id,
            outcome=SyncPlanOutcome.PRICE_ROTATED,
            provider_product_id=stored.provider_product_id,
            provider_price_id=stored.provider_price_id,
            created=["price"] if stored.provider_price_id == price.id else [],
            reason=f"New provider price minted: {'; '.join(problems)}",
        )

    def _adopt_product_from_price(self, plan: Plan) -> Plan:
        price = self._gateway.get_price(plan.provider_price_id)
        if not price.product_id:
            raise InconsistentState(
                f"Plan {plan.id} stores price {price.id} that has no product",
                detail={"plan_id": plan.id},
            )
        logger.info("Plan %s adopts product %s from its stored price", plan.id, price.product_id)
        return self._store_product_id(plan.id, price.product_id)

    def _store_product_id(self, plan_id: str, product_id: str) -> Plan:
        stored = self._repository.set_plan_product_id(plan_id, product_id)
        if stored is None:
            raise NotFound("plan", plan_id)
        if stored.provider_product_id != product_id:
            logger.warning(
                "Plan %s already had product %s; provider product %s left unused",
                plan_id,
                stored.provider_product_id,
                product_id,
            )
        return stored

    def _store_price_id(self, plan_id: str, price_id: str, *, expected: Optional[str]) -> Plan:
        stored = self._repository.set_plan_price_id(plan_id, price_id, expected=expected)
        if stored is None:
            raise NotFound("plan", plan_id)
        return stored


__all__ = ["PlanCatalogSync"]
