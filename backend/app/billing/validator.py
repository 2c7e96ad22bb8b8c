"""Read-only cross-check between a plan and its provider product and price."""
from __future__ import annotations

import logging
from typing import Dict, List

from .errors import NotFound, ProviderObjectMissing, ProviderRejected, ProviderUnavailable
from .gateway import PaymentGateway
from .interfaces import BillingRepository
from .models import Plan, ProviderPrice, ValidationResult, ValidationStatus

logger = logging.getLogger(__name__)


def price_mismatches(plan: Plan, price: ProviderPrice) -> List[str]:
    """Describe every way ``price`` disagrees with ``plan``; empty when they match."""

    problems: List[str] = []
    if price.unit_amount != plan.amount_minor:
        problems.append(f"amount mismatch: provider {price.unit_amount} vs plan {plan.amount_minor}")
    if (price.currency or "").lower() != plan.currency:
        problems.append(f"currency mismatch: provider {price.currency or 'none'} vs plan {plan.currency}")
    if price.interval != plan.interval.value:
        problems.append(
            f"interval mismatch: provider {price.interval or 'none'} vs plan {plan.interval.value}"
        )
    return problems


class IntegrationValidator:
    """Reports drift; never repairs it."""

    def __init__(self, repository: BillingRepository, gateway: PaymentGateway) -> None:
        self._repository = repository
        self._gateway = gateway

    def validate(self, plan_id: str) -> ValidationResult:
        plan = self._repository.get_plan(plan_id)
        if plan is None:
            raise NotFound("plan", plan_id)

        if plan.is_free:
            return ValidationResult(
                plan_id=plan.id,
                valid=True,
                status=ValidationStatus.VALID,
                reason="Free plans do not need a provider integration",
            )

        if not plan.is_synced:
            return ValidationResult(
                plan_id=plan.id,
                valid=False,
                status=ValidationStatus.NOT_SYNCED,
                reason="Plan is not synced with the provider",
                details={
                    "missing_product_id": not plan.provider_product_id,
                    "missing_price_id": not plan.provider_price_id,
                },
            )

        try:
            self._gateway.get_product(plan.provider_product_id)
        except ProviderObjectMissing:
            return self._stale(plan, "product", plan.provider_product_id)
        except ProviderUnavailable as exc:
            return self._unavailable(plan, exc)
        except ProviderRejected as exc:
            return self._rejected(plan, exc)

        try:
            price = self._gateway.get_price(plan.provider_price_id)
        except ProviderObjectMissing:
            return self._stale(plan, "price", plan.provider_price_id)
        except ProviderUnavailable as exc:
            return self._unavailable(plan, exc)
        except ProviderRejected as exc:
            return self._rejected(plan, exc)

        details: Dict[str, object] = {
            "product_id": plan.provider_product_id,
            "price_id": plan.provider_price_id,
            "amount": price.unit_amount,
            "currency": price.currency,
            "interval": price.interval,
        }
        if price.product_id and price.product_id != plan.provider_product_id:
            return ValidationResult(
                plan_id=plan.id,
                valid=False,
                status=ValidationStatus.MISMATCH,
                reason=(
                    f"product mismatch: price {price.id} belongs to {price.product_id}, "
                    f"plan stores {plan.provider_product_id}"
                ),
                details=details,
            )

        problems = price_mismatches(plan, price)
        if problems:
            logger.info("Plan %s drifted from provider price %s: %s", plan.id, price.id, problems)
            return ValidationResult(
                plan_id=plan.id,
                valid=False,
                status=ValidationStatus.MISMATCH,
                reason="; ".join(problems),
                details={**details, "mismatches": problems},
            )

        return ValidationResult(
            plan_id=plan.id,
            valid=True,
            status=ValidationStatus.VALID,
            reason="Provider product and price match the plan",
            details=details,
        )

    def _stale(self, plan: Plan, kind: str, object_id: str) -> ValidationResult:
        return ValidationResult(
            plan_id=plan.id,
            valid=False,
            status=ValidationStatus.STALE_ID,
            reason=f"stale id, {kind} {object_id} was deleted upstream",
            details={f"{kind}_id": object_id},
        )

    def _unavailable(self, plan: Plan, exc: ProviderUnavailable) -> ValidationResult:
        return ValidationResult(
            plan_id=plan.id,
            valid=False,
            status=ValidationStatus.PROVIDER_UNAVAILABLE,
            reason=f"Provider unavailable, try again: {exc.message}",
        )

    def _rejected(self, plan: Plan, exc: ProviderRejected) -> ValidationResult:
        return ValidationResult(
            plan_id=plan.id,
            valid=False,
            status=ValidationStatus.PROVIDER_REJECTED,
            reason=f"Provider rejected the lookup: {exc.message}",
        )


__all__ = ["IntegrationValidator", "price_mismatches"]
