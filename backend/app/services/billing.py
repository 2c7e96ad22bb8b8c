"""Application wiring for the billing synchronization engine."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Mapping

from ..billing import BillingSyncEngine, PaymentGateway, Plan, ProviderUnavailable, StripePaymentGateway
from ..billing.config import BillingConfig, load_billing_config
from ..billing.repository import PostgresBillingRepository


logger = logging.getLogger("billing")


class UnconfiguredPaymentGateway(PaymentGateway):
    """Gateway used when no provider API key is set; every call is a transient failure."""

    def _unavailable(self, operation: str):
        logger.warning("Payment provider call %s attempted without PROVIDER_API_KEY", operation)
        raise ProviderUnavailable(
            "Payment provider is not configured",
            detail={"operation": operation},
        )

    def find_or_create_customer(self, email: str, name: str, user_id: str) -> str:
        self._unavailable("find_or_create_customer")

    def create_product(self, plan: Plan):
        self._unavailable("create_product")

    def create_price(self, product_id: str, plan: Plan):
        self._unavailable("create_price")

    def create_subscription(self, customer_id: str, price_id: str, metadata: Mapping[str, str], *, idempotency_key: str):
        self._unavailable("create_subscription")

    def get_subscription(self, subscription_id: str):
        self._unavailable("get_subscription")

    def get_product(self, product_id: str):
        self._unavailable("get_product")

    def get_price(self, price_id: str):
        self._unavailable("get_price")

    def cancel_subscription(self, subscription_id: str):
        self._unavailable("cancel_subscription")

    def update_subscription_price(self, subscription_id: str, price_id: str):
        self._unavailable("update_subscription_price")


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def build_payment_gateway(config: BillingConfig) -> PaymentGateway:
    if not config.provider_configured:
        logger.warning("PROVIDER_API_KEY is not set; provider calls will fail as unavailable")
        return UnconfiguredPaymentGateway()
    return StripePaymentGateway.from_config(config)


@lru_cache(maxsize=1)
def get_billing_engine() -> BillingSyncEngine:
    config = get_billing_config()
    if not config.webhook_secret:
        logger.warning("PROVIDER_WEBHOOK_SECRET is not set; webhook deliveries will be rejected")
    return BillingSyncEngine.from_config(
        config,
        repository=PostgresBillingRepository(),
        gateway=build_payment_gateway(config),
    )


__all__ = ["UnconfiguredPaymentGateway", "build_payment_gateway", "get_billing_config", "get_billing_engine"]
