"""Adapter for the payment provider, built on the Stripe SDK."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol

import stripe

from .config import BillingConfig
from .errors import BillingError, ProviderObjectMissing, ProviderRejected, ProviderUnavailable
from .models import (
    Plan,
    ProviderCustomer,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    User,
)

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Operations the engine needs from the payment provider.

    Implementations raise :class:`ProviderUnavailable` for network failures,
    timeouts and 5xx answers and :class:`ProviderRejected` for 4xx answers.
    """

    def find_or_create_customer(self, email: str, name: str, user_id: str) -> str:
        ...

    def create_product(self, plan: Plan) -> ProviderProduct:
        ...

    def create_price(self, product_id: str, plan: Plan) -> ProviderPrice:
        ...

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        *,
        idempotency_key: str,
    ) -> ProviderSubscription:
        ...

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def get_product(self, product_id: str) -> ProviderProduct:
        ...

    def get_price(self, price_id: str) -> ProviderPrice:
        ...

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def update_subscription_price(self, subscription_id: str, price_id: str) -> ProviderSubscription:
        ...


def price_idempotency_key(plan: Plan, product_id: str) -> str:
    """Key identifying one price shape so concurrent creates collapse into one object."""

    return (
        f"plan-{plan.id}-price-{product_id}-{plan.amount_minor}-"
        f"{plan.currency}-{plan.interval.value}"
    )


def subscription_idempotency_key(user: User, price_id: str) -> str:
    """Key for one provisioning attempt.

    Every write to the user moves ``updated_at``, so retries of an attempt
    share a key while a later re-subscription (after a downgrade) gets a new one.
    """

    version = int(user.updated_at.timestamp() * 1_000_000)
    return f"user-{user.id}-subscription-{price_id}-{version}"


def translate_provider_error(exc: stripe.StripeError, operation: str) -> BillingError:
    status = getattr(exc, "http_status", None)
    message = exc.user_message or str(exc) or f"Provider call {operation} failed"
    detail = {"operation": operation, "http_status": status}
    if (
        isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError))
        or status is None
        or status >= 500
    ):
        return ProviderUnavailable(message, detail=detail)
    if status == 404:
        return ProviderObjectMissing(message, http_status=status, detail=detail)
    return ProviderRejected(message, http_status=status, detail=detail)


@contextmanager
def _provider_call(operation: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as exc:
        error = translate_provider_error(exc, operation)
        logger.warning("Provider call %s failed (%s): %s", operation, error.code, error.message)
        raise error from exc


class StripePaymentGateway:
    """Stripe resource calls with idempotency keys and bounded timeouts."""

    def __init__(
        self,
        api_key: str,
        *,
        api_base: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._options: Dict[str, Any] = {"api_key": api_key}
        if api_base:
            stripe.api_base = api_base
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        # Failures surface to the caller; recovery is an idempotent re-check.
        stripe.max_network_retries = 0

    @classmethod
    def from_config(cls, config: BillingConfig) -> "StripePaymentGateway":
        return cls(
            config.provider_api_key,
            api_base=config.provider_api_base,
            timeout=config.provider_timeout_seconds,
        )

    def find_or_create_customer(self, email: str, name: str, user_id: str) -> str:
        escaped = email.replace("\\", "\\\\").replace("'", "\\'")
        with _provider_call("find_or_create_customer"):
            search = stripe.Customer.search(query=f"email:'{escaped}'", limit=1, **self._options)
        matches = search.get("data") or []
        if matches:
            customer_id = str(matches[0]["id"])
            logger.info("Found existing provider customer %s for user %s", customer_id, user_id)
            return customer_id

        # Search is eventually consistent; the idempotency key keeps a
        # concurrent or repeated create from minting a second customer.
        with _provider_call("find_or_create_customer"):
            created = stripe.Customer.create(
                email=email,
                name=name or email,
                metadata={"user_id": user_id},
                idempotency_key=f"user-{user_id}-customer",
                **self._options,
            )
        customer = ProviderCustomer(id=str(created["id"]), email=created.get("email"))
        logger.info("Created provider customer %s for user %s", customer.id, user_id)
        return customer.id

    def create_product(self, plan: Plan) -> ProviderProduct:
        params: Dict[str, Any] = {
            "name": plan.name or plan.id,
            "metadata": {"plan_id": plan.id, "plan_level": str(plan.level)},
        }
        if plan.description:
            params["description"] = plan.description
        with _provider_call("create_product"):
            product = stripe.Product.create(idempotency_key=f"plan-{plan.id}-product", **params, **self._options)
        return _product_from_payload(product)

    def create_price(self, product_id: str, plan: Plan) -> ProviderPrice:
        with _provider_call("create_price"):
            price = stripe.Price.create(
                product=product_id,
                unit_amount=plan.amount_minor,
                currency=plan.currency,
                recurring={"interval": plan.interval.value},
                metadata={"plan_id": plan.id},
                idempotency_key=price_idempotency_key(plan, product_id),
                **self._options,
            )
        return _price_from_payload(price)

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        *,
        idempotency_key: str,
    ) -> ProviderSubscription:
        with _provider_call("create_subscription"):
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                metadata={key: str(value) for key, value in metadata.items()},
                idempotency_key=idempotency_key,
                **self._options,
            )
        return subscription_from_payload(subscription)

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        with _provider_call("get_subscription"):
            subscription = stripe.Subscription.retrieve(subscription_id, **self._options)
        return subscription_from_payload(subscription)

    def get_product(self, product_id: str) -> ProviderProduct:
        with _provider_call("get_product"):
            product = stripe.Product.retrieve(product_id, **self._options)
        return _product_from_payload(product)

    def get_price(self, price_id: str) -> ProviderPrice:
        with _provider_call("get_price"):
            price = stripe.Price.retrieve(price_id, **self._options)
        return _price_from_payload(price)

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        with _provider_call("cancel_subscription"):
            subscription = stripe.Subscription.cancel(subscription_id, **self._options)
        return subscription_from_payload(subscription)

    def update_subscription_price(self, subscription_id: str, price_id: str) -> ProviderSubscription:
        current = self.get_subscription(subscription_id)
        if current.price_id == price_id:
            return current
        item: Dict[str, str] = {"price": price_id}
        if current.item_id:
            item["id"] = current.item_id
        with _provider_call("update_subscription_price"):
            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[item],
                proration_behavior="create_prorations",
                idempotency_key=f"subscription-{subscription_id}-price-{price_id}",
                **self._options,
            )
        return subscription_from_payload(subscription)


def from_epoch(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def string_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def provider_object_id(value: object) -> Optional[str]:
    """Provider references are either a bare id or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _product_from_payload(payload: Mapping[str, Any]) -> ProviderProduct:
    return ProviderProduct(
        id=str(payload["id"]),
        name=str(payload.get("name") or ""),
        active=bool(payload.get("active", True)),
        metadata=string_metadata(payload.get("metadata")),
    )


def _price_from_payload(payload: Mapping[str, Any]) -> ProviderPrice:
    recurring = payload.get("recurring") or {}
    unit_amount = payload.get("unit_amount")
    return ProviderPrice(
        id=str(payload["id"]),
        product_id=provider_object_id(payload.get("product")),
        unit_amount=int(unit_amount) if unit_amount is not None else None,
        currency=str(payload.get("currency") or "").lower(),
        interval=recurring.get("interval") if isinstance(recurring, dict) else None,
        active=bool(payload.get("active", True)),
    )


def subscription_from_payload(payload: Mapping[str, Any]) -> ProviderSubscription:
    """Normalize a provider subscription object.

    Period boundaries live on the subscription in older API versions and on
    the first item in newer ones; both are accepted.
    """

    items = payload.get("items") or {}
    first_item: Mapping[str, Any] = {}
    if isinstance(items, dict) and items.get("data"):
        first_item = items["data"][0] or {}
    price = first_item.get("price") or payload.get("plan") or {}
    if not isinstance(price, dict):
        price = {"id": price}

    period_start = payload.get("current_period_start") or first_item.get("current_period_start")
    period_end = payload.get("current_period_end") or first_item.get("current_period_end")

    return ProviderSubscription(
        id=str(payload["id"]),
        customer_id=provider_object_id(payload.get("customer")),
        status=str(payload.get("status") or ""),
        current_period_start=from_epoch(period_start),
        current_period_end=from_epoch(period_end),
        price_id=provider_object_id(price.get("id")),
        product_id=provider_object_id(price.get("product")),
        item_id=provider_object_id(first_item.get("id")),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        metadata=string_metadata(payload.get("metadata")),
    )


__all__ = [
    "PaymentGateway",
    "StripePaymentGateway",
    "from_epoch",
    "provider_object_id",
    "price_idempotency_key",
    "string_metadata",
    "subscription_from_payload",
    "subscription_idempotency_key",
    "translate_provider_error",
]
