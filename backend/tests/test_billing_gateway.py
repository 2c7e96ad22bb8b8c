from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest
import stripe

from backend.app.billing.errors import ProviderObjectMissing, ProviderRejected, ProviderUnavailable
from backend.app.billing.gateway import (
    StripePaymentGateway,
    price_idempotency_key,
    subscription_from_payload,
    subscription_idempotency_key,
)
from backend.tests.billing_fakes import make_plan, make_user

Call = Tuple[Tuple[Any, ...], Dict[str, Any]]


def _stub(monkeypatch, resource, name: str, result: Any) -> List[Call]:
    """Replace ``resource.name`` with a recorder returning or raising ``result``."""

    calls: List[Call] = []

    def fake(*args: Any, **kwargs: Any) -> Any:
        calls.append((args, kwargs))
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(resource, name, fake)
    return calls


@pytest.fixture
def gateway() -> StripePaymentGateway:
    return StripePaymentGateway("sk_test_123", api_base="https://provider.test", timeout=1.0)


def test_requires_api_key():
    with pytest.raises(ValueError):
        StripePaymentGateway("")


def test_configures_sdk_without_network_retries(gateway):
    assert stripe.api_base == "https://provider.test"
    assert stripe.max_network_retries == 0
    assert isinstance(stripe.default_http_client, stripe.RequestsClient)


def test_find_or_create_customer_returns_existing_match(gateway, monkeypatch):
    searches = _stub(monkeypatch, stripe.Customer, "search", {"data": [{"id": "cus_existing"}]})
    creates = _stub(monkeypatch, stripe.Customer, "create", {"id": "cus_new"})

    customer_id = gateway.find_or_create_customer("o'neil@example.com", "O'Neil", "u1")

    assert customer_id == "cus_existing"
    assert searches[0][1]["query"] == "email:'o\\'neil@example.com'"
    assert searches[0][1]["api_key"] == "sk_test_123"
    assert creates == []


def test_find_or_create_customer_creates_with_idempotency_key(gateway, monkeypatch):
    _stub(monkeypatch, stripe.Customer, "search", {"data": []})
    creates = _stub(monkeypatch, stripe.Customer, "create", {"id": "cus_new", "email": "u1@example.com"})

    customer_id = gateway.find_or_create_customer("u1@example.com", "", "u1")

    assert customer_id == "cus_new"
    kwargs = creates[0][1]
    assert kwargs["name"] == "u1@example.com"
    assert kwargs["metadata"] == {"user_id": "u1"}
    assert kwargs["idempotency_key"] == "user-u1-customer"


def test_create_price_sends_minor_units_and_interval(gateway, monkeypatch):
    plan = make_plan("pro", price=Decimal("9.99"))
    creates = _stub(
        monkeypatch,
        stripe.Price,
        "create",
        {
            "id": "price_1",
            "product": "prod_1",
            "unit_amount": 999,
            "currency": "usd",
            "recurring": {"interval": "month"},
        },
    )

    price = gateway.create_price("prod_1", plan)

    assert price.id == "price_1"
    assert price.unit_amount == 999
    assert price.interval == "month"
    kwargs = creates[0][1]
    assert kwargs["unit_amount"] == 999
    assert kwargs["currency"] == "usd"
    assert kwargs["recurring"] == {"interval": "month"}
    assert kwargs["idempotency_key"] == price_idempotency_key(plan, "prod_1")


def test_price_idempotency_key_changes_with_amount():
    cheap = make_plan("pro", price=Decimal("5.00"))
    dear = make_plan("pro", price=Decimal("9.99"))

    assert price_idempotency_key(cheap, "prod_1") != price_idempotency_key(dear, "prod_1")
    assert price_idempotency_key(dear, "prod_1") == "plan-pro-price-prod_1-999-usd-month"


def test_subscription_key_follows_user_version():
    user = make_user("u1", plan_id="pro")
    later = user.model_copy(update={"updated_at": datetime(2024, 5, 2, tzinfo=timezone.utc)})

    assert subscription_idempotency_key(user, "price_1") == subscription_idempotency_key(user, "price_1")
    assert subscription_idempotency_key(user, "price_1") != subscription_idempotency_key(later, "price_1")


def test_create_subscription_passes_given_key(gateway, monkeypatch):
    creates = _stub(
        monkeypatch,
        stripe.Subscription,
        "create",
        {"id": "sub_1", "customer": "cus_1", "status": "incomplete"},
    )

    result = gateway.create_subscription("cus_1", "price_1", {"user_id": "u1"}, idempotency_key="key-1")

    assert result.id == "sub_1"
    kwargs = creates[0][1]
    assert kwargs["items"] == [{"price": "price_1"}]
    assert kwargs["payment_behavior"] == "default_incomplete"
    assert kwargs["idempotency_key"] == "key-1"


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIError("boom", http_status=500),
        stripe.APIError("bad gateway", http_status=502),
        stripe.RateLimitError("slow down", http_status=429),
        stripe.APIConnectionError("timed out"),
    ],
)
def test_outages_are_unavailable(gateway, monkeypatch, error):
    _stub(monkeypatch, stripe.Price, "retrieve", error)

    with pytest.raises(ProviderUnavailable) as excinfo:
        gateway.get_price("price_1")

    assert excinfo.value.status_code == 503


def test_not_found_is_object_missing(gateway, monkeypatch):
    _stub(
        monkeypatch,
        stripe.Price,
        "retrieve",
        stripe.InvalidRequestError("No such price: 'price_1'", "id", http_status=404),
    )

    with pytest.raises(ProviderObjectMissing) as excinfo:
        gateway.get_price("price_1")

    assert excinfo.value.message == "No such price: 'price_1'"
    assert excinfo.value.http_status == 404


def test_client_errors_are_rejected_with_provider_message(gateway, monkeypatch):
    _stub(
        monkeypatch,
        stripe.Product,
        "create",
        stripe.InvalidRequestError("Invalid currency: xyz", "currency", http_status=400),
    )

    with pytest.raises(ProviderRejected) as excinfo:
        gateway.create_product(make_plan("pro"))

    assert not isinstance(excinfo.value, ProviderObjectMissing)
    assert excinfo.value.message == "Invalid currency: xyz"
    assert excinfo.value.status_code == 502


def test_card_errors_are_rejected(gateway, monkeypatch):
    _stub(
        monkeypatch,
        stripe.Subscription,
        "create",
        stripe.CardError("Your card was declined.", "card", "card_declined", http_status=402),
    )

    with pytest.raises(ProviderRejected) as excinfo:
        gateway.create_subscription("cus_1", "price_1", {}, idempotency_key="key-1")

    assert excinfo.value.http_status == 402


def test_update_subscription_price_targets_existing_item(gateway, monkeypatch):
    current = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_old", "product": "prod_1"}}]},
    }
    updated = dict(current, items={"data": [{"id": "si_1", "price": {"id": "price_new", "product": "prod_1"}}]})
    _stub(monkeypatch, stripe.Subscription, "retrieve", current)
    modifies = _stub(monkeypatch, stripe.Subscription, "modify", updated)

    result = gateway.update_subscription_price("sub_1", "price_new")

    assert result.price_id == "price_new"
    args, kwargs = modifies[0]
    assert args == ("sub_1",)
    assert kwargs["items"] == [{"price": "price_new", "id": "si_1"}]
    assert kwargs["idempotency_key"] == "subscription-sub_1-price-price_new"


def test_update_subscription_price_skips_matching_price(gateway, monkeypatch):
    current = {
        "id": "sub_1",
        "status": "active",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_1"}}]},
    }
    _stub(monkeypatch, stripe.Subscription, "retrieve", current)
    modifies = _stub(monkeypatch, stripe.Subscription, "modify", current)

    assert gateway.update_subscription_price("sub_1", "price_1").price_id == "price_1"
    assert modifies == []


def test_cancel_subscription_maps_result(gateway, monkeypatch):
    cancels = _stub(
        monkeypatch,
        stripe.Subscription,
        "cancel",
        {"id": "sub_1", "customer": "cus_1", "status": "canceled"},
    )

    result = gateway.cancel_subscription("sub_1")

    assert cancels[0][0] == ("sub_1",)
    assert cancels[0][1]["api_key"] == "sk_test_123"
    assert result.status == "canceled"
    assert result.customer_id == "cus_1"


def _item_period_payload(**root: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": "sub_1",
        "customer": {"id": "cus_1"},
        "status": "active",
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "current_period_start": 1714564800,
                    "current_period_end": 1717243200,
                    "price": {"id": "price_1", "product": "prod_1"},
                }
            ]
        },
        "metadata": {"user_id": "u1"},
    }
    payload.update(root)
    return payload


def test_subscription_periods_are_read_from_items_when_missing_on_root():
    subscription = subscription_from_payload(_item_period_payload())

    assert subscription.customer_id == "cus_1"
    assert subscription.current_period_start == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert subscription.current_period_end == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert subscription.price_id == "price_1"
    assert subscription.product_id == "prod_1"
    assert subscription.metadata == {"user_id": "u1"}


def test_subscription_periods_fall_back_to_items_when_root_is_null():
    subscription = subscription_from_payload(
        _item_period_payload(current_period_start=None, current_period_end=None)
    )

    assert subscription.current_period_start == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert subscription.current_period_end == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
