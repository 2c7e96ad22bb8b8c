from __future__ import annotations

import pytest
import stripe

from backend.app.billing import (
    BillingSyncEngine,
    ProviderUnavailable,
    StripePaymentGateway,
    ValidationStatus,
)
from backend.app.billing.config import load_billing_config
from backend.app.services.billing import UnconfiguredPaymentGateway, build_payment_gateway


def test_defaults_when_environment_is_empty():
    config = load_billing_config({})

    assert config.provider_api_key == ""
    assert config.provider_configured is False
    assert config.provider_api_base == "https://api.stripe.com"
    assert config.provider_timeout_seconds == 10.0
    assert config.webhook_tolerance_seconds == 300
    assert config.event_claim_lease_seconds == 300
    assert config.default_currency == "usd"


def test_values_are_read_and_normalized():
    config = load_billing_config(
        {
            "PROVIDER_API_KEY": "sk_test_123",
            "PROVIDER_API_BASE": "https://provider.test/",
            "PROVIDER_WEBHOOK_SECRET": "whsec_abc",
            "PROVIDER_TIMEOUT_SECONDS": "2.5",
            "WEBHOOK_TOLERANCE_SECONDS": "60",
            "EVENT_CLAIM_LEASE_SECONDS": "5",
            "BILLING_DEFAULT_CURRENCY": " EUR ",
        }
    )

    assert config.provider_configured is True
    assert config.provider_api_base == "https://provider.test"
    assert config.webhook_secret == "whsec_abc"
    assert config.provider_timeout_seconds == 2.5
    assert config.webhook_tolerance_seconds == 60
    assert config.event_claim_lease_seconds == 30
    assert config.default_currency == "eur"


def test_non_positive_timeout_falls_back_to_default():
    assert load_billing_config({"PROVIDER_TIMEOUT_SECONDS": "0"}).provider_timeout_seconds == 10.0


def test_invalid_number_raises():
    with pytest.raises(ValueError):
        load_billing_config({"WEBHOOK_TOLERANCE_SECONDS": "soon"})


def test_unconfigured_provider_gets_unavailable_gateway(repository):
    config = load_billing_config({"PROVIDER_WEBHOOK_SECRET": "whsec_abc"})
    gateway = build_payment_gateway(config)

    assert isinstance(gateway, UnconfiguredPaymentGateway)
    with pytest.raises(ProviderUnavailable):
        gateway.get_price("price_1")

    engine = BillingSyncEngine.from_config(config, repository=repository, gateway=gateway)
    result = engine.validate_plan("pro")
    assert result.status == ValidationStatus.NOT_SYNCED


def test_configured_provider_gets_stripe_gateway():
    gateway = build_payment_gateway(load_billing_config({"PROVIDER_API_KEY": "sk_test_123"}))

    assert isinstance(gateway, StripePaymentGateway)
    assert stripe.api_base == "https://api.stripe.com"
