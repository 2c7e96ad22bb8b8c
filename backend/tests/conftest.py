from __future__ import annotations

from decimal import Decimal

import pytest
import stripe

from backend.app.billing import BillingSyncEngine
from backend.app.billing.models import PlanInterval
from backend.tests.billing_fakes import (
    FIXED_NOW,
    FakePaymentGateway,
    InMemoryBillingRepository,
    make_plan,
)


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.add_plan(make_plan("free", name="Free", price=Decimal("0"), is_free=True, level=0))
    repo.add_plan(make_plan("pro", name="Pro", price=Decimal("9.99"), level=1))
    repo.add_plan(make_plan("team", name="Team", price=Decimal("29.00"), level=2, interval=PlanInterval.YEAR))
    return repo


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def engine(repository: InMemoryBillingRepository, gateway: FakePaymentGateway) -> BillingSyncEngine:
    return BillingSyncEngine(
        repository=repository,
        gateway=gateway,
        webhook_secret="whsec_test",
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture(autouse=True)
def _restore_stripe_settings(monkeypatch):
    """Gateways configure the SDK module; undo that after each test."""

    for name in ("api_base", "default_http_client", "max_network_retries"):
        monkeypatch.setattr(stripe, name, getattr(stripe, name))
