from __future__ import annotations

import pytest

from backend.app.billing import (
    AuditAction,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    ProvisioningStep,
    SubscriptionStatus,
)
from backend.tests.billing_fakes import FIXED_NOW, make_user


def test_free_user_gets_customer_and_no_subscription(engine, repository, gateway):
    repository.add_user(make_user("u2", plan_id="free"))

    result = engine.ensure_customer_and_subscription("u2")

    assert result.success
    assert result.customer == ProvisioningStep.CREATED
    assert result.subscription == ProvisioningStep.NOT_APPLICABLE
    assert result.reason == "customer created, subscription not applicable"
    user = repository.get_user("u2")
    assert user.provider_customer_id in gateway.customers
    assert user.provider_subscription_id is None
    assert "create_subscription" not in gateway.calls


def test_paid_user_gets_customer_and_subscription(engine, repository, gateway):
    engine.sync_plan("pro")
    repository.add_user(make_user("u3", plan_id="pro"))

    result = engine.ensure_customer_and_subscription("u3", actor_id="admin-1")

    assert result.success
    assert result.reason == "customer created, subscription created"
    user = repository.get_user("u3")
    subscription = gateway.subscriptions[user.provider_subscription_id]
    assert subscription.customer_id == user.provider_customer_id
    assert subscription.price_id == repository.get_plan("pro").provider_price_id
    assert subscription.metadata == {"user_id": "u3", "plan_id": "pro"}
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.subscription_end_date == subscription.current_period_end

    entry = repository.audit_entries[-1]
    assert entry.action == AuditAction.FIX_USER_CUSTOMER
    assert entry.actor_id == "admin-1"
    assert entry.details["created"] == ["customer", "subscription"]


def test_repair_is_idempotent(engine, repository, gateway):
    engine.sync_plan("pro")
    repository.add_user(make_user("u3", plan_id="pro"))
    engine.ensure_customer_and_subscription("u3")

    again = engine.ensure_customer_and_subscription("u3")

    assert again.success
    assert again.customer == ProvisioningStep.ALREADY_PRESENT
    assert again.subscription == ProvisioningStep.ALREADY_PRESENT
    assert len(gateway.customers) == 1
    assert len(gateway.subscriptions) == 1


def test_existing_provider_customer_is_reused_by_email(engine, repository, gateway):
    gateway.customers["cus_legacy"] = {"email": "u2@example.com", "name": "U2", "user_id": "u2"}
    repository.add_user(make_user("u2"))

    result = engine.ensure_customer_and_subscription("u2")

    assert result.provider_customer_id == "cus_legacy"
    assert len(gateway.customers) == 1


def test_unsynced_paid_plan_reports_inconsistent_state(engine, repository, gateway):
    repository.add_user(make_user("u4", plan_id="team"))

    result = engine.ensure_customer_and_subscription("u4")

    assert not result.success
    assert result.partial
    assert result.customer == ProvisioningStep.CREATED
    assert result.subscription == ProvisioningStep.FAILED
    assert result.errors["subscription"].startswith("inconsistent_state")
    assert repository.get_user("u4").provider_subscription_id is None


def test_provider_failure_is_reported_not_raised(engine, repository, gateway):
    engine.sync_plan("pro")
    repository.add_user(make_user("u5", plan_id="pro"))
    gateway.failures["create_subscription"] = ProviderRejected("Your card was declined", http_status=402)

    result = engine.ensure_customer_and_subscription("u5")

    assert result.partial
    assert result.subscription == ProvisioningStep.FAILED
    assert "Your card was declined" in result.errors["subscription"]
    assert "Your card was declined" in result.reason
    assert repository.get_user("u5").provider_customer_id is not None


def test_customer_failure_skips_subscription(engine, repository, gateway):
    engine.sync_plan("pro")
    repository.add_user(make_user("u6", plan_id="pro"))
    gateway.failures["find_or_create_customer"] = ProviderUnavailable("connection reset")

    result = engine.ensure_customer_and_subscription("u6")

    assert not result.success
    assert not result.partial
    assert result.customer == ProvisioningStep.FAILED
    assert result.subscription == ProvisioningStep.FAILED
    assert "create_subscription" not in gateway.calls


def test_missing_user_raises_not_found(engine):
    with pytest.raises(NotFound):
        engine.ensure_customer_and_subscription("ghost")


def test_assign_paid_plan_syncs_plan_and_subscribes(engine, repository, gateway):
    repository.add_user(make_user("u7", plan_id="free"))

    result = engine.assign_plan("u7", "pro", actor_id="admin-1")

    user = repository.get_user("u7")
    assert user.plan_id == "pro"
    assert user.provider_subscription_id is not None
    assert repository.get_plan("pro").is_synced
    assert result.old_plan_id == "free"
    assert result.new_plan_id == "pro"
    assert result.provisioning.success
    assert repository.audit_entries[-1].action == AuditAction.UPDATE_USER_PLAN


def test_assign_free_plan_cancels_live_subscription(engine, repository, gateway):
    repository.add_user(make_user("u8", plan_id="free"))
    engine.assign_plan("u8", "pro")
    subscription_id = repository.get_user("u8").provider_subscription_id

    result = engine.assign_plan("u8", "free")

    user = repository.get_user("u8")
    assert user.plan_id == "free"
    assert user.provider_subscription_id is None
    assert gateway.subscriptions[subscription_id].status == "canceled"
    assert f"subscription {subscription_id} canceled" in result.provider_changes
    assert result.provisioning.subscription == ProvisioningStep.NOT_APPLICABLE


def test_assign_other_paid_plan_moves_subscription_price(engine, repository, gateway):
    repository.add_user(make_user("u9", plan_id="free"))
    engine.assign_plan("u9", "pro")
    subscription_id = repository.get_user("u9").provider_subscription_id

    engine.assign_plan("u9", "team")

    user = repository.get_user("u9")
    assert user.plan_id == "team"
    assert user.provider_subscription_id == subscription_id
    assert gateway.subscriptions[subscription_id].price_id == repository.get_plan("team").provider_price_id
    assert len(gateway.subscriptions) == 1


def test_resubscribing_after_downgrade_creates_a_new_subscription(engine, repository, gateway):
    repository.add_user(make_user("u10", plan_id="free"))
    engine.assign_plan("u10", "pro")
    first = repository.get_user("u10").provider_subscription_id
    engine.assign_plan("u10", "free")

    result = engine.assign_plan("u10", "pro")

    second = repository.get_user("u10").provider_subscription_id
    assert result.provisioning.subscription == ProvisioningStep.CREATED
    assert second is not None and second != first
    assert gateway.subscriptions[first].status == "canceled"
    assert gateway.subscriptions[second].status == "active"


def test_retried_subscription_create_reuses_its_key(engine, repository, gateway):
    engine.sync_plan("pro")
    repository.add_user(make_user("u11", plan_id="pro"))
    gateway.failures["create_subscription"] = ProviderUnavailable("connection reset")
    engine.ensure_customer_and_subscription("u11")
    del gateway.failures["create_subscription"]

    result = engine.ensure_customer_and_subscription("u11")

    assert result.subscription == ProvisioningStep.CREATED
    assert len(gateway.subscription_keys) == 2
    assert gateway.subscription_keys[0] == gateway.subscription_keys[1]
    assert len(gateway.subscriptions) == 1


def test_assign_free_plan_clears_cancellation_stamp(engine, repository, gateway):
    repository.add_user(make_user("u12", plan_id="free"))
    engine.assign_plan("u12", "pro")
    subscription_id = repository.get_user("u12").provider_subscription_id
    repository.mark_subscription_canceled(subscription_id, canceled_at=FIXED_NOW)

    engine.assign_plan("u12", "free")

    user = repository.get_user("u12")
    assert user.provider_subscription_id is None
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.subscription_canceled_at is None
