from __future__ import annotations

import pytest

from backend.app.billing import SubscriptionStatus, map_provider_status


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.ACTIVE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ("  Canceled ", SubscriptionStatus.CANCELED),
    ],
)
def test_known_statuses_map_to_local_model(provider_status, expected):
    assert map_provider_status(provider_status) == expected


@pytest.mark.parametrize("provider_status", ["paused", "", "something_new", None, 42])
def test_unknown_statuses_fail_open_to_active(provider_status):
    assert map_provider_status(provider_status) == SubscriptionStatus.ACTIVE
