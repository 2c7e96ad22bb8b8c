"""Translation of provider subscription states into the local status model."""
from __future__ import annotations

from typing import Dict, Optional

from .models import SubscriptionStatus

_PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.ACTIVE,
    "incomplete": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "ended": SubscriptionStatus.EXPIRED,
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Return the local status for ``provider_status``.

    Unknown statuses fail open to ``active``: access continues while billing
    state is ambiguous rather than cutting off a paying customer.
    """

    if not isinstance(provider_status, str):
        return SubscriptionStatus.ACTIVE
    return _PROVIDER_STATUS_MAP.get(provider_status.strip().lower(), SubscriptionStatus.ACTIVE)


__all__ = ["map_provider_status"]
