"""Persistence seams required by the synchronization engine."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from .models import AuditLogEntry, Plan, SubscriptionStatus, TransactionRecord, User


class BillingRepository(Protocol):
    """Data store operations.

    Every write to a provider-id field is conditional so that two concurrent
    callers cannot both install a value; writers that lose the race get the
    stored row back and adopt its value.
    """

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def get_free_plan(self) -> Optional[Plan]:
        ...

    def find_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        ...

    def find_user_by_subscription_id(self, subscription_id: str) -> Optional[User]:
        ...

    def find_plan_by_product_id(self, product_id: str) -> Optional[Plan]:
        ...

    def find_user_id_for_customer_transactions(self, customer_id: str) -> Optional[str]:
        ...

    def set_plan_product_id(self, plan_id: str, product_id: str) -> Optional[Plan]:
        """Install ``product_id`` only if the plan has none; return the stored plan."""

    def set_plan_price_id(self, plan_id: str, price_id: str, *, expected: Optional[str]) -> Optional[Plan]:
        """Compare-and-swap the price id from ``expected``; return the stored plan."""

    def set_user_customer_id(self, user_id: str, customer_id: str) -> Optional[User]:
        """Install ``customer_id`` only if the user has none; return the stored user."""

    def attach_subscription(
        self,
        user_id: str,
        *,
        subscription_id: str,
        status: SubscriptionStatus,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[User]:
        """Set the subscription only if the user has none and is on a paid plan.

        Returns ``None`` when the condition does not hold.
        """

    def apply_subscription_state(
        self,
        user_id: str,
        *,
        subscription_id: Optional[str],
        status: SubscriptionStatus,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        plan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        activate_free_user: bool = False,
    ) -> Optional[User]:
        """Apply provider state unless it is older than what is stored.

        The update is refused (``None``) when, for the same subscription, the
        stored period end is newer than ``period_end``, when it would revive a
        canceled subscription, or when the resulting plan is the free plan. A
        user on the free plan without a subscription is only moved onto a paid
        plan when ``activate_free_user`` is set, as it is for completed checkouts.
        """

    def mark_subscription_canceled(self, subscription_id: str, *, canceled_at: datetime) -> Optional[User]:
        ...

    def assign_plan(self, user_id: str, plan_id: str, *, clear_subscription: bool) -> Optional[User]:
        ...

    def claim_event(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        lease_seconds: int,
    ) -> bool:
        """Atomically claim an event id; ``False`` if processed or claimed by a live worker."""

    def mark_event_processed(self, event_id: str, *, error: Optional[str] = None) -> None:
        ...

    def release_event(self, event_id: str) -> None:
        ...

    def record_transaction(self, transaction: TransactionRecord) -> bool:
        """Insert once; ``False`` when a record with the same id exists."""

    def backfill_transaction_users(self, customer_id: str, user_id: str) -> int:
        """Set ``user_id`` on the customer's transactions that have none; return the count."""

    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        ...


__all__ = ["BillingRepository"]
