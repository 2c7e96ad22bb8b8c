"""Applies verified provider events to local users and transactions."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Type, get_args

from .audit import AuditLog
from .errors import InconsistentState, MalformedEvent, NotFound, ProviderObjectMissing, ProviderRejected
from .events import (
    CheckoutSessionCompleted,
    InvoicePaymentSucceeded,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    ProviderEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnrecognizedEvent,
)
from .gateway import PaymentGateway
from .interfaces import BillingRepository
from .models import (
    AuditAction,
    EventOutcome,
    EventOutcomeStatus,
    Plan,
    ProviderSubscription,
    SubscriptionStatus,
    TransactionRecord,
    TransactionStatus,
    User,
)
from .status_mapping import map_provider_status

logger = logging.getLogger("billing.webhooks")

# Failures that redelivery cannot fix. They are recorded and acknowledged.
NON_RETRYABLE_ERRORS = (MalformedEvent, NotFound, InconsistentState, ProviderRejected)


class WebhookProcessor:
    """De-duplicates and applies provider events.

    Deliveries are at-least-once, concurrent and unordered. The de-duplication
    gate is an atomic claim in the data store; transient failures release the
    claim and propagate so the provider redelivers.
    """

    def __init__(
        self,
        repository: BillingRepository,
        gateway: PaymentGateway,
        audit_log: AuditLog,
        *,
        claim_lease_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._audit_log = audit_log
        self._claim_lease_seconds = claim_lease_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[Type[ProviderEvent], Callable[..., EventOutcome]] = {
            CheckoutSessionCompleted: self._handle_checkout_completed,
            SubscriptionChanged: self._handle_subscription_changed,
            SubscriptionDeleted: self._handle_subscription_deleted,
            InvoicePaymentSucceeded: self._handle_invoice_paid,
            PaymentIntentSucceeded: self._handle_payment_succeeded,
            PaymentIntentFailed: self._handle_payment_failed,
            UnrecognizedEvent: self._handle_unrecognized,
        }
        missing = set(get_args(ProviderEvent)) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for {sorted(cls.__name__ for cls in missing)}")

    def process(self, event: ProviderEvent) -> EventOutcome:
        claimed = self._repository.claim_event(
            event.id,
            event.type,
            event.model_dump(mode="json"),
            lease_seconds=self._claim_lease_seconds,
        )
        if not claimed:
            logger.info("Skipping duplicate event %s (%s)", event.id, event.type, extra={"event_id": event.id})
            return EventOutcome(
                event_id=event.id,
                event_type=event.type,
                status=EventOutcomeStatus.DUPLICATE,
                reason="already processed",
            )

        handler = self._handlers[type(event)]
        try:
            outcome = handler(event)
        except NON_RETRYABLE_ERRORS as exc:
            logger.error(
                "Event %s (%s) rejected: %s",
                event.id,
                event.type,
                exc.message,
                extra={"event_id": event.id, "event_type": event.type},
            )
            self._repository.mark_event_processed(event.id, error=exc.message)
            return EventOutcome(
                event_id=event.id,
                event_type=event.type,
                status=EventOutcomeStatus.REJECTED,
                reason=exc.message,
            )
        except Exception:
            logger.exception(
                "Event %s (%s) failed; releasing it for redelivery",
                event.id,
                event.type,
                extra={"event_id": event.id, "event_type": event.type},
            )
            self._release(event.id)
            raise

        self._repository.mark_event_processed(event.id)
        logger.info(
            "Event %s (%s) %s: %s",
            event.id,
            event.type,
            outcome.status.value,
            outcome.reason,
            extra={"event_id": event.id},
        )
        return outcome

    def _release(self, event_id: str) -> None:
        try:
            self._repository.release_event(event_id)
        except Exception:
            # The claim lease expires on its own.
            logger.exception("Could not release claim on event %s", event_id)

    def _outcome(self, event: ProviderEvent, status: EventOutcomeStatus, reason: str) -> EventOutcome:
        return EventOutcome(event_id=event.id, event_type=event.type, status=status, reason=reason)

    def _handle_checkout_completed(self, event: CheckoutSessionCompleted) -> EventOutcome:
        if not event.user_id or not event.plan_id:
            raise MalformedEvent(
                f"Checkout session {event.session_id} is missing user_id or plan_id metadata",
                detail={"session_id": event.session_id},
            )
        user = self._repository.get_user(event.user_id)
        if user is None:
            raise NotFound("user", event.user_id)
        plan = self._repository.get_plan(event.plan_id)
        if plan is None:
            raise NotFound("plan", event.plan_id)
        if plan.is_free:
            raise InconsistentState(
                f"Checkout session {event.session_id} references free plan {plan.id}",
                detail={"plan_id": plan.id},
            )

        self._record_transaction(
            TransactionRecord(
                id=event.transaction_id,
                user_id=user.id,
                customer_id=event.customer_id,
                amount=event.amount_total,
                currency=event.currency,
                status=TransactionStatus.SUCCEEDED,
                subscription_id=event.subscription_id,
                metadata={**event.metadata, "checkout_session_id": event.session_id, "type": "checkout"},
            ),
            user_id=user.id,
        )

        if event.customer_id:
            self._link_customer(user, event.customer_id)

        period_start: Optional[datetime] = None
        period_end: Optional[datetime] = None
        if event.subscription_id:
            subscription = self._fetch_subscription(event.subscription_id)
            if subscription is not None:
                period_start = subscription.current_period_start
                period_end = subscription.current_period_end
        else:
            period_start = event.created or self._clock()

        updated = self._repository.apply_subscription_state(
            user.id,
            subscription_id=event.subscription_id,
            status=SubscriptionStatus.ACTIVE,
            period_start=period_start,
            period_end=period_end,
            plan_id=plan.id,
            activate_free_user=True,
        )
        if updated is None:
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"User {user.id} already holds newer state for subscription {event.subscription_id}",
            )

        self._audit_log.record(
            AuditAction.CHECKOUT_COMPLETED,
            object_type="user",
            object_id=user.id,
            details={
                "event_id": event.id,
                "before": _billing_snapshot(user),
                "after": _billing_snapshot(updated),
                "transaction_id": event.transaction_id,
            },
        )
        return self._outcome(event, EventOutcomeStatus.APPLIED, f"User {user.id} activated on plan {plan.id}")

    def _handle_subscription_changed(self, event: SubscriptionChanged) -> EventOutcome:
        subscription = event.subscription
        user = self._resolve_subscription_user(subscription)
        if user is None:
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"No local user for customer {subscription.customer_id}",
            )

        status = map_provider_status(subscription.status)
        if (
            user.provider_subscription_id
            and user.provider_subscription_id != subscription.id
            and status != SubscriptionStatus.ACTIVE
        ):
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"User {user.id} no longer holds subscription {subscription.id}",
            )

        plan = self._infer_plan(subscription)
        updated = self._repository.apply_subscription_state(
            user.id,
            subscription_id=subscription.id,
            status=status,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            plan_id=plan.id if plan is not None else None,
            customer_id=subscription.customer_id,
        )
        if updated is None:
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"Update for subscription {subscription.id} refused by stored state "
                "(newer period, canceled subscription, free plan or user without a paid plan)",
            )

        self._audit_log.record(
            AuditAction.SUBSCRIPTION_CHANGED,
            object_type="user",
            object_id=user.id,
            details={
                "event_id": event.id,
                "provider_status": subscription.status,
                "before": _billing_snapshot(user),
                "after": _billing_snapshot(updated),
            },
        )
        return self._outcome(
            event,
            EventOutcomeStatus.APPLIED,
            f"Subscription {subscription.id}: {subscription.status or 'unknown'} -> {status.value}",
        )

    def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> EventOutcome:
        subscription = event.subscription
        user = self._repository.find_user_by_subscription_id(subscription.id)
        if user is None:
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"No local user holds subscription {subscription.id}",
            )

        updated = self._repository.mark_subscription_canceled(
            subscription.id,
            canceled_at=event.created or self._clock(),
        )
        if updated is None:
            return self._outcome(
                event,
                EventOutcomeStatus.IGNORED,
                f"Subscription {subscription.id} was detached concurrently",
            )
        self._audit_log.record(
            AuditAction.SUBSCRIPTION_CANCELED,
            object_type="user",
            object_id=user.id,
            details={
                "event_id": event.id,
                "before": _billing_snapshot(user),
                "after": _billing_snapshot(updated),
            },
        )
        return self._outcome(event, EventOutcomeStatus.APPLIED, f"Subscription {subscription.id} canceled")

    def _handle_invoice_paid(self, event: InvoicePaymentSucceeded) -> EventOutcome:
        return self._record_payment_event(
            event,
            TransactionRecord(
                id=event.transaction_id,
                customer_id=event.customer_id,
                amount=event.amount_paid,
                currency=event.currency,
                status=TransactionStatus.SUCCEEDED,
                subscription_id=event.subscription_id,
                metadata={"invoice_id": event.invoice_id, "type": "invoice"},
            ),
        )

    def _handle_payment_succeeded(self, event: PaymentIntentSucceeded) -> EventOutcome:
        return self._record_payment_event(
            event,
            TransactionRecord(
                id=event.payment_intent_id,
                customer_id=event.customer_id,
                amount=event.amount,
                currency=event.currency,
                status=TransactionStatus.SUCCEEDED,
                metadata=event.metadata,
            ),
        )

    def _handle_payment_failed(self, event: PaymentIntentFailed) -> EventOutcome:
        return self._record_payment_event(
            event,
            TransactionRecord(
                id=event.payment_intent_id,
                customer_id=event.customer_id,
                amount=event.amount,
                currency=event.currency,
                status=TransactionStatus.FAILED,
                metadata=event.metadata,
            ),
        )

    def _handle_unrecognized(self, event: UnrecognizedEvent) -> EventOutcome:
        logger.info("Unhandled event type %s (%s)", event.type, event.id, extra={"event_id": event.id})
        return self._outcome(event, EventOutcomeStatus.IGNORED, f"Unhandled event type {event.type}")

    def _record_payment_event(self, event: ProviderEvent, transaction: TransactionRecord) -> EventOutcome:
        # Payments may arrive before the customer is linked to a user.
        user: Optional[User] = None
        if transaction.customer_id:
            user = self._repository.find_user_by_customer_id(transaction.customer_id)
        inserted = self._record_transaction(
            transaction.model_copy(update={"user_id": user.id if user else None}),
            user_id=user.id if user else None,
        )
        self._audit_log.record(
            AuditAction.TRANSACTION_RECORDED,
            object_type="transaction",
            object_id=transaction.id,
            details={
                "event_id": event.id,
                "user_id": user.id if user else None,
                "customer_id": transaction.customer_id,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "status": transaction.status.value,
                "inserted": inserted,
            },
        )
        state = "recorded" if inserted else "already recorded"
        return self._outcome(
            event,
            EventOutcomeStatus.APPLIED,
            f"Transaction {transaction.id} {state} ({transaction.status.value})",
        )

    def _record_transaction(self, transaction: TransactionRecord, *, user_id: Optional[str]) -> bool:
        inserted = self._repository.record_transaction(transaction)
        if user_id and transaction.customer_id:
            self._repository.backfill_transaction_users(transaction.customer_id, user_id)
        return inserted

    def _link_customer(self, user: User, customer_id: str) -> None:
        stored = self._repository.set_user_customer_id(user.id, customer_id)
        if stored is not None and stored.provider_customer_id != customer_id:
            logger.warning(
                "User %s is linked to customer %s; event referenced %s",
                user.id,
                stored.provider_customer_id,
                customer_id,
            )
        self._repository.backfill_transaction_users(customer_id, user.id)

    def _fetch_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        try:
            return self._gateway.get_subscription(subscription_id)
        except ProviderObjectMissing:
            logger.warning("Subscription %s not found at the provider", subscription_id)
            return None

    def _resolve_subscription_user(self, subscription: ProviderSubscription) -> Optional[User]:
        if not subscription.customer_id:
            return None
        user = self._repository.find_user_by_customer_id(subscription.customer_id)
        if user is not None:
            return user

        # The customer link is not established yet.
        candidate_id = subscription.metadata.get("user_id") or self._repository.find_user_id_for_customer_transactions(
            subscription.customer_id
        )
        if not candidate_id:
            return None
        candidate = self._repository.get_user(candidate_id)
        if candidate is None:
            return None
        if candidate.provider_customer_id and candidate.provider_customer_id != subscription.customer_id:
            logger.warning(
                "Subscription %s names user %s, who belongs to customer %s",
                subscription.id,
                candidate.id,
                candidate.provider_customer_id,
            )
            return None
        self._link_customer(candidate, subscription.customer_id)
        return self._repository.get_user(candidate.id) or candidate

    def _infer_plan(self, subscription: ProviderSubscription) -> Optional[Plan]:
        plan: Optional[Plan] = None
        plan_id = subscription.metadata.get("plan_id")
        if plan_id:
            plan = self._repository.get_plan(plan_id)
        if plan is None and subscription.product_id:
            plan = self._repository.find_plan_by_product_id(subscription.product_id)
        if plan is not None and plan.is_free:
            return None
        return plan


def _billing_snapshot(user: User) -> Dict[str, Optional[str]]:
    return {
        "plan_id": user.plan_id,
        "provider_customer_id": user.provider_customer_id,
        "provider_subscription_id": user.provider_subscription_id,
        "subscription_status": user.subscription_status.value,
        "subscription_end_date": user.subscription_end_date.isoformat() if user.subscription_end_date else None,
    }


__all__ = ["NON_RETRYABLE_ERRORS", "WebhookProcessor"]
