"""Inbound provider events: authenticity checks and typed parsing.

Payloads are parsed into a closed set of event models. Types the engine does
not act on become :class:`UnrecognizedEvent` so a growing provider vocabulary
is acknowledged instead of rejected.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

import stripe
from pydantic import BaseModel, ConfigDict, Field

from .errors import MalformedEvent, SignatureVerificationError
from .gateway import from_epoch, provider_object_id, string_metadata, subscription_from_payload
from .models import ProviderSubscription

SIGNATURE_HEADER = "Stripe-Signature"


def construct_event(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int = 300,
) -> Mapping[str, Any]:
    """Verify ``header`` signs ``payload`` and return the decoded event body.

    Raises :class:`SignatureVerificationError` before anything is decoded when
    the delivery is not authentic, and :class:`MalformedEvent` when an
    authentic body is not a JSON object.
    """

    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("Missing signature header")

    try:
        event = stripe.Webhook.construct_event(payload, header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise SignatureVerificationError(exc.user_message or "Signature does not match payload") from exc
    except (ValueError, TypeError, AttributeError) as exc:
        # Non-object JSON fails while the SDK builds the event.
        raise MalformedEvent("Webhook body is not a JSON object") from exc
    return event


class _EventBase(BaseModel):
    id: str
    type: str
    created: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSessionCompleted(_EventBase):
    session_id: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_total: int = 0
    currency: str = "usd"
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("userId")

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get("plan_id") or self.metadata.get("planId")

    @property
    def transaction_id(self) -> str:
        return self.payment_intent_id or f"checkout_{self.session_id}"


class SubscriptionChanged(_EventBase):
    """``customer.subscription.created`` and ``customer.subscription.updated``."""

    subscription: ProviderSubscription


class SubscriptionDeleted(_EventBase):
    subscription: ProviderSubscription


class InvoicePaymentSucceeded(_EventBase):
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_paid: int = 0
    currency: str = "usd"

    @property
    def transaction_id(self) -> str:
        return f"inv_{self.invoice_id}"


class PaymentIntentSucceeded(_EventBase):
    payment_intent_id: str
    customer_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentIntentFailed(_EventBase):
    payment_intent_id: str
    customer_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    metadata: Dict[str, str] = Field(default_factory=dict)


class UnrecognizedEvent(_EventBase):
    pass


ProviderEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    UnrecognizedEvent,
]


def _checkout(base: Dict[str, Any], obj: Mapping[str, Any]) -> CheckoutSessionCompleted:
    details = obj.get("customer_details") or {}
    return CheckoutSessionCompleted(
        **base,
        session_id=str(obj["id"]),
        customer_id=provider_object_id(obj.get("customer")),
        customer_email=details.get("email") if isinstance(details, dict) else None,
        subscription_id=provider_object_id(obj.get("subscription")),
        payment_intent_id=provider_object_id(obj.get("payment_intent")),
        amount_total=int(obj.get("amount_total") or 0),
        currency=str(obj.get("currency") or "usd").lower(),
        metadata=string_metadata(obj.get("metadata")),
    )


def _subscription_changed(base: Dict[str, Any], obj: Mapping[str, Any]) -> SubscriptionChanged:
    return SubscriptionChanged(**base, subscription=subscription_from_payload(obj))


def _subscription_deleted(base: Dict[str, Any], obj: Mapping[str, Any]) -> SubscriptionDeleted:
    return SubscriptionDeleted(**base, subscription=subscription_from_payload(obj))


def _invoice_subscription(obj: Mapping[str, Any]) -> Optional[str]:
    if obj.get("subscription"):
        return provider_object_id(obj.get("subscription"))
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return provider_object_id(details.get("subscription"))
    return None


def _invoice_paid(base: Dict[str, Any], obj: Mapping[str, Any]) -> InvoicePaymentSucceeded:
    return InvoicePaymentSucceeded(
        **base,
        invoice_id=str(obj["id"]),
        customer_id=provider_object_id(obj.get("customer")),
        subscription_id=_invoice_subscription(obj),
        amount_paid=int(obj.get("amount_paid") or 0),
        currency=str(obj.get("currency") or "usd").lower(),
    )


def _payment_intent_fields(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "payment_intent_id": str(obj["id"]),
        "customer_id": provider_object_id(obj.get("customer")),
        "amount": int(obj.get("amount") or 0),
        "currency": str(obj.get("currency") or "usd").lower(),
        "metadata": string_metadata(obj.get("metadata")),
    }


def _payment_succeeded(base: Dict[str, Any], obj: Mapping[str, Any]) -> PaymentIntentSucceeded:
    return PaymentIntentSucceeded(**base, **_payment_intent_fields(obj))


def _payment_failed(base: Dict[str, Any], obj: Mapping[str, Any]) -> PaymentIntentFailed:
    return PaymentIntentFailed(**base, **_payment_intent_fields(obj))


_PARSERS: Dict[str, Callable[[Dict[str, Any], Mapping[str, Any]], ProviderEvent]] = {
    "checkout.session.completed": _checkout,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_succeeded": _invoice_paid,
    "payment_intent.succeeded": _payment_succeeded,
    "payment_intent.payment_failed": _payment_failed,
}

HANDLED_EVENT_TYPES = frozenset(_PARSERS)


def parse_event(body: Mapping[str, Any]) -> ProviderEvent:
    """Turn a decoded webhook body into one of the event models."""

    event_id = body.get("id")
    event_type = body.get("type")
    if not event_id or not event_type:
        raise MalformedEvent("Event is missing its id or type")

    base: Dict[str, Any] = {
        "id": str(event_id),
        "type": str(event_type),
        "created": from_epoch(body.get("created")),
    }
    parser = _PARSERS.get(str(event_type))
    if parser is None:
        return UnrecognizedEvent(**base)

    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"Event {event_id} has no data object", detail={"event_id": str(event_id)})
    try:
        return parser(base, obj)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedEvent(
            f"Event {event_id} of type {event_type} could not be parsed: {exc}",
            detail={"event_id": str(event_id)},
        ) from exc


__all__ = [
    "CheckoutSessionCompleted",
    "HANDLED_EVENT_TYPES",
    "InvoicePaymentSucceeded",
    "PaymentIntentFailed",
    "PaymentIntentSucceeded",
    "ProviderEvent",
    "SIGNATURE_HEADER",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "UnrecognizedEvent",
    "construct_event",
    "parse_event",
]
