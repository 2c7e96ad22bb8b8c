"""Exceptions raised by the billing synchronization engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base error carrying a machine readable code and a human readable message."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ProviderUnavailable(BillingError):
    """Network failure, timeout or 5xx from the payment provider. Safe to retry."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="provider_unavailable",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
        )


class ProviderRejected(BillingError):
    """4xx from the payment provider; needs administrator attention."""

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.http_status = http_status
        super().__init__(
            code="provider_rejected",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
        )


class ProviderObjectMissing(ProviderRejected):
    """The provider answered 404 for an object id we hold."""


class NotFound(BillingError):
    def __init__(self, object_type: str, object_id: str) -> None:
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(
            code=f"{object_type}_not_found",
            message=f"{object_type.capitalize()} {object_id} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"object_id": object_id},
        )


class AlreadyProcessed(BillingError):
    """Duplicate delivery of a provider event. Not a failure."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(
            code="already_processed",
            message=f"Event {event_id} was already processed",
            status_code=status.HTTP_200_OK,
            detail={"event_id": event_id},
        )


class InconsistentState(BillingError):
    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="inconsistent_state",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class IntegrityMismatch(BillingError):
    """Drift between the local plan and its provider price."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="integrity_mismatch",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class SignatureVerificationError(BillingError):
    def __init__(self, message: str) -> None:
        super().__init__(code="invalid_signature", message=message)


class MalformedEvent(BillingError):
    """Event payload that can never be applied, e.g. checkout without metadata."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(code="malformed_event", message=message, detail=detail)


__all__ = [
    "AlreadyProcessed",
    "BillingError",
    "InconsistentState",
    "IntegrityMismatch",
    "MalformedEvent",
    "NotFound",
    "ProviderObjectMissing",
    "ProviderRejected",
    "ProviderUnavailable",
    "SignatureVerificationError",
]
