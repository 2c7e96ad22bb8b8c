"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment provider integration."""

    provider_api_key: str
    provider_api_base: str
    webhook_secret: str
    provider_timeout_seconds: float
    webhook_tolerance_seconds: int
    event_claim_lease_seconds: int
    default_currency: str

    @property
    def provider_configured(self) -> bool:
        return bool(self.provider_api_key)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    api_base = (env_mapping.get("PROVIDER_API_BASE") or "https://api.stripe.com").rstrip("/")
    timeout = _to_float(env_mapping.get("PROVIDER_TIMEOUT_SECONDS"), default=10.0)
    tolerance = _to_int(env_mapping.get("WEBHOOK_TOLERANCE_SECONDS"), default=300)
    lease = _to_int(env_mapping.get("EVENT_CLAIM_LEASE_SECONDS"), default=300)

    return BillingConfig(
        provider_api_key=env_mapping.get("PROVIDER_API_KEY", ""),
        provider_api_base=api_base,
        webhook_secret=env_mapping.get("PROVIDER_WEBHOOK_SECRET", ""),
        # Unbounded provider calls are not allowed.
        provider_timeout_seconds=timeout if timeout > 0 else 10.0,
        webhook_tolerance_seconds=max(0, tolerance),
        event_claim_lease_seconds=max(30, lease),
        default_currency=(env_mapping.get("BILLING_DEFAULT_CURRENCY") or "usd").strip().lower(),
    )


__all__ = ["BillingConfig", "load_billing_config"]
