"""Core service coordinating billing state between local records and the provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .audit import AuditLog
from .catalog import PlanCatalogSync
from .config import BillingConfig
from .events import ProviderEvent, construct_event, parse_event
from .gateway import PaymentGateway
from .interfaces import BillingRepository
from .models import (
    EventOutcome,
    PlanAssignmentResult,
    ProvisioningResult,
    SyncPlanResult,
    ValidationResult,
)
from .processor import WebhookProcessor
from .provisioning import CustomerProvisioner
from .validator import IntegrationValidator

logger = logging.getLogger("billing")


@dataclass
class BillingSyncEngine:
    """Entry point used by routes and jobs.

    Administrator operations return structured results; webhook handling
    verifies, parses, de-duplicates and applies provider events.
    """

    repository: BillingRepository
    gateway: PaymentGateway
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    claim_lease_seconds: int = 300
    clock: Optional[Callable[[], datetime]] = None
    audit_log: AuditLog = field(init=False)
    catalog: PlanCatalogSync = field(init=False)
    provisioner: CustomerProvisioner = field(init=False)
    validator: IntegrationValidator = field(init=False)
    processor: WebhookProcessor = field(init=False)

    def __post_init__(self) -> None:
        self.audit_log = AuditLog(self.repository)
        self.catalog = PlanCatalogSync(self.repository, self.gateway, self.audit_log)
        self.provisioner = CustomerProvisioner(self.repository, self.gateway, self.catalog, self.audit_log)
        self.validator = IntegrationValidator(self.repository, self.gateway)
        self.processor = WebhookProcessor(
            self.repository,
            self.gateway,
            self.audit_log,
            claim_lease_seconds=self.claim_lease_seconds,
            clock=self.clock,
        )

    @classmethod
    def from_config(
        cls,
        config: BillingConfig,
        *,
        repository: BillingRepository,
        gateway: PaymentGateway,
    ) -> "BillingSyncEngine":
        return cls(
            repository=repository,
            gateway=gateway,
            webhook_secret=config.webhook_secret,
            webhook_tolerance_seconds=config.webhook_tolerance_seconds,
            claim_lease_seconds=config.event_claim_lease_seconds,
        )

    def sync_plan(self, plan_id: str, *, actor_id: Optional[str] = None) -> SyncPlanResult:
        return self.catalog.sync_plan(plan_id, actor_id=actor_id)

    def rotate_price(self, plan_id: str, *, actor_id: Optional[str] = None) -> SyncPlanResult:
        return self.catalog.rotate_price(plan_id, actor_id=actor_id)

    def ensure_customer_and_subscription(
        self,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> ProvisioningResult:
        return self.provisioner.ensure_customer_and_subscription(user_id, actor_id=actor_id)

    def assign_plan(self, user_id: str, plan_id: str, *, actor_id: Optional[str] = None) -> PlanAssignmentResult:
        return self.provisioner.assign_plan(user_id, plan_id, actor_id=actor_id)

    def validate_plan(self, plan_id: str) -> ValidationResult:
        return self.validator.validate(plan_id)

    def process_event(self, event: ProviderEvent) -> EventOutcome:
        return self.processor.process(event)

    def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> EventOutcome:
        """Authenticate a raw delivery and apply it."""

        body = construct_event(
            payload,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )
        return self.process_event(parse_event(body))


__all__ = ["BillingSyncEngine"]
