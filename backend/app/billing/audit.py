"""Append-only audit trail for billing state changes."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .interfaces import BillingRepository
from .models import SYSTEM_ACTOR, AuditAction, AuditLogEntry

logger = logging.getLogger("billing.audit")


class AuditLog:
    """Writes audit entries to the store and mirrors them to the application log.

    A failed audit write never undoes the state change it describes; it is
    logged and the operation carries on.
    """

    def __init__(self, repository: BillingRepository) -> None:
        self._repository = repository

    def record(
        self,
        action: AuditAction,
        *,
        object_type: str,
        object_id: str,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor_id=actor_id or SYSTEM_ACTOR,
            action=action,
            object_type=object_type,
            object_id=object_id,
            details=details or {},
        )
        logger.info(
            "Billing audit %s %s=%s actor=%s",
            entry.action.value,
            entry.object_type,
            entry.object_id,
            entry.actor_id,
        )
        try:
            self._repository.append_audit_entry(entry)
        except Exception:
            logger.warning(
                "Failed to persist audit entry %s for %s %s",
                entry.action.value,
                entry.object_type,
                entry.object_id,
                exc_info=True,
            )
        return entry


__all__ = ["AuditLog"]
