"""API routes exposing billing synchronization."""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Request
from starlette.concurrency import run_in_threadpool

from ..billing import BillingError, SignatureVerificationError
from ..billing.events import SIGNATURE_HEADER
from ..schemas.billing import (
    PlanAssignmentRequest,
    PlanAssignmentResponse,
    PlanSyncResponse,
    PlanValidationResponse,
    UserRepairResponse,
    WebhookAckResponse,
)
from ..services.billing import get_billing_engine

logger = logging.getLogger("billing.routes")


try:  # pragma: no cover - resolve shared dependencies when imported from FastAPI app
    from backend import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ... import app_context  # type: ignore[no-redef]


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_admin(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_admin(session_token=session_token)


router = APIRouter(prefix="/api/billing", tags=["billing"])
admin_router = APIRouter(prefix="/api/admin/billing", tags=["billing-admin"])


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(request: Request) -> WebhookAckResponse:
    payload = await request.body()
    engine = get_billing_engine()
    try:
        # Store and provider calls block; keep them off the event loop.
        outcome = await run_in_threadpool(engine.handle_webhook, payload, request.headers.get(SIGNATURE_HEADER))
    except SignatureVerificationError as exc:
        logger.warning("Rejected webhook delivery: %s", exc.message)
        raise exc.to_http_exception() from exc
    except BillingError as exc:
        # Transient failures answer 5xx so the provider redelivers.
        raise exc.to_http_exception() from exc
    return WebhookAckResponse.from_outcome(outcome)


@admin_router.post("/plans/{plan_id}/sync", response_model=PlanSyncResponse)
def sync_plan(plan_id: str, *, current_user=Depends(_get_current_admin)) -> PlanSyncResponse:
    engine = get_billing_engine()
    try:
        result = engine.sync_plan(plan_id, actor_id=str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PlanSyncResponse.from_result(result)


@admin_router.post("/plans/{plan_id}/rotate-price", response_model=PlanSyncResponse)
def rotate_plan_price(plan_id: str, *, current_user=Depends(_get_current_admin)) -> PlanSyncResponse:
    engine = get_billing_engine()
    try:
        result = engine.rotate_price(plan_id, actor_id=str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PlanSyncResponse.from_result(result)


@admin_router.get("/plans/{plan_id}/validate", response_model=PlanValidationResponse)
def validate_plan(plan_id: str, *, current_user=Depends(_get_current_admin)) -> PlanValidationResponse:
    engine = get_billing_engine()
    try:
        result = engine.validate_plan(plan_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PlanValidationResponse.from_result(result)


@admin_router.post("/users/{user_id}/repair", response_model=UserRepairResponse)
def repair_user(user_id: str, *, current_user=Depends(_get_current_admin)) -> UserRepairResponse:
    engine = get_billing_engine()
    try:
        result = engine.ensure_customer_and_subscription(user_id, actor_id=str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return UserRepairResponse.from_result(result)


@admin_router.post("/users/{user_id}/plan", response_model=PlanAssignmentResponse)
def assign_user_plan(
    user_id: str,
    payload: PlanAssignmentRequest,
    *,
    current_user=Depends(_get_current_admin),
) -> PlanAssignmentResponse:
    engine = get_billing_engine()
    try:
        result = engine.assign_plan(user_id, payload.plan_id, actor_id=str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PlanAssignmentResponse.from_result(result)


__all__ = ["admin_router", "router"]
