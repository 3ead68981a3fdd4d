"""Billing Routes - plan changes for an existing subscription.

Endpoints:
- POST /plan-change - Upgrade (prorated), downgrade (scheduled) or cancel to Free
- POST /api/billing/plan-change - Alias of /plan-change
- POST /api/billing/preview-change - Classify and price a change without applying it
- POST /api/billing/cancel - Cancel at period end, or reactivate
- GET /api/billing/status - Current plan, cancellation and pending-downgrade state

First purchases go through Checkout; these routes only act on an account
that already has a subscription.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional
import logging
import uuid

from dependencies import get_plan_change_orchestrator
from middleware import get_current_user_id
from services.billing_errors import BillingError
from services.plan_change_service import PlanChangeOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["billing"])


class PlanChangeRequest(BaseModel):
    """Request to change plan; accepts the camelCase body the web client sends."""
    model_config = ConfigDict(populate_by_name=True)

    plan_name: Optional[str] = Field(None, alias="planName")
    billing_cycle: Optional[str] = Field(None, alias="billingCycle")


class CancelRequest(BaseModel):
    action: Literal["cancel", "reactivate"] = "cancel"


def _billing_http_error(e: BillingError, user_id: str, operation: str) -> HTTPException:
    request_id = str(uuid.uuid4())
    if e.status_code >= 500:
        logger.error("%s failed user_id=%s request_id=%s error_code=%s: %s", operation, user_id, request_id, e.error_code, e.message)
    else:
        logger.warning("%s rejected user_id=%s request_id=%s error_code=%s: %s", operation, user_id, request_id, e.error_code, e.message)
    return HTTPException(
        status_code=e.status_code,
        detail={"error_code": e.error_code, "message": e.message, "request_id": request_id},
    )


def _unexpected_http_error(e: Exception, user_id: str, operation: str) -> HTTPException:
    request_id = str(uuid.uuid4())
    logger.exception("%s error user_id=%s request_id=%s: %s", operation, user_id, request_id, e)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error_code": "INTERNAL_ERROR", "message": "Failed to process billing request", "request_id": request_id},
    )


@router.post("/plan-change")
@router.post("/api/billing/plan-change")
async def change_plan(
    body: PlanChangeRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PlanChangeOrchestrator = Depends(get_plan_change_orchestrator),
):
    """
    Change the plan of an existing subscription.

    Returns type cancel_at_period_end | downgrade_scheduled |
    upgrade_prorated | upgrade_cross_interval_prorated. An upgrade whose
    payment could not be collected still succeeds, with payment_pending
    and the hosted invoice URL.
    """
    try:
        return await orchestrator.change_plan(user_id, body.plan_name, body.billing_cycle)
    except BillingError as e:
        raise _billing_http_error(e, user_id, "Plan change")
    except Exception as e:
        raise _unexpected_http_error(e, user_id, "Plan change")


@router.post("/api/billing/preview-change")
async def preview_change(
    body: PlanChangeRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PlanChangeOrchestrator = Depends(get_plan_change_orchestrator),
):
    """Preview what a plan change would cost. Nothing is mutated."""
    try:
        return await orchestrator.preview_change(user_id, body.plan_name, body.billing_cycle)
    except BillingError as e:
        raise _billing_http_error(e, user_id, "Plan change preview")
    except Exception as e:
        raise _unexpected_http_error(e, user_id, "Plan change preview")


@router.post("/api/billing/cancel")
async def cancel_subscription(
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PlanChangeOrchestrator = Depends(get_plan_change_orchestrator),
):
    """Cancel at period end (same as switching to Free), or undo that cancellation."""
    try:
        if body.action == "reactivate":
            return await orchestrator.reactivate(user_id)
        return await orchestrator.cancel_at_period_end(user_id)
    except BillingError as e:
        raise _billing_http_error(e, user_id, f"Subscription {body.action}")
    except Exception as e:
        raise _unexpected_http_error(e, user_id, f"Subscription {body.action}")


@router.get("/api/billing/status")
async def get_billing_status(
    user_id: str = Depends(get_current_user_id),
    orchestrator: PlanChangeOrchestrator = Depends(get_plan_change_orchestrator),
):
    """Current billing state of the authenticated account."""
    try:
        return await orchestrator.get_status(user_id)
    except BillingError as e:
        raise _billing_http_error(e, user_id, "Billing status")
