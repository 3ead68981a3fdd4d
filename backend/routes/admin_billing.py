"""Admin Billing Routes.

Endpoints:
- GET /api/admin/billing/events - Failed payments (last 24h) and renewals due in the next 7 days
- GET /api/admin/billing/users/{user_id} - Billing snapshot with audit trail and plan-change history
- POST /api/admin/billing/users/{user_id}/sync - Re-derive the account from the live Stripe subscription

Stripe is the billing authority: sync never invents state, it re-applies
the same reconciliation a customer.subscription.updated event would.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from dependencies import get_billing_provider, get_db
from middleware import require_admin
from models import AuditAction, PlanChangeSource, UserRole
from services.billing_errors import BillingError
from services.stripe_gateway import BillingProvider
from services.stripe_webhook_service import StripeWebhookService
from utils.audit import create_audit_log, get_audit_logs_for_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"])

EVENTS_LIMIT = 50
SNAPSHOT_FIELDS = (
    "plan",
    "billing_cycle",
    "subscription_status",
    "cancel_at_period_end",
    "subscription_end_date",
    "pending_plan",
    "pending_billing_cycle",
    "pending_plan_effective_date",
)


def _snapshot(user: Dict[str, Any]) -> Dict[str, Any]:
    return {field: user.get(field) for field in SNAPSHOT_FIELDS}


@router.get("/events")
async def get_billing_events(admin: dict = Depends(require_admin), db=Depends(get_db)):
    """Recent billing events for the admin dashboard."""
    now = datetime.now(timezone.utc)

    failed = await db.billing_events.find(
        {"type": "invoice.payment_failed", "created_at": {"$gte": now - timedelta(hours=24)}},
        {"_id": 0},
    ).sort("created_at", -1).limit(EVENTS_LIMIT).to_list(length=EVENTS_LIMIT)

    renewals = await db.billing_events.find(
        {"due_at": {"$gte": now, "$lte": now + timedelta(days=7)}},
        {"_id": 0},
    ).sort("due_at", 1).limit(EVENTS_LIMIT).to_list(length=EVENTS_LIMIT)

    return {"success": True, "failed": failed, "renewals": renewals}


@router.get("/users/{user_id}")
async def get_user_billing(user_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    """Billing snapshot for one account."""
    user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    plan_changes = await db.plan_change_events.find(
        {"user_id": user_id}, {"_id": 0}
    ).sort("changed_at", -1).limit(20).to_list(length=20)

    return {
        "user_id": user_id,
        "stripe_customer_id": user.get("stripe_customer_id"),
        "stripe_subscription_id": user.get("stripe_subscription_id"),
        "billing": _snapshot(user),
        "plan_changes": plan_changes,
        "audit_trail": await get_audit_logs_for_user(user_id),
    }


@router.post("/users/{user_id}/sync")
async def sync_user_billing(
    user_id: str,
    admin: dict = Depends(require_admin),
    db=Depends(get_db),
    provider: BillingProvider = Depends(get_billing_provider),
):
    """Force-reconcile one account from its Stripe subscription. Returns before/after."""
    user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    subscription_id = user.get("stripe_subscription_id")
    if not subscription_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User has no Stripe subscription")

    try:
        subscription = provider.retrieve_subscription(subscription_id, expand=["items.data.price"])
        result = await StripeWebhookService(provider, db).reconcile_subscription(
            subscription, source=PlanChangeSource.ADMIN_OVERRIDE
        )
    except BillingError as e:
        logger.error(f"Billing sync failed for user {user_id}: {e.message}")
        raise HTTPException(
            status_code=e.status_code,
            detail={"error_code": e.error_code, "message": e.message},
        )

    after = await db.users.find_one({"user_id": user_id}, {"_id": 0}) or {}
    before_state, after_state = _snapshot(user), _snapshot(after)
    await create_audit_log(
        action=AuditAction.ADMIN_BILLING_SYNC,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=admin.get("user_id") or admin.get("sub"),
        user_id=user_id,
        resource_type="subscription",
        resource_id=subscription_id,
        before_state=before_state,
        after_state=after_state,
        metadata={"handled": result.get("handled")},
    )
    return {"success": True, "before": before_state, "after": after_state, "result": result}
