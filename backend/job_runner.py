"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and tests.
Each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

PENDING_DOWNGRADE_BATCH_SIZE = 100


async def run_pending_downgrade_reconciliation(provider=None, db=None, now: Optional[datetime] = None):
    """
    Converge accounts whose scheduled downgrade should already have happened.

    Re-fetches each due subscription from Stripe and applies the same
    reconciliation as customer.subscription.updated, so a missed or delayed
    webhook still lands the downgrade. One account failing does not stop
    the batch.
    """
    from database import database
    from models import PlanChangeSource
    from services.entitlement_store import EntitlementStore
    from services.stripe_gateway import BillingProvider, StripeSettings
    from services.stripe_webhook_service import StripeWebhookService

    try:
        db = db if db is not None else database.get_db()
        provider = provider or BillingProvider(StripeSettings.from_env())
        if not provider.settings.is_configured:
            logger.warning("Pending downgrade reconciliation skipped: Stripe not configured")
            return {"message": "Stripe not configured", "count": 0}

        due = await EntitlementStore(db).list_due_pending_downgrades(
            now or datetime.now(timezone.utc), limit=PENDING_DOWNGRADE_BATCH_SIZE
        )
        service = StripeWebhookService(provider, db)
        converged = 0
        for user in due:
            try:
                subscription = provider.retrieve_subscription(
                    user["stripe_subscription_id"], expand=["items.data.price"]
                )
                result = await service.reconcile_subscription(
                    subscription, source=PlanChangeSource.SCHEDULED_DOWNGRADE
                )
                if result.get("pending_cleared"):
                    converged += 1
            except Exception as e:
                logger.warning(f"Pending downgrade reconciliation failed for user {user.get('user_id')}: {e}")

        logger.info(f"Pending downgrade reconciliation completed: {converged}/{len(due)} converged")
        return {"message": f"Pending downgrades converged: {converged} of {len(due)}", "count": converged}
    except Exception as e:
        logger.error(f"Pending downgrade reconciliation job failed: {e}")
        raise
