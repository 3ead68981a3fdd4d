"""Stripe Webhook Service - the asynchronous, eventually authoritative write path.

Key Principles:
1. Idempotency: every event is recorded in stripe_events and applied once
2. Signature verification: unsigned or mis-signed payloads are rejected
3. Accounts are located by the provider's customer id, never by caller input
4. Every write is "set field to X", so replays converge on the same record
5. Side effects (referrals, plan-change events, admin email) are best-effort

Events Handled:
- checkout.session.completed (first purchase)
- customer.subscription.created / customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_succeeded (invoice.paid is treated the same)
- invoice.payment_failed
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from models import AuditAction, PlanChangeSource, StripeEventStatus, UserRole
from services.billing_errors import WebhookSignatureError
from services.billing_notifications import notify_payment_failed
from services.email_service import email_service
from services.entitlement_store import PENDING_DOWNGRADE_CLEARED, EntitlementStore
from services.plan_change_events import record_plan_change_event
from services.plan_registry import BillingCycle, PlanName, plan_registry, usage_reset_fields
from services.price_resolver import PriceResolver
from services.referral_rewards import grant_referral_reward_on_conversion
from services.side_effects import best_effort, fire_and_forget
from services.stripe_gateway import (
    BillingProvider,
    first_item,
    item_price_id,
    object_id,
    subscription_period_end,
    ts_to_datetime,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = (event.get("data") or {}).get("object") or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "customer_id": object_id(obj.get("customer")),
        "subscription_id": object_id(obj.get("subscription")) or (obj.get("id") if obj.get("object") == "subscription" else None),
    }


def _cycle_from_subscription(subscription: Dict[str, Any]) -> Optional[BillingCycle]:
    item = first_item(subscription)
    price = (item or {}).get("price")
    if isinstance(price, dict):
        interval = (price.get("recurring") or {}).get("interval")
        if interval:
            return plan_registry.cycle_from_interval(interval)
    raw = ((subscription.get("metadata") or {}).get("billingCycle") or "").strip()
    try:
        return BillingCycle(raw) if raw else None
    except ValueError:
        return None


def _invoice_service_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    """End of the period the invoice paid for, i.e. the next renewal."""
    ends = [
        (line.get("period") or {}).get("end")
        for line in ((invoice.get("lines") or {}).get("data") or [])
    ]
    ends = [end for end in ends if end]
    return ts_to_datetime(max(ends)) if ends else None


class StripeWebhookService:
    """Stripe webhook handler with an idempotent event ledger."""

    def __init__(self, provider: BillingProvider, db):
        self.provider = provider
        self.db = db
        self.store = EntitlementStore(db)
        self.price_resolver = PriceResolver(self.store, provider)

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: str) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details). success is False only when the
            signature or payload could not be verified.
        """
        try:
            event = self.provider.construct_event(payload, signature)
        except WebhookSignatureError as e:
            return False, "Invalid signature", {"error": e.message}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s customer_id=%s subscription_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("customer_id"), ctx.get("subscription_id"),
        )

        existing = await self.db.stripe_events.find_one({"event_id": event_id})
        if existing and existing.get("status") == StripeEventStatus.PROCESSED.value:
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": StripeEventStatus.PROCESSING.value,
            "error": None,
            "related_user_id": None,
            "related_subscription_id": ctx.get("subscription_id"),
            "raw_minimal": self._extract_safe_data(event),
        }
        if existing:
            await self.db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await self.db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await self.db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": StripeEventStatus.FAILED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role=UserRole.ROLE_SYSTEM,
                resource_type="stripe_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
            )
            fire_and_forget(
                "stripe_webhook_failure_admin_email",
                email_service.send_admin_alert(
                    subject="[Admin] Stripe webhook processing failure",
                    text_body=f"Event {event_id} ({event_type}) raised an exception.\n\nError: {str(e)[:1000]}",
                    db=self.db,
                ),
            )
            # Acknowledge anyway; the failure is on record and redelivery re-processes FAILED events
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

        await self.db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": StripeEventStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc),
                "related_user_id": result.get("user_id"),
            }},
        )
        if result.get("handled"):
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_PROCESSED,
                actor_role=UserRole.ROLE_SYSTEM,
                user_id=result.get("user_id"),
                resource_type="stripe_event",
                resource_id=event_id,
                metadata={"event_type": event_type},
            )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s",
            event_id, event_type, result.get("user_id"),
        )
        return True, "Processed", result

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """
        Handle checkout.session.completed for subscription checkouts.

        The account is matched by customer id first; a brand-new customer is
        matched by the user id our own checkout stamped on the session.
        Plan and cycle are read from the subscription itself.
        """
        if session.get("mode") != "subscription" or not session.get("subscription"):
            logger.info(f"Ignoring checkout mode: {session.get('mode')}")
            return {"handled": False, "mode": session.get("mode")}

        metadata = session.get("metadata") or {}
        customer_id = object_id(session.get("customer"))
        subscription = self.provider.retrieve_subscription(
            object_id(session.get("subscription")), expand=["items.data.price"]
        )
        logger.info(
            "HANDLER_START event.type=checkout.session.completed stripe_customer_id=%s subscription_id=%s checkout_session_id=%s",
            customer_id, subscription.get("id"), session.get("id"),
        )

        user = await self.store.find_by_customer(customer_id)
        user_id = (user or {}).get("user_id") or metadata.get("userId") or session.get("client_reference_id")
        if not user_id:
            logger.warning(f"No account for checkout session {session.get('id')} (customer {customer_id})")
            return {"handled": False, "reason": "no_user"}
        if user is None:
            user = await self.store.get_user(user_id) or {}

        from_plan = user.get("plan")
        plan = await self._derive_plan(subscription, fallback=metadata.get("planName"))
        cycle = _cycle_from_subscription(subscription) or plan_registry.resolve_cycle(
            metadata.get("billingCycle") or BillingCycle.MONTHLY.value
        )
        now = datetime.now(timezone.utc)
        status = subscription.get("status")

        fields = {
            "user_id": user_id,
            "plan": plan.value,
            "billing_cycle": cycle.value,
            "stripe_customer_id": object_id(subscription.get("customer")) or customer_id,
            "stripe_subscription_id": subscription.get("id"),
            "subscription_status": status,
            "subscription_start_date": now,
            "cancel_at_period_end": False,
            "subscription_end_date": None,
            "trial_end_date": ts_to_datetime(subscription.get("trial_end")) if status == "trialing" else None,
            **usage_reset_fields(),
            **PENDING_DOWNGRADE_CLEARED,
        }
        await self.store.merge(user_id, fields, upsert=True)

        if from_plan != plan.value:
            await best_effort(
                "record_plan_change_event",
                record_plan_change_event(
                    self.db,
                    user_id=user_id,
                    from_plan=from_plan,
                    to_plan=plan.value,
                    changed_at=now,
                    source=PlanChangeSource.STRIPE_WEBHOOK,
                    stripe_session_id=session.get("id"),
                    stripe_subscription_id=subscription.get("id"),
                ),
            )
        await self._referral_hook(user_id, plan.value, user.get("referred_by_code") or metadata.get("referralCode"))

        logger.info(
            "HANDLER_END event.type=checkout.session.completed user_id=%s plan=%s billing_cycle=%s status=%s",
            user_id, plan.value, cycle.value, status,
        )
        return {
            "handled": True,
            "user_id": user_id,
            "subscription_id": subscription.get("id"),
            "plan": plan.value,
        }

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        """Handle customer.subscription.created / updated."""
        event_type = (event or {}).get("type", "customer.subscription.updated")
        logger.info(
            "HANDLER_START event.type=%s stripe_customer_id=%s subscription_id=%s",
            event_type, object_id(subscription.get("customer")), subscription.get("id"),
        )
        result = await self.reconcile_subscription(subscription, source=PlanChangeSource.STRIPE_WEBHOOK)
        logger.info(
            "HANDLER_END event.type=%s user_id=%s plan=%s pending_cleared=%s",
            event_type, result.get("user_id"), result.get("plan"), result.get("pending_cleared"),
        )
        return result

    async def reconcile_subscription(
        self,
        subscription: Dict[str, Any],
        source: PlanChangeSource = PlanChangeSource.STRIPE_WEBHOOK,
    ) -> Dict[str, Any]:
        """
        Overwrite the account's billing fields from a subscription snapshot.

        This is also where a scheduled downgrade becomes the real plan: once
        the provider starts phase 1 the derived plan/cycle equals the pending
        target and the pending triple is cleared. Shared with the scheduled
        convergence job, which feeds it freshly retrieved subscriptions.
        """
        customer_id = object_id(subscription.get("customer"))
        subscription_id = subscription.get("id")

        user = await self.store.find_by_customer(customer_id)
        if not user:
            user = await self.store.find_by_subscription(subscription_id)
        if not user:
            logger.warning(f"No account for customer {customer_id} / subscription {subscription_id}")
            return {"handled": False, "reason": "no_user_for_customer"}

        user_id = user["user_id"]
        old_plan = user.get("plan")
        plan = await self._derive_plan(subscription, fallback=old_plan)
        cycle = _cycle_from_subscription(subscription) or plan_registry.resolve_cycle(
            user.get("billing_cycle") or BillingCycle.MONTHLY.value
        )
        status = subscription.get("status")
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        fields: Dict[str, Any] = {
            "plan": plan.value,
            "billing_cycle": cycle.value,
            "stripe_subscription_id": subscription_id,
            "subscription_status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "trial_end_date": ts_to_datetime(subscription.get("trial_end")) if status == "trialing" else None,
        }

        pending_plan = user.get("pending_plan")
        pending_cycle = user.get("pending_billing_cycle")
        boundary_crossed = bool(pending_plan) and pending_plan == plan.value and pending_cycle in (None, cycle.value)
        pending_cleared = boundary_crossed or (bool(pending_plan) and cancel_at_period_end)
        if pending_cleared:
            fields.update(PENDING_DOWNGRADE_CLEARED)

        if cancel_at_period_end:
            fields["subscription_end_date"] = ts_to_datetime(subscription_period_end(subscription))
        elif pending_plan and not pending_cleared:
            fields["subscription_end_date"] = user.get("pending_plan_effective_date")
        else:
            fields["subscription_end_date"] = None

        await self.store.merge(user_id, fields)

        if old_plan != plan.value:
            now = datetime.now(timezone.utc)
            await best_effort(
                "record_plan_change_event",
                record_plan_change_event(
                    self.db,
                    user_id=user_id,
                    from_plan=old_plan,
                    to_plan=plan.value,
                    changed_at=now,
                    source=PlanChangeSource.SCHEDULED_DOWNGRADE if boundary_crossed else source,
                    stripe_subscription_id=subscription_id,
                ),
            )
            await self._referral_hook(user_id, plan.value, user.get("referred_by_code"))

        return {
            "handled": True,
            "user_id": user_id,
            "subscription_id": subscription_id,
            "plan": plan.value,
            "previous_plan": old_plan,
            "pending_cleared": pending_cleared,
        }

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        """Handle customer.subscription.deleted - the account falls back to Free."""
        customer_id = object_id(subscription.get("customer"))
        user = await self.store.find_by_customer(customer_id)
        if not user:
            user = await self.store.find_by_subscription(subscription.get("id"))
        if not user:
            logger.warning(f"No account for deleted subscription {subscription.get('id')} (customer {customer_id})")
            return {"handled": False, "reason": "no_user_for_customer"}

        current_subscription_id = user.get("stripe_subscription_id")
        if current_subscription_id and current_subscription_id != subscription.get("id"):
            logger.info(
                f"Ignoring deletion of superseded subscription {subscription.get('id')} "
                f"for user {user['user_id']} (current {current_subscription_id})"
            )
            return {"handled": False, "reason": "superseded_subscription"}

        user_id = user["user_id"]
        now = datetime.now(timezone.utc)
        await self.store.merge(user_id, {
            "plan": PlanName.FREE.value,
            "subscription_status": "canceled",
            "cancel_at_period_end": False,
            "subscription_end_date": now,
            **PENDING_DOWNGRADE_CLEARED,
        })

        if user.get("plan") != PlanName.FREE.value:
            await best_effort(
                "record_plan_change_event",
                record_plan_change_event(
                    self.db,
                    user_id=user_id,
                    from_plan=user.get("plan"),
                    to_plan=PlanName.FREE.value,
                    changed_at=now,
                    source=PlanChangeSource.STRIPE_WEBHOOK,
                    stripe_subscription_id=subscription.get("id"),
                ),
            )
        logger.info(f"Subscription canceled for user {user_id}")
        return {"handled": True, "user_id": user_id, "plan": PlanName.FREE.value}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """Handle invoice.payment_succeeded / invoice.paid - a new paid period begins."""
        user = await self.store.find_by_customer(object_id(invoice.get("customer")))
        if not user:
            logger.warning(f"No account for paid invoice {invoice.get('id')}")
            return {"handled": False, "reason": "no_user_for_customer"}

        user_id = user["user_id"]
        await self.store.merge(user_id, {
            **usage_reset_fields(),
            "trial_end_date": None,
            "last_payment_date": datetime.now(timezone.utc),
        })
        next_renewal = _invoice_service_period_end(invoice)
        await self.db.billing_events.update_one(
            {"type": "invoice.payment_succeeded", "invoice_id": invoice.get("id")},
            {"$set": {
                "user_id": user_id,
                "amount_paid": invoice.get("amount_paid"),
                "currency": invoice.get("currency"),
                "due_at": next_renewal,
                "created_at": datetime.now(timezone.utc),
            }},
            upsert=True,
        )
        # Covers accounts whose checkout-time grant was skipped
        await self._referral_hook(user_id, user.get("plan"), user.get("referred_by_code"))

        logger.info(f"Payment succeeded for user {user_id} (invoice {invoice.get('id')})")
        return {"handled": True, "user_id": user_id, "invoice_id": invoice.get("id")}

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        """Handle invoice.payment_failed. Status changes arrive via subscription.updated."""
        user = await self.store.find_by_customer(object_id(invoice.get("customer")))
        if not user:
            logger.warning(f"No account for failed invoice {invoice.get('id')}")
            return {"handled": False, "reason": "no_user_for_customer"}

        created = await notify_payment_failed(self.db, user, invoice)
        logger.info(f"Payment failed for user {user['user_id']} (invoice {invoice.get('id')})")
        return {"handled": True, "user_id": user["user_id"], "invoice_id": invoice.get("id"), **created}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _derive_plan(self, subscription: Dict[str, Any], fallback: Optional[str] = None) -> PlanName:
        """Metadata planName, then reverse price lookup, then the fallback (Free if none)."""
        raw = ((subscription.get("metadata") or {}).get("planName") or "").strip()
        if raw:
            try:
                return PlanName(raw)
            except ValueError:
                logger.warning(f"Unknown planName {raw!r} on subscription {subscription.get('id')}")

        plan = await self.price_resolver.plan_for_price_id(item_price_id(first_item(subscription)))
        if plan:
            return plan

        logger.warning(f"Cannot derive plan for subscription {subscription.get('id')}; keeping {fallback}")
        try:
            return PlanName(fallback) if fallback else PlanName.FREE
        except ValueError:
            return PlanName.FREE

    async def _referral_hook(self, user_id: str, plan_name: Optional[str], referral_code: Optional[str]) -> None:
        if not referral_code:
            return
        await best_effort(
            "grant_referral_reward",
            grant_referral_reward_on_conversion(self.db, user_id, plan_name, referral_code),
        )

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        obj = (event.get("data") or {}).get("object") or {}
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
        }
