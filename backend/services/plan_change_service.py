"""Plan-Change Orchestrator - the synchronous write path.

Decides what a requested (plan, cycle) means for the caller's current
entitlement and drives Stripe plus the Entitlement Store accordingly:

- no subscription         -> NotFound; first purchases go through Checkout
- target Free             -> cancel at period end (no proration, no refund)
- strictly lower rank     -> DowngradeScheduler, effective at period end
- same or higher rank     -> immediate prorated update + on-demand invoice

Provider calls run strictly in sequence. Once the subscription update has
gone out there is no rollback: a later failure surfaces as an error and the
next webhook (or a retry) converges the record.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models import AuditAction, PlanChangeSource, UserRole
from services.billing_errors import (
    ConfigurationError,
    InvalidRequest,
    NotFound,
    PaymentCollectionFailed,
    ProviderError,
)
from services.downgrade_scheduler import DowngradeScheduler
from services.entitlement_store import PENDING_DOWNGRADE_CLEARED, EntitlementStore
from services.plan_change_events import record_plan_change_event
from services.plan_registry import (
    BillingCycle,
    ChangeKind,
    PlanName,
    plan_registry,
    usage_reset_fields,
)
from services.price_resolver import PriceResolver
from services.side_effects import best_effort
from services.stripe_gateway import (
    BillingProvider,
    first_item,
    item_interval,
    subscription_period_end,
    ts_to_datetime,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def _invoice_summary(invoice: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": invoice.get("id"),
        "status": invoice.get("status"),
        "amount_due": invoice.get("amount_due"),
        "amount_paid": invoice.get("amount_paid"),
        "currency": invoice.get("currency"),
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
    }


class PlanChangeOrchestrator:
    def __init__(
        self,
        db,
        provider: BillingProvider,
        store: Optional[EntitlementStore] = None,
        price_resolver: Optional[PriceResolver] = None,
        scheduler: Optional[DowngradeScheduler] = None,
    ):
        self.db = db
        self.provider = provider
        self.store = store or EntitlementStore(db)
        self.price_resolver = price_resolver or PriceResolver(self.store, provider)
        self.scheduler = scheduler or DowngradeScheduler(provider)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def change_plan(self, user_id: str, plan_name: Optional[str], billing_cycle: Optional[str]) -> Dict[str, Any]:
        target = plan_registry.resolve_plan(plan_name)
        cycle = plan_registry.resolve_cycle(billing_cycle)
        user, subscription_id = await self._load_subscribed_user(user_id)

        kind = plan_registry.classify_change(user.get("plan"), target)
        if kind == ChangeKind.CANCEL:
            return await self._cancel_at_period_end(user, subscription_id)

        if not plan_registry.is_priced(target):
            raise InvalidRequest(f'Cannot change to plan "{target.value}"', error_code="UNSUPPORTED_PLAN")

        subscription = self.provider.retrieve_subscription(subscription_id, expand=["items.data.price"])
        target_price_id = await self.price_resolver.resolve_price(target, cycle)

        if kind == ChangeKind.DOWNGRADE:
            return await self._schedule_downgrade(user, subscription, target, cycle, target_price_id)
        return await self._upgrade(user, subscription, target, cycle, target_price_id)

    async def cancel_at_period_end(self, user_id: str) -> Dict[str, Any]:
        user, subscription_id = await self._load_subscribed_user(user_id)
        return await self._cancel_at_period_end(user, subscription_id)

    async def reactivate(self, user_id: str) -> Dict[str, Any]:
        """Undo a pending cancellation; the subscription keeps renewing."""
        user, subscription_id = await self._load_subscribed_user(user_id)

        # Reactivation leaves the subscription renewing on its current plan.
        subscription = self.provider.retrieve_subscription(subscription_id)
        released = self.scheduler.release_pending(subscription)

        updated = self.provider.update_subscription(subscription_id, cancel_at_period_end=False)
        await self.store.merge(user_id, {
            "cancel_at_period_end": False,
            "subscription_end_date": None,
            "subscription_status": updated.get("status"),
            **PENDING_DOWNGRADE_CLEARED,
        })
        await create_audit_log(
            action=AuditAction.CANCELLATION_REVERSED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"released_schedule_id": released},
        )
        logger.info(f"Subscription reactivated for user {user_id}")
        return {
            "success": True,
            "type": "reactivated",
            "message": "Subscription reactivated successfully!",
            "cancel_at_period_end": False,
        }

    async def get_status(self, user_id: str) -> Dict[str, Any]:
        """Billing projection of the account record; never calls the provider."""
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found", error_code="USER_NOT_FOUND")
        return {
            "plan": user.get("plan") or PlanName.FREE.value,
            "billing_cycle": user.get("billing_cycle"),
            "subscription_status": user.get("subscription_status"),
            "has_subscription": bool(user.get("stripe_subscription_id")),
            "cancel_at_period_end": bool(user.get("cancel_at_period_end")),
            "subscription_end_date": _iso(user.get("subscription_end_date")),
            "pending_plan": user.get("pending_plan"),
            "pending_billing_cycle": user.get("pending_billing_cycle"),
            "pending_plan_effective_date": _iso(user.get("pending_plan_effective_date")),
            "trial_end_date": _iso(user.get("trial_end_date")),
            "referral_reward_ends_at": _iso(user.get("referral_reward_ends_at")),
        }

    async def preview_change(self, user_id: str, plan_name: Optional[str], billing_cycle: Optional[str]) -> Dict[str, Any]:
        """Classify and price a change without mutating anything."""
        target = plan_registry.resolve_plan(plan_name)
        cycle = plan_registry.resolve_cycle(billing_cycle)
        user, subscription_id = await self._load_subscribed_user(user_id)

        kind = plan_registry.classify_change(user.get("plan"), target)
        if kind == ChangeKind.CANCEL:
            return {
                "success": True,
                "type": "cancel_at_period_end",
                "amount_due": 0,
                "currency": "usd",
                "message": "Switching to Free will cancel at period end. No refunds for unused time.",
            }
        if kind == ChangeKind.DOWNGRADE:
            return {
                "success": True,
                "type": "downgrade_scheduled",
                "amount_due": 0,
                "currency": "usd",
                "message": "Downgrades take effect at the end of the billing period. No refunds for unused time.",
            }

        if not plan_registry.is_priced(target):
            raise InvalidRequest(f'Cannot preview plan "{target.value}"', error_code="UNSUPPORTED_PLAN")

        target_price_id = await self.price_resolver.resolve_price(target, cycle)
        subscription = self.provider.retrieve_subscription(subscription_id, expand=["items.data.price"])
        item = first_item(subscription)
        if not item or not item.get("id"):
            raise ProviderError("Unable to identify subscription item")

        same_interval = item_interval(item) == plan_registry.interval_for_cycle(cycle)
        upcoming = self.provider.preview_invoice(
            customer=subscription.get("customer"),
            subscription=subscription_id,
            subscription_details={
                "items": [{"id": item["id"], "price": target_price_id, "quantity": 1}],
                "proration_behavior": "create_prorations",
                "billing_cycle_anchor": "unchanged" if same_interval else "now",
                "proration_date": int(datetime.now(timezone.utc).timestamp()),
            },
        )
        lines = []
        for line in (upcoming.get("lines") or {}).get("data") or []:
            proration = line.get("proration")
            if proration is None:
                details = ((line.get("parent") or {}).get("subscription_item_details") or {})
                proration = bool(details.get("proration"))
            lines.append({"description": line.get("description"), "amount": line.get("amount"), "proration": proration})

        return {
            "success": True,
            "type": "upgrade_prorated_preview" if same_interval else "upgrade_cross_interval_prorated_preview",
            "amount_due": upcoming.get("amount_due"),
            "currency": upcoming.get("currency"),
            "lines": lines,
            "message": "This is an upcoming invoice preview. Final amount is calculated by Stripe at confirmation.",
        }

    # =========================================================================
    # Paths
    # =========================================================================

    async def _load_subscribed_user(self, user_id: str):
        if not self.provider.settings.is_configured:
            raise ConfigurationError("Payment system not configured")
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found", error_code="USER_NOT_FOUND")
        subscription_id = user.get("stripe_subscription_id")
        if not subscription_id or user.get("subscription_status") == "canceled":
            raise NotFound(
                "This account does not have an active subscription to change. Use Checkout to start a subscription.",
                error_code="NO_ACTIVE_SUBSCRIPTION",
            )
        return user, subscription_id

    async def _cancel_at_period_end(self, user: Dict[str, Any], subscription_id: str) -> Dict[str, Any]:
        user_id = user["user_id"]

        # A pending downgrade shares the deferred-effect slot; drop it first.
        subscription = self.provider.retrieve_subscription(subscription_id)
        released = self.scheduler.release_pending(subscription)

        updated = self.provider.update_subscription(subscription_id, cancel_at_period_end=True)
        period_end = ts_to_datetime(subscription_period_end(updated))

        await self.store.merge(user_id, {
            "cancel_at_period_end": True,
            "subscription_end_date": period_end,
            "subscription_status": updated.get("status"),
            **PENDING_DOWNGRADE_CLEARED,
        })
        await create_audit_log(
            action=AuditAction.CANCELLATION_REQUESTED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"subscription_end_date": _iso(period_end), "released_schedule_id": released},
        )
        logger.info(f"Cancel at period end requested for user {user_id} (ends {_iso(period_end)})")
        return {
            "success": True,
            "type": "cancel_at_period_end",
            "message": "Subscription will cancel at period end. No refunds for unused time.",
            "subscription_end_date": _iso(period_end),
        }

    async def _schedule_downgrade(
        self,
        user: Dict[str, Any],
        subscription: Dict[str, Any],
        target: PlanName,
        cycle: BillingCycle,
        target_price_id: str,
    ) -> Dict[str, Any]:
        user_id = user["user_id"]

        # Cancellation and downgrade are mutually exclusive pending states.
        if subscription.get("cancel_at_period_end") or user.get("cancel_at_period_end"):
            self.provider.update_subscription(subscription["id"], cancel_at_period_end=False)

        effective_date = self.scheduler.schedule(subscription, target, cycle, target_price_id)

        await self.store.merge(user_id, {
            "pending_plan": target.value,
            "pending_billing_cycle": cycle.value,
            "pending_plan_effective_date": effective_date,
            "subscription_end_date": effective_date,
            "cancel_at_period_end": False,
        })
        await create_audit_log(
            action=AuditAction.DOWNGRADE_SCHEDULED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription["id"],
            metadata={
                "from_plan": user.get("plan"),
                "to_plan": target.value,
                "billing_cycle": cycle.value,
                "effective_date": _iso(effective_date),
            },
        )
        return {
            "success": True,
            "type": "downgrade_scheduled",
            "message": "Downgrade scheduled for period end. No refunds for unused time.",
            "effective_date": _iso(effective_date),
        }

    async def _upgrade(
        self,
        user: Dict[str, Any],
        subscription: Dict[str, Any],
        target: PlanName,
        cycle: BillingCycle,
        target_price_id: str,
    ) -> Dict[str, Any]:
        user_id = user["user_id"]
        subscription_id = subscription["id"]
        current_plan = user.get("plan") or PlanName.FREE.value

        item = first_item(subscription)
        if not item or not item.get("id"):
            raise ProviderError("Unable to identify subscription item")

        # An upgrade supersedes any pending downgrade, on Stripe as well as locally.
        released = self.scheduler.release_pending(subscription)

        same_interval = item_interval(item) == plan_registry.interval_for_cycle(cycle)
        self.provider.update_subscription(
            subscription_id,
            cancel_at_period_end=False,
            proration_behavior="create_prorations",
            billing_cycle_anchor="unchanged" if same_interval else "now",
            items=[{"id": item["id"], "price": target_price_id}],
            metadata={
                **(subscription.get("metadata") or {}),
                "planName": target.value,
                "billingCycle": cycle.value,
            },
        )

        created = self.provider.create_invoice(
            customer=subscription.get("customer"),
            subscription=subscription_id,
            auto_advance=True,
            pending_invoice_items_behavior="include",
            description=f"Plan change: {current_plan} → {target.value}",
        )
        finalized = self.provider.finalize_invoice(created["id"])
        invoice = finalized
        payment_pending = False
        if (finalized.get("amount_due") or 0) > 0 and finalized.get("status") != "paid":
            try:
                invoice = self.provider.pay_invoice(finalized["id"])
            except PaymentCollectionFailed as e:
                # The plan change stands; the user completes payment on the hosted invoice.
                logger.warning(f"Upgrade invoice {finalized['id']} for user {user_id} left open: {e.message}")
                payment_pending = True

        now = datetime.now(timezone.utc)
        await self.store.merge(user_id, {
            "plan": target.value,
            "billing_cycle": cycle.value,
            "cancel_at_period_end": False,
            "subscription_end_date": None,
            "subscription_status": subscription.get("status"),
            "subscription_start_date": now,
            **usage_reset_fields(),
            **PENDING_DOWNGRADE_CLEARED,
        })

        if current_plan != target.value:
            await best_effort(
                "record_plan_change_event",
                record_plan_change_event(
                    self.db,
                    user_id=user_id,
                    from_plan=current_plan,
                    to_plan=target.value,
                    changed_at=now,
                    source=PlanChangeSource.SUBSCRIPTION_CHANGE_API,
                    stripe_subscription_id=subscription_id,
                ),
            )

        await create_audit_log(
            action=AuditAction.PLAN_UPGRADED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"plan": current_plan, "billing_cycle": user.get("billing_cycle")},
            after_state={"plan": target.value, "billing_cycle": cycle.value},
            metadata={
                "invoice_id": invoice.get("id"),
                "payment_pending": payment_pending,
                "released_schedule_id": released,
            },
        )
        logger.info(
            f"Plan upgraded for user {user_id}: {current_plan} -> {target.value}/{cycle.value} "
            f"(invoice {invoice.get('id')}, status {invoice.get('status')})"
        )
        return {
            "success": True,
            "type": "upgrade_prorated" if same_interval else "upgrade_cross_interval_prorated",
            "message": "Plan updated with proration credit applied to unused time.",
            "payment_pending": payment_pending,
            "invoice": _invoice_summary(invoice),
        }
