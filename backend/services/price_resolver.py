"""Price Resolver - maps (plan, cycle) to a Stripe price id for the current mode.

Standard prices come from the static table built at startup. Plans with a
fixed annual total (see ANNUAL_TOTAL_OVERRIDE_CENTS) resolve annually to an
override price that is created once per (mode, plan) and then reused forever.

Concurrency: two first callers may both miss the cache. Both create the
Stripe price with the same idempotency key, so Stripe hands back one price,
and both store it through a create-if-absent write keyed by (mode, plan).
"""
import logging
from typing import Optional

from models import AuditAction, PriceOverride, UserRole
from services.billing_errors import ConfigurationError, ProviderError
from services.entitlement_store import EntitlementStore
from services.plan_registry import BillingCycle, PlanName, plan_registry
from services.stripe_gateway import BillingProvider
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class PriceResolver:
    def __init__(self, store: EntitlementStore, provider: BillingProvider):
        self.store = store
        self.provider = provider

    @property
    def mode(self) -> str:
        return self.provider.mode.value

    def static_price_id(self, plan: PlanName, cycle: BillingCycle) -> str:
        return (self.provider.price_table.get(plan.value) or {}).get(cycle.value, "")

    async def resolve_price(self, plan: PlanName, cycle: BillingCycle) -> str:
        """Return the price id for (plan, cycle); ConfigurationError if none resolves."""
        if not plan_registry.is_priced(plan):
            raise ConfigurationError(f"Stripe Price ID not configured for {plan.value} {cycle.value}.")

        price_id = self.static_price_id(plan, cycle)

        override_cents = plan_registry.annual_override_cents(plan)
        if cycle == BillingCycle.ANNUALLY and override_cents:
            monthly_price_id = self.static_price_id(plan, BillingCycle.MONTHLY)
            if monthly_price_id:
                price_id = await self.get_or_create_override(plan, monthly_price_id, override_cents)

        if not price_id:
            raise ConfigurationError(f"Stripe Price ID not configured for {plan.value} {cycle.value}.")
        return price_id

    async def get_or_create_override(self, plan: PlanName, monthly_price_id: str, annual_total_cents: int) -> str:
        existing = await self.store.get_price_override(self.mode, plan.value)
        if existing and existing.get("price_id"):
            return existing["price_id"]

        try:
            monthly_price = self.provider.retrieve_price(monthly_price_id)
            currency = monthly_price.get("currency") or "usd"
            product = monthly_price.get("product")
            if isinstance(product, dict):
                product = product.get("id")
            if not product:
                raise ConfigurationError(f"Could not resolve Stripe product for {plan.value} monthly price")

            created = self.provider.create_price(
                idempotency_key=f"annual-override-{self.mode}-{plan.value}-{annual_total_cents}",
                currency=currency,
                product=product,
                unit_amount=annual_total_cents,
                recurring={"interval": "year"},
                nickname=f"{plan.value} Annual (Override)",
                metadata={
                    "planName": plan.value,
                    "purpose": "annual_total_override",
                    "mode": self.mode,
                },
            )
        except ProviderError as e:
            # Nothing is cached on failure; the next request retries from scratch.
            raise ConfigurationError(f"Could not create annual price for {plan.value}: {e.message}")

        stored = await self.store.create_price_override_if_absent(
            PriceOverride(
                mode=self.mode,
                plan_name=plan.value,
                price_id=created["id"],
                unit_amount=annual_total_cents,
                currency=currency,
            )
        )
        if stored["price_id"] == created["id"]:
            logger.info("Created %s annual override price %s (%s)", plan.value, created["id"], self.mode)
            await create_audit_log(
                action=AuditAction.PRICE_OVERRIDE_CREATED,
                actor_role=UserRole.ROLE_SYSTEM,
                resource_type="stripe_price_override",
                resource_id=created["id"],
                metadata={"plan_name": plan.value, "mode": self.mode, "unit_amount": annual_total_cents},
            )
        return stored["price_id"]

    async def plan_for_price_id(self, price_id: Optional[str]) -> Optional[PlanName]:
        """Reverse lookup: static table first, then stored overrides for this mode."""
        plan = plan_registry.plan_from_price_id(price_id, self.provider.price_table)
        if plan:
            return plan
        override = await self.store.find_price_override_by_price_id(price_id)
        if override and override.get("mode") == self.mode:
            return PlanName(override["plan_name"])
        return None
