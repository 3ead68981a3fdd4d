"""Canonical Plan Registry - Single Source of Truth for plan tiers.

This is the AUTHORITATIVE source for:
- Plan names and their rank (the only input to upgrade vs. downgrade)
- Billing cycles and their Stripe recurring intervals
- Stripe price ID mappings per key mode (test / live)
- Fixed annual totals that override the catalog price

RULES:
1. Rank alone decides direction: strictly lower rank is a downgrade,
   equal or higher rank (including cycle-only changes) is an upgrade.
2. Free is never priced; moving to Free is a cancellation.
3. Test and live price IDs never mix: every lookup is keyed by mode.
"""
from enum import Enum
from typing import Dict, Optional, Mapping
import logging
import os

from services.billing_errors import InvalidRequest

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN ENUM - Canonical Plan Names
# ============================================================================
class PlanName(str, Enum):
    FREE = "Free"
    CAPTION = "Caption"
    STARTER = "Starter"
    GROWTH = "Growth"
    PRO = "Pro"
    ELITE = "Elite"
    ONLYFANS_STUDIO = "OnlyFansStudio"
    AGENCY = "Agency"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUALLY = "annually"


class StripeMode(str, Enum):
    TEST = "test"
    LIVE = "live"


class ChangeKind(str, Enum):
    CANCEL = "cancel"
    DOWNGRADE = "downgrade"
    UPGRADE = "upgrade"


# ============================================================================
# RANKS
# ============================================================================
PLAN_RANK: Dict[PlanName, int] = {
    PlanName.FREE: 0,
    PlanName.CAPTION: 0,
    PlanName.STARTER: 0,
    PlanName.GROWTH: 0,
    PlanName.PRO: 1,
    PlanName.ELITE: 2,
    PlanName.ONLYFANS_STUDIO: 2,
    PlanName.AGENCY: 3,
}

# Plans that can be the target of a paid plan change
PRICED_PLANS = (
    PlanName.CAPTION,
    PlanName.PRO,
    PlanName.ELITE,
    PlanName.ONLYFANS_STUDIO,
    PlanName.AGENCY,
)

# Annual totals (minor units) promised for plans whose catalog annual price
# does not match. These are a fixed business promise, not catalog values.
ANNUAL_TOTAL_OVERRIDE_CENTS: Dict[PlanName, int] = {
    PlanName.PRO: 27600,
    PlanName.ELITE: 56400,
}

CYCLE_TO_INTERVAL = {
    BillingCycle.MONTHLY: "month",
    BillingCycle.ANNUALLY: "year",
}

# Monthly usage counters reset whenever a new paid period begins
USAGE_COUNTER_FIELDS = (
    "monthly_caption_generations_used",
    "monthly_image_generations_used",
    "monthly_video_generations_used",
)


def usage_reset_fields() -> Dict[str, int]:
    return {field: 0 for field in USAGE_COUNTER_FIELDS}


# ============================================================================
# STRIPE PRICE ID MAPPINGS - read per mode
# ============================================================================
def _price_env_var(plan: PlanName, cycle: BillingCycle) -> str:
    suffix = "MONTHLY" if cycle == BillingCycle.MONTHLY else "ANNUALLY"
    return f"STRIPE_PRICE_{plan.value.upper()}_{suffix}"


def get_stripe_price_mappings(
    mode: StripeMode,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Dict[str, str]]:
    """
    Build the static price table for one key mode.

    STRIPE_PRICE_<PLAN>_<CYCLE>_<TEST|LIVE> wins; the unsuffixed variable is
    the fallback. Missing entries map to an empty string.
    """
    env = os.environ if environ is None else environ
    mode_suffix = "TEST" if mode == StripeMode.TEST else "LIVE"
    mappings: Dict[str, Dict[str, str]] = {}
    for plan in PRICED_PLANS:
        mappings[plan.value] = {}
        for cycle in BillingCycle:
            base = _price_env_var(plan, cycle)
            mappings[plan.value][cycle.value] = (
                env.get(f"{base}_{mode_suffix}") or env.get(base) or ""
            ).strip()
    return mappings


# ============================================================================
# PLAN REGISTRY SERVICE
# ============================================================================
class PlanRegistryService:
    """Lookups over plan names, ranks and cycles."""

    def resolve_plan(self, plan_name: Optional[str]) -> PlanName:
        if not plan_name:
            raise InvalidRequest("planName and billingCycle are required")
        try:
            return PlanName(plan_name)
        except ValueError:
            raise InvalidRequest(f'Cannot change to plan "{plan_name}"', error_code="UNSUPPORTED_PLAN")

    def resolve_cycle(self, billing_cycle: Optional[str]) -> BillingCycle:
        if not billing_cycle:
            raise InvalidRequest("planName and billingCycle are required")
        try:
            return BillingCycle(billing_cycle)
        except ValueError:
            raise InvalidRequest(f'Unsupported billing cycle "{billing_cycle}"', error_code="UNSUPPORTED_CYCLE")

    def get_rank(self, plan_name: Optional[str]) -> int:
        """Unknown or missing plans rank as Free."""
        try:
            return PLAN_RANK[PlanName(plan_name)]
        except ValueError:
            return 0

    def classify_change(self, current_plan: Optional[str], target: PlanName) -> ChangeKind:
        if target == PlanName.FREE:
            return ChangeKind.CANCEL
        if self.get_rank(target.value) < self.get_rank(current_plan or PlanName.FREE.value):
            return ChangeKind.DOWNGRADE
        return ChangeKind.UPGRADE

    def is_priced(self, plan: PlanName) -> bool:
        return plan in PRICED_PLANS

    def interval_for_cycle(self, cycle: BillingCycle) -> str:
        return CYCLE_TO_INTERVAL[cycle]

    def cycle_from_interval(self, interval: Optional[str]) -> BillingCycle:
        return BillingCycle.ANNUALLY if interval == "year" else BillingCycle.MONTHLY

    def annual_override_cents(self, plan: PlanName) -> Optional[int]:
        return ANNUAL_TOTAL_OVERRIDE_CENTS.get(plan)

    def plan_from_price_id(
        self,
        price_id: Optional[str],
        mappings: Dict[str, Dict[str, str]],
    ) -> Optional[PlanName]:
        """Reverse lookup over the static table only (override prices are resolved by the store)."""
        if not price_id:
            return None
        for plan_value, cycles in mappings.items():
            if price_id in cycles.values():
                return PlanName(plan_value)
        return None


# Singleton instance
plan_registry = PlanRegistryService()
