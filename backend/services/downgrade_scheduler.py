"""Downgrade Scheduler - defers a downgrade to the current period boundary.

The subscription is never re-priced directly. Instead a schedule (reused if
one exists, else forked from the live subscription) is rewritten to exactly
two phases:

    phase 0: current items, unchanged start/end
    phase 1: target price x1 from the boundary, metadata planName/billingCycle

end_behavior=release detaches the schedule once phase 1 begins. The local
plan is untouched until the provider applies phase 1 and the resulting
customer.subscription.updated event is reconciled.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from services.billing_errors import DowngradeSchedulingError
from services.plan_registry import BillingCycle, PlanName
from services.stripe_gateway import (
    BillingProvider,
    object_id,
    subscription_items,
    subscription_period_end,
    subscription_period_start,
    ts_to_datetime,
)

logger = logging.getLogger(__name__)

RELEASABLE_SCHEDULE_STATUSES = ("active", "not_started")


def _phase_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"price": object_id(item.get("price")), "quantity": item.get("quantity") or 1}
        for item in items
    ]


class DowngradeScheduler:
    def __init__(self, provider: BillingProvider):
        self.provider = provider

    def schedule(
        self,
        subscription: Dict[str, Any],
        target_plan: PlanName,
        target_cycle: BillingCycle,
        target_price_id: str,
    ) -> datetime:
        """Write the two-phase schedule and return the effective downgrade time."""
        subscription_id = subscription["id"]
        schedule_id = object_id(subscription.get("schedule"))
        if schedule_id:
            schedule = self.provider.retrieve_schedule(schedule_id)
        else:
            schedule = self.provider.create_schedule_from_subscription(subscription_id)
            schedule_id = schedule["id"]

        phases = schedule.get("phases") or []
        current_phase = phases[0] if phases else None

        effective_ts = (current_phase or {}).get("end_date") or subscription_period_end(subscription)
        if not effective_ts:
            raise DowngradeSchedulingError("Unable to determine period end for scheduling downgrade")

        start_ts = (current_phase or {}).get("start_date") or subscription_period_start(subscription)
        current_items = _phase_items((current_phase or {}).get("items") or subscription_items(subscription))

        self.provider.update_schedule(
            schedule_id,
            end_behavior="release",
            phases=[
                {
                    "start_date": start_ts,
                    "end_date": effective_ts,
                    "items": current_items,
                },
                {
                    "start_date": effective_ts,
                    "items": [{"price": target_price_id, "quantity": 1}],
                    "proration_behavior": "none",
                    "metadata": {
                        "planName": target_plan.value,
                        "billingCycle": target_cycle.value,
                    },
                },
            ],
        )
        logger.info(
            "Downgrade scheduled subscription_id=%s schedule_id=%s target=%s/%s effective_ts=%s",
            subscription_id, schedule_id, target_plan.value, target_cycle.value, effective_ts,
        )
        return ts_to_datetime(effective_ts)

    def release_pending(self, subscription: Dict[str, Any]) -> Optional[str]:
        """
        Release the subscription's schedule so no stale future phase applies.

        Returns the released schedule id, or None when there was nothing to
        release. Used whenever an upgrade, cancellation or reactivation
        supersedes a pending downgrade.
        """
        schedule_id = object_id(subscription.get("schedule"))
        if not schedule_id:
            return None
        schedule = self.provider.retrieve_schedule(schedule_id)
        if schedule.get("status") not in RELEASABLE_SCHEDULE_STATUSES:
            return None
        self.provider.release_schedule(schedule_id)
        logger.info("Released schedule %s for subscription %s", schedule_id, subscription.get("id"))
        return schedule_id
