"""Entitlement Store - the account record and the price-override cache.

All billing-derived writes are "$set field to X" merges. No read-modify-write
and no increments on entitlement fields, so the synchronous plan-change path
and the webhook path can race without corrupting the record: the worst case is
last-write-wins on the few fields both paths own.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from models import PriceOverride

logger = logging.getLogger(__name__)

PENDING_DOWNGRADE_CLEARED = {
    "pending_plan": None,
    "pending_billing_cycle": None,
    "pending_plan_effective_date": None,
}


def price_override_key(mode: str, plan_name: str) -> str:
    """Deterministic document key; the unique _id is the create-if-absent point."""
    return f"{mode}_{plan_name}_annual_override"


class EntitlementStore:
    def __init__(self, db):
        self.db = db

    # =========================================================================
    # Account entitlement
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"user_id": user_id}, {"_id": 0})

    async def find_by_customer(self, stripe_customer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not stripe_customer_id:
            return None
        return await self.db.users.find_one({"stripe_customer_id": stripe_customer_id}, {"_id": 0})

    async def find_by_subscription(self, stripe_subscription_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not stripe_subscription_id:
            return None
        return await self.db.users.find_one({"stripe_subscription_id": stripe_subscription_id}, {"_id": 0})

    async def merge(self, user_id: str, fields: Dict[str, Any], upsert: bool = False) -> None:
        update = dict(fields)
        update["updated_at"] = datetime.now(timezone.utc)
        await self.db.users.update_one({"user_id": user_id}, {"$set": update}, upsert=upsert)

    async def list_due_pending_downgrades(self, now: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.db.users.find(
            {
                "pending_plan": {"$ne": None},
                "pending_plan_effective_date": {"$lte": now},
                "stripe_subscription_id": {"$ne": None},
            },
            {"_id": 0},
        ).sort("pending_plan_effective_date", 1).limit(limit)
        return await cursor.to_list(length=limit)

    # =========================================================================
    # Price override cache
    # =========================================================================

    async def get_price_override(self, mode: str, plan_name: str) -> Optional[Dict[str, Any]]:
        return await self.db.stripe_price_overrides.find_one(
            {"_id": price_override_key(mode, plan_name)}, {"_id": 0}
        )

    async def find_price_override_by_price_id(self, price_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not price_id:
            return None
        return await self.db.stripe_price_overrides.find_one({"price_id": price_id}, {"_id": 0})

    async def create_price_override_if_absent(self, override: PriceOverride) -> Dict[str, Any]:
        """
        Store the override unless one already exists for (mode, plan).

        Returns the record that won. $setOnInsert never touches an existing
        record, so a losing concurrent writer reads back the winner's price.
        """
        key = price_override_key(override.mode, override.plan_name)
        try:
            await self.db.stripe_price_overrides.update_one(
                {"_id": key},
                {"$setOnInsert": override.model_dump()},
                upsert=True,
            )
        except DuplicateKeyError:
            logger.info("Price override %s inserted concurrently - reading winner", key)
        stored = await self.db.stripe_price_overrides.find_one({"_id": key}, {"_id": 0})
        return stored or override.model_dump()
