"""Referral rewards granted when a referred account converts to Elite.

The referrer receives two months free. A subscribed referrer accrues them in
referral_reward_ends_at, counted from the later of any earlier reward, the
scheduled end date and now. Anyone else gets an Elite invite grant for two
months. The referral record's reward_status flips to "granted" through a
conditional update, which is what makes the grant happen exactly once no
matter how many webhooks ask for it.
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from models import AuditAction, ReferralRewardStatus, UserNotification, UserRole
from services.plan_registry import PlanName
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

REWARD_MONTHS = 2
REWARD_PLAN = PlanName.ELITE


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


async def grant_referral_reward_on_conversion(
    db,
    referee_id: str,
    plan_name: Optional[str],
    referral_code: Optional[str],
) -> bool:
    """Return True when this call granted the reward, False otherwise."""
    if not referral_code or plan_name != REWARD_PLAN.value:
        return False

    code = referral_code.strip().upper()
    referrer = await db.users.find_one({"referral_code": code}, {"_id": 0})
    if not referrer:
        logger.warning(f"Referrer not found for referral code: {code}")
        return False

    referrer_id = referrer["user_id"]
    if referrer_id == referee_id:
        logger.warning(f"User {referee_id} cannot refer themselves")
        return False

    now = datetime.now(timezone.utc)
    referral_key = {"referrer_id": referrer_id, "referee_id": referee_id}
    await db.referrals.update_one(
        referral_key,
        {
            "$setOnInsert": {
                "referral_code": code,
                "created_at": now,
                "reward_status": ReferralRewardStatus.PENDING.value,
            },
            "$set": {"converted_plan": plan_name, "converted_at": now},
        },
        upsert=True,
    )

    claimed = await db.referrals.find_one_and_update(
        {**referral_key, "reward_status": {"$ne": ReferralRewardStatus.GRANTED.value}},
        {
            "$set": {
                "reward_status": ReferralRewardStatus.GRANTED.value,
                "reward_granted_at": now,
                "reward_type": "2_months_free",
                "reward_amount": REWARD_MONTHS,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        logger.info(f"Referral reward already granted: {referrer_id} for {referee_id}")
        return False

    if referrer.get("stripe_subscription_id"):
        # Kept apart from subscription_end_date, which webhook reconciliation rewrites.
        candidates = [
            _as_datetime(referrer.get("referral_reward_ends_at")),
            _as_datetime(referrer.get("subscription_end_date")),
            now,
        ]
        base = max(value for value in candidates if value)
        reward_fields = {"referral_reward_ends_at": add_months(base, REWARD_MONTHS)}
    else:
        reward_fields = {
            "invite_grant_plan": REWARD_PLAN.value,
            "invite_grant_expires_at": add_months(now, REWARD_MONTHS),
            "subscription_status": "invite_grant",
        }
    reward_fields["last_referral_reward_granted_at"] = now

    await db.users.update_one(
        {"user_id": referrer_id},
        {
            "$set": reward_fields,
            "$inc": {"referral_rewards_granted": 1, "referral_stats.rewards_earned": 1},
        },
    )

    notification = UserNotification(
        user_id=referrer_id,
        message_id="referral-reward-granted",
        text="Congratulations! Your referral converted to the Elite plan. You've been granted 2 months free!",
    )
    await db.notifications.insert_one(notification.model_dump())

    await create_audit_log(
        action=AuditAction.REFERRAL_REWARD_GRANTED,
        actor_role=UserRole.ROLE_SYSTEM,
        user_id=referrer_id,
        resource_type="referral",
        resource_id=referee_id,
        metadata={"referral_code": code, "reward_months": REWARD_MONTHS},
    )
    logger.info(f"Referral reward granted: {referrer_id} received {REWARD_MONTHS} months free for {referee_id}'s Elite conversion")
    return True
