"""Plan-change event log used for promo cohort tracking."""
import logging
from datetime import datetime
from typing import Optional

from models import PlanChangeEvent, PlanChangeSource

logger = logging.getLogger(__name__)


async def record_plan_change_event(
    db,
    user_id: str,
    from_plan: Optional[str],
    to_plan: str,
    changed_at: datetime,
    source: PlanChangeSource,
    stripe_session_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
) -> str:
    event = PlanChangeEvent(
        user_id=user_id,
        from_plan=from_plan,
        to_plan=to_plan,
        changed_at=changed_at,
        source=source,
        stripe_session_id=stripe_session_id,
        stripe_subscription_id=stripe_subscription_id,
    )
    await db.plan_change_events.insert_one(event.model_dump())
    logger.info(
        "Plan change event recorded user_id=%s %s -> %s source=%s",
        user_id, from_plan, to_plan, source.value,
    )
    return event.event_id
