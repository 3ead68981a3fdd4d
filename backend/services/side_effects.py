"""Best-effort hooks around billing actions.

Referral grants, plan-change event logging and admin email are decoupled from
the billing action that triggered them: a failure is logged and swallowed,
never propagated.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional, Set

logger = logging.getLogger(__name__)

# Strong references so fire-and-forget tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


async def best_effort(label: str, awaitable: Awaitable[Any]) -> Optional[Any]:
    try:
        return await awaitable
    except Exception as e:
        logger.warning("Side effect %s failed (billing action unaffected): %s", label, e, exc_info=True)
        return None


def fire_and_forget(label: str, awaitable: Awaitable[Any]) -> asyncio.Task:
    """Run a side effect without blocking the caller's response."""
    task = asyncio.create_task(best_effort(label, awaitable))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
