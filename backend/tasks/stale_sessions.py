"""
Stale Session Recovery
======================
Background task that finds sessions stuck in `processing` (the process died
or hung between winning the claim and posting the sale) and moves them to
`failed` so they surface for manual reconciliation.

A stuck session may or may not have a Mindbody sale behind it, so it is never
re-driven automatically.

Disabled unless STALE_PROCESSING_TIMEOUT_SECONDS > 0.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

import structlog

from schemas.checkout import SessionStatus, utcnow
from storage.idempotency import IdempotencyGuard
from storage.session_store import ISessionStore

logger = structlog.get_logger().bind(component="stale_sessions")


async def recover_stale_sessions(store: ISessionStore, max_age: timedelta) -> List[str]:
    """
    Fail every `processing` session not updated within `max_age`.

    Returns:
        Ids of the sessions that were moved to `failed`
    """
    cutoff = utcnow() - max_age
    recovered = []

    for session in await store.list_by_status(SessionStatus.PROCESSING):
        if session.updated_at > cutoff:
            continue

        swapped, _ = await store.compare_and_set_status(
            session.id, SessionStatus.PROCESSING, SessionStatus.FAILED
        )
        if swapped:
            recovered.append(session.id)
            logger.warning(
                "stale_session_failed",
                session_id=session.id,
                stuck_since=session.updated_at.isoformat(),
                order_id=session.gateway_meta.order_id,
            )

    return recovered


async def stale_session_loop(
    store: ISessionStore,
    max_age_seconds: float,
    interval_seconds: float = 60.0,
    guard: Optional[IdempotencyGuard] = None,
):
    """Run recovery forever; cancel the task to stop it."""
    logger.info("stale_session_loop_started", max_age_seconds=max_age_seconds, interval_seconds=interval_seconds)
    max_age = timedelta(seconds=max_age_seconds)

    while True:
        try:
            recovered = await recover_stale_sessions(store, max_age)
            if recovered:
                logger.warning("stale_sessions_recovered", count=len(recovered))
            if guard is not None:
                await guard.purge_expired()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("stale_session_cycle_error", error=str(e))

        await asyncio.sleep(interval_seconds)
