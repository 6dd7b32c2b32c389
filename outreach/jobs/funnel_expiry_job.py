"""
Funnel expiry sweep.

Backstop for the per-instance idle timers: timers live in one process and
are lost on restart, so this job periodically expires every ACTIVE funnel
idle past FUNNEL_SWEEP_MAX_IDLE_MINUTES. It goes through the same
expire_if_idle operation the timers use.
"""

import asyncio
import time

from outreach.config import settings
from outreach.db.pool import db_pool
from outreach.engine import get_engine
from outreach.features.proactive_intent.orchestrator import FunnelOrchestrator
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ERROR_RETRY_SECONDS = 60


async def run_funnel_expiry_once(
    orchestrator: FunnelOrchestrator | None = None, max_idle_minutes: int | None = None
) -> dict:
    """Run a single sweep and return its metrics."""
    orchestrator = orchestrator or get_engine().orchestrator
    minutes = max_idle_minutes if max_idle_minutes is not None else settings.FUNNEL_SWEEP_MAX_IDLE_MINUTES

    started = time.time()
    expired = await orchestrator.sweep_expired(minutes)
    return {
        "expired": expired,
        "max_idle_minutes": minutes,
        "duration_ms": round((time.time() - started) * 1000, 1),
    }


async def start_funnel_expiry_scheduler(
    orchestrator: FunnelOrchestrator | None = None,
    interval_seconds: int | None = None,
    max_cycles: int | None = None,
) -> None:
    """
    Sweep forever (or max_cycles times) on a fixed interval.

    A failed cycle is logged and retried after ERROR_RETRY_SECONDS; the
    loop itself only stops on cancellation.
    """
    interval = interval_seconds or settings.FUNNEL_SWEEP_INTERVAL_SECONDS
    logger.info("Starting funnel expiry scheduler", interval_seconds=interval)

    owns_pool = not db_pool.initialized
    if owns_pool:
        await db_pool.initialize()

    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                metrics = await run_funnel_expiry_once(orchestrator)
                logger.info("Funnel expiry cycle completed", **metrics)
                delay = interval
            except Exception as e:
                logger.error(
                    "Error in funnel expiry scheduler", error=str(e), error_type=type(e).__name__
                )
                delay = min(interval, ERROR_RETRY_SECONDS)

            if max_cycles is None or cycles < max_cycles:
                await asyncio.sleep(delay)
    finally:
        if owns_pool:
            await db_pool.close()
        logger.info("Funnel expiry scheduler stopped", cycles=cycles)
