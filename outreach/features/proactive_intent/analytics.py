"""
Funnel lifecycle analytics.

Fire-and-log: every event goes to the structured log first, then to the
event table. A failed write is logged and swallowed; it never blocks or
fails the transition that produced it.
"""

from typing import Any

from outreach.features.proactive_intent.domain import FunnelEvent, FunnelEventType
from outreach.features.proactive_intent.repository import FunnelEventRepository, FunnelEventStore
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FunnelAnalytics:
    def __init__(self, store: FunnelEventStore | None = None):
        self.store = store or FunnelEventRepository()

    async def record(
        self,
        funnel_id: str,
        platform_user_id: str,
        event_type: FunnelEventType,
        step_index: int,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """
        Append a lifecycle event.

        Returns:
            True if stored, False if the write failed (never raises)
        """
        event = FunnelEvent(
            funnel_id=funnel_id,
            platform_user_id=platform_user_id,
            event_type=event_type,
            step_index=step_index,
            payload=payload or {},
        )

        logger.debug(
            "Funnel event",
            funnel_id=funnel_id,
            platform_user_id=platform_user_id,
            event_type=event_type.value,
            step_index=step_index,
        )

        try:
            await self.store.insert(event)
            return True
        except Exception as e:
            logger.warning(
                "Funnel event logging failed",
                funnel_id=funnel_id,
                event_type=event_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
