"""
Intent selection - picks the single best funnel to start for a user.

Builds an IntentContext (identity, pulse state, preferences, goals, recent
funnel starts), gates on pulse state, then scores one generated funnel per
warm topic:

    confidence / 5 + pulse bonus (24 PROACTIVE, else 14) - recency penalty (4)

and returns the top candidate if it scores at least MIN_SELECTION_SCORE.
"""

import asyncio
from datetime import timedelta

from outreach.features.proactive_intent.domain import (
    FUNNEL_ELIGIBLE_PHASES,
    IntentContext,
    SelectedFunnel,
)
from outreach.features.proactive_intent.funnel_generator import generate_funnel_from_topic
from outreach.features.proactive_intent.repository import (
    FunnelEventRepository,
    FunnelEventStore,
    IntentContextRepository,
    IntentContextStore,
    SessionSnapshot,
)
from outreach.features.pulse.domain import EngagementState
from outreach.infrastructure.observability.logging import get_logger
from outreach.utils.clock import Clock, utc_now

logger = get_logger(__name__)

MIN_PULSE_STATE = EngagementState.ENGAGED
MIN_TOPIC_CONFIDENCE = 40
TOPIC_INACTIVITY = timedelta(hours=4)
WARM_TOPIC_LIMIT = 5
RECENT_FUNNEL_LOOKBACK = timedelta(hours=24)

PROACTIVE_PULSE_BONUS = 24
ENGAGED_PULSE_BONUS = 14
RECENCY_PENALTY = 4
MIN_SELECTION_SCORE = 12


def infer_pulse_from_session(snapshot: SessionSnapshot | None, now) -> EngagementState:
    """Conservative pulse estimate from the latest session when pulse is unreachable."""
    if snapshot is None or snapshot.last_active is None:
        return EngagementState.PASSIVE

    minutes_ago = (now - snapshot.last_active).total_seconds() / 60
    count = snapshot.message_count

    if minutes_ago <= 360 and count >= 18:
        return EngagementState.PROACTIVE
    if minutes_ago <= 1440 and count >= 8:
        return EngagementState.ENGAGED
    if minutes_ago <= 1440 and count >= 4:
        return EngagementState.CURIOUS
    return EngagementState.PASSIVE


class IntentSelector:
    def __init__(
        self,
        context_store: IntentContextStore | None = None,
        event_store: FunnelEventStore | None = None,
        pulse_service=None,
        clock: Clock = utc_now,
    ):
        self.context_store = context_store or IntentContextRepository()
        self.event_store = event_store or FunnelEventRepository()
        self.pulse_service = pulse_service
        self.clock = clock

    async def load_context(self, platform_user_id: str, chat_id: str) -> IntentContext | None:
        internal_user_id = await self.context_store.resolve_internal_user_id(platform_user_id)
        if not internal_user_id:
            return None

        now = self.clock()
        pulse_state, degraded = await self._resolve_pulse_state(internal_user_id, now)

        preferences, goals, recent = await asyncio.gather(
            self._safe(self.context_store.list_preferences(internal_user_id), "preferences"),
            self._safe(self.context_store.list_active_goals(internal_user_id), "goals"),
            self._safe(
                self.event_store.recent_started(platform_user_id, now - RECENT_FUNNEL_LOOKBACK),
                "recent_funnels",
            ),
        )

        return IntentContext(
            platform_user_id=platform_user_id,
            internal_user_id=internal_user_id,
            chat_id=chat_id,
            pulse_state=pulse_state,
            preferences=preferences,
            active_goals=goals,
            recent_funnels=recent,
            now=now,
            pulse_degraded=degraded,
        )

    async def _resolve_pulse_state(self, internal_user_id: str, now) -> tuple[EngagementState, bool]:
        try:
            if self.pulse_service is not None:
                return await self.pulse_service.get_state(internal_user_id), False
            state = await self.context_store.get_pulse_state(internal_user_id)
            return state or EngagementState.PASSIVE, False
        except Exception as e:
            try:
                snapshot = await self.context_store.latest_session_snapshot(internal_user_id)
            except Exception as snapshot_error:
                logger.warning("Session snapshot lookup failed", error=str(snapshot_error))
                snapshot = None

            inferred = infer_pulse_from_session(snapshot, now)
            logger.warning(
                "Pulse state lookup failed; using session-based fallback",
                user_id=internal_user_id,
                inferred_state=inferred.value,
                error=str(e),
            )
            return inferred, True

    @staticmethod
    async def _safe(coro, label: str) -> list:
        try:
            return await coro
        except Exception as e:
            logger.warning("Intent context lookup failed", lookup=label, error=str(e))
            return []

    async def select(self, context: IntentContext) -> SelectedFunnel | None:
        if not context.pulse_state.at_least(MIN_PULSE_STATE):
            return None

        try:
            topics = await self.context_store.list_warm_topics(
                context.internal_user_id,
                min_confidence=MIN_TOPIC_CONFIDENCE,
                phases=FUNNEL_ELIGIBLE_PHASES,
                idle_since=context.now - TOPIC_INACTIVITY,
                limit=WARM_TOPIC_LIMIT,
            )
        except Exception as e:
            logger.warning("Warm topic query failed", user_id=context.internal_user_id, error=str(e))
            return None

        pulse_bonus = (
            PROACTIVE_PULSE_BONUS
            if context.pulse_state is EngagementState.PROACTIVE
            else ENGAGED_PULSE_BONUS
        )
        penalty = RECENCY_PENALTY if context.recent_funnels else 0

        best: SelectedFunnel | None = None
        for topic in topics:
            funnel = generate_funnel_from_topic(topic)
            if funnel is None:
                continue
            if not context.pulse_state.at_least(funnel.min_pulse_state):
                continue

            cooldown = timedelta(minutes=funnel.cooldown_minutes)
            if any(
                entry.key == funnel.key and context.now - entry.started_at < cooldown
                for entry in context.recent_funnels
            ):
                continue

            score = topic.confidence / 5 + pulse_bonus - penalty
            if best is None or score > best.score:
                best = SelectedFunnel(
                    funnel=funnel,
                    score=score,
                    reason=(
                        f'topic="{topic.topic}" confidence={topic.confidence}% '
                        f"phase={topic.phase.value} pulse={pulse_bonus} penalty={penalty}"
                    ),
                    topic=topic,
                )

        if best is None or best.score < MIN_SELECTION_SCORE:
            return None
        return best
