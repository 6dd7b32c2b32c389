"""
Pulse service - folds each engagement event into the user's record.

Load (cache, then store, then default) -> extract signals -> staleness
reset -> decay -> add delta -> clamp -> transition -> append history ->
persist -> cache. The whole sequence runs under a per-user lock so two
events for one user never read the same base score.
"""

from datetime import datetime

from outreach.features.pulse.cache import InMemoryPulseCache, PulseCache
from outreach.features.pulse.constants import MAX_SIGNAL_HISTORY
from outreach.features.pulse.domain import (
    ClassifierSignal,
    EngagementState,
    PulseRecord,
    SignalHistoryEntry,
)
from outreach.features.pulse.repository import PulseRepository, PulseStore
from outreach.features.pulse.signal_extractor import extract_engagement_signals
from outreach.features.pulse.state_machine import (
    apply_decay,
    clamp_score,
    is_stale,
    transition_state,
)
from outreach.infrastructure.observability.logging import get_logger
from outreach.utils.clock import Clock, ensure_aware, utc_now
from outreach.utils.keyed_lock import KeyedLock

logger = get_logger(__name__)


class PulseService:
    def __init__(
        self,
        repository: PulseStore | None = None,
        cache: PulseCache | None = None,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
    ):
        self.repository = repository or PulseRepository()
        self.cache = cache or InMemoryPulseCache()
        self.clock = clock
        self.locks = locks or KeyedLock()

    async def record_engagement(
        self,
        user_id: str,
        message: str,
        now: datetime | None = None,
        previous_message_at: str | datetime | None = None,
        previous_user_message: str | None = None,
        classifier_signal: str | ClassifierSignal | None = None,
    ) -> PulseRecord:
        """
        Apply one user message to the user's engagement record.

        Raises:
            PulseRepositoryError: persistence failed; the cache is left untouched
        """
        now = ensure_aware(now) if now else self.clock()

        async with self.locks.acquire(user_id):
            current = await self._load_record(user_id) or PulseRecord.default(user_id, now)
            signals = extract_engagement_signals(
                message,
                now=now,
                previous_message_at=previous_message_at,
                previous_user_message=previous_user_message,
                classifier_signal=classifier_signal,
            )

            if is_stale(current.updated_at, now):
                base_score = 0.0
                base_state = EngagementState.PASSIVE
            else:
                base_score = apply_decay(current.score, current.updated_at, now)
                base_state = current.state

            next_score = clamp_score(base_score + signals.score_delta)
            next_state = transition_state(base_state, next_score)

            entry = SignalHistoryEntry(
                at=now,
                score=next_score,
                delta=signals.score_delta,
                state=next_state,
                matched_signals=list(signals.matched_signals),
            )
            updated = PulseRecord(
                user_id=user_id,
                score=next_score,
                state=next_state,
                last_message_at=now,
                updated_at=now,
                message_count=current.message_count + 1,
                last_topic=signals.topic_key or current.last_topic,
                signal_history=[*current.signal_history, entry][-MAX_SIGNAL_HISTORY:],
            )

            try:
                await self.repository.upsert(updated)
            except Exception as e:
                logger.error(
                    "Failed to persist pulse record",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            await self.cache.set(updated)

        if current.state != next_state:
            logger.info(
                "Pulse state transition",
                user_id=user_id,
                from_state=current.state.value,
                to_state=next_state.value,
                score=next_score,
                delta=signals.score_delta,
                signals=signals.matched_signals,
            )
        else:
            logger.debug(
                "Pulse score updated",
                user_id=user_id,
                state=next_state.value,
                score=next_score,
                delta=signals.score_delta,
            )

        return updated

    async def get_state(self, user_id: str) -> EngagementState:
        record = await self._load_record(user_id, populate_cache=False)
        return record.state if record else EngagementState.PASSIVE

    async def get_record(self, user_id: str) -> PulseRecord | None:
        return await self._load_record(user_id, populate_cache=False)

    async def _load_record(self, user_id: str, populate_cache: bool = True) -> PulseRecord | None:
        cached = await self.cache.get(user_id)
        if cached:
            return cached

        record = await self.repository.load(user_id)
        # only the locked write path may fill the cache
        if record and populate_cache:
            await self.cache.set(record)
        return record
