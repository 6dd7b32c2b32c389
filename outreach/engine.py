"""
Process-wide wiring of the outreach engine.

One PulseService and one FunnelOrchestrator per process, sharing a clock.
The orchestrator owns the idle timers that must be cancelled on shutdown.
"""

from dataclasses import dataclass

from outreach.config import settings
from outreach.features.proactive_intent.analytics import FunnelAnalytics
from outreach.features.proactive_intent.channel import ChannelSender, RedisOutboxSender
from outreach.features.proactive_intent.intent_selector import IntentSelector
from outreach.features.proactive_intent.orchestrator import FunnelOrchestrator
from outreach.features.proactive_intent.repository import (
    FunnelEventRepository,
    FunnelRepository,
    IntentContextRepository,
)
from outreach.features.pulse.cache import InMemoryPulseCache, PulseCache, RedisPulseCache
from outreach.features.pulse.repository import PulseRepository
from outreach.features.pulse.service import PulseService
from outreach.infrastructure.observability.logging import get_logger
from outreach.services.redis_client import fast_redis
from outreach.utils.clock import Clock, utc_now
from outreach.utils.keyed_lock import KeyedLock
from outreach.utils.timers import AsyncioTimerScheduler

logger = get_logger(__name__)


@dataclass(slots=True)
class OutreachEngine:
    pulse: PulseService
    selector: IntentSelector
    orchestrator: FunnelOrchestrator

    def shutdown(self) -> None:
        self.orchestrator.shutdown()


def _build_pulse_cache() -> PulseCache:
    if settings.use_redis_cache():
        return RedisPulseCache(fast_redis, ttl_seconds=settings.PULSE_CACHE_TTL_SECONDS)
    return InMemoryPulseCache()


def build_engine(sender: ChannelSender | None = None, clock: Clock = utc_now) -> OutreachEngine:
    context_store = IntentContextRepository(platform=settings.CHANNEL_PLATFORM)
    event_store = FunnelEventRepository()

    pulse = PulseService(
        repository=PulseRepository(),
        cache=_build_pulse_cache(),
        clock=clock,
        locks=KeyedLock(),
    )
    selector = IntentSelector(
        context_store=context_store,
        event_store=event_store,
        pulse_service=pulse,
        clock=clock,
    )
    orchestrator = FunnelOrchestrator(
        sender=sender or RedisOutboxSender(fast_redis, settings.CHANNEL_PLATFORM),
        funnels=FunnelRepository(),
        analytics=FunnelAnalytics(event_store),
        selector=selector,
        context_store=context_store,
        timers=AsyncioTimerScheduler(),
        clock=clock,
        idle_timeout_seconds=settings.funnel_idle_timeout_seconds(),
        locks=KeyedLock(),
    )

    logger.info(
        "Outreach engine built",
        pulse_cache="redis" if settings.use_redis_cache() else "memory",
        platform=settings.CHANNEL_PLATFORM,
        idle_timeout_seconds=orchestrator.idle_timeout_seconds,
    )
    return OutreachEngine(pulse=pulse, selector=selector, orchestrator=orchestrator)


_engine: OutreachEngine | None = None


def get_engine() -> OutreachEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.shutdown()
    _engine = None
