import asyncio
import itertools
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

import pytest

from outreach.features.proactive_intent.analytics import FunnelAnalytics
from outreach.features.proactive_intent.domain import (
    FunnelEventType,
    FunnelInstance,
    FunnelStatus,
    RecentFunnel,
    TopicIntent,
    TopicPhase,
)
from outreach.features.proactive_intent.intent_selector import IntentSelector
from outreach.features.proactive_intent.orchestrator import FunnelOrchestrator
from outreach.features.proactive_intent.repository import ActiveFunnelExistsError, SessionSnapshot
from outreach.features.pulse.domain import EngagementState
from outreach.features.pulse.repository import PulseRepositoryError

NOW = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)


class ManualClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualTimerScheduler:
    """Timers that only fire when a test says so."""

    def __init__(self):
        self.timers: dict[str, tuple[float, object]] = {}

    def schedule(self, key, delay_seconds, callback):
        self.timers[key] = (delay_seconds, callback)

    def cancel(self, key):
        return self.timers.pop(key, None) is not None

    def cancel_all(self):
        self.timers.clear()

    def pending(self):
        return list(self.timers)

    async def fire(self, key):
        _, callback = self.timers.pop(key)
        await callback()


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.fail_writes = False

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if self.fail_writes:
            return False
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def push(self, key: str, value: str) -> bool:
        if self.fail_writes:
            return False
        self.lists.setdefault(key, []).append(value)
        return True


class InMemoryPulseStore:
    def __init__(self):
        self.records = {}
        self.fail_upsert = False
        self.upserts = 0

    async def load(self, user_id):
        await asyncio.sleep(0)
        return self.records.get(user_id)

    async def upsert(self, record):
        await asyncio.sleep(0)
        if self.fail_upsert:
            raise PulseRepositoryError("connection refused", operation="upsert_pulse")
        self.upserts += 1
        self.records[record.user_id] = record


class InMemoryFunnelStore:
    def __init__(self):
        self.rows: dict[str, FunnelInstance] = {}
        self._ids = itertools.count(1)

    async def get_active(self, platform_user_id):
        for row in self.rows.values():
            if row.platform_user_id == platform_user_id and row.status is FunnelStatus.ACTIVE:
                return row
        return None

    async def get(self, funnel_id):
        return self.rows.get(funnel_id)

    async def insert_active(self, platform_user_id, internal_user_id, chat_id, funnel_key, context, now):
        if await self.get_active(platform_user_id):
            raise ActiveFunnelExistsError("Active funnel already exists", operation="insert_funnel")
        row = FunnelInstance(
            id=f"f{next(self._ids)}",
            platform_user_id=platform_user_id,
            internal_user_id=internal_user_id,
            chat_id=chat_id,
            funnel_key=funnel_key,
            status=FunnelStatus.ACTIVE,
            current_step_index=0,
            context=dict(context),
            last_event_at=now,
            created_at=now,
            updated_at=now,
        )
        self.rows[row.id] = row
        return row

    async def update_state(self, funnel_id, status, step_index, now):
        row = self.rows.get(funnel_id)
        if row is None or row.status is not FunnelStatus.ACTIVE:
            return None
        updated = replace(row, status=status, current_step_index=step_index, updated_at=now, last_event_at=now)
        self.rows[funnel_id] = updated
        return updated

    async def expire_if_idle(self, funnel_id, cutoff, now):
        row = self.rows.get(funnel_id)
        if row is None or row.status is not FunnelStatus.ACTIVE or row.last_event_at > cutoff:
            return None
        expired = replace(row, status=FunnelStatus.EXPIRED, updated_at=now, last_event_at=now)
        self.rows[funnel_id] = expired
        return expired

    async def list_idle_active(self, cutoff):
        return [
            row.id
            for row in self.rows.values()
            if row.status is FunnelStatus.ACTIVE and row.last_event_at <= cutoff
        ]


class InMemoryEventStore:
    def __init__(self, clock):
        self.clock = clock
        self.events = []
        self.fail = False

    async def insert(self, event):
        if self.fail:
            raise RuntimeError("event table unavailable")
        self.events.append((self.clock(), event))

    async def recent_started(self, platform_user_id, since):
        return [
            RecentFunnel(key=event.payload["funnel_key"], started_at=at)
            for at, event in self.events
            if event.platform_user_id == platform_user_id
            and event.event_type is FunnelEventType.FUNNEL_STARTED
            and at > since
        ]

    def types(self, funnel_id=None):
        return [
            event.event_type
            for _, event in self.events
            if funnel_id is None or event.funnel_id == funnel_id
        ]


class InMemoryContextStore:
    def __init__(self):
        self.users: dict[str, str] = {}
        self.pulse: dict[str, EngagementState] = {}
        self.topics: list[TopicIntent] = []
        self.sessions: dict[str, SessionSnapshot] = {}
        self.pulse_error: Exception | None = None
        self.topic_error: Exception | None = None

    async def resolve_internal_user_id(self, platform_user_id):
        return self.users.get(platform_user_id)

    async def get_pulse_state(self, internal_user_id):
        if self.pulse_error:
            raise self.pulse_error
        return self.pulse.get(internal_user_id)

    async def latest_session_snapshot(self, internal_user_id):
        return self.sessions.get(internal_user_id)

    async def list_preferences(self, internal_user_id):
        return ["food:biryani"]

    async def list_active_goals(self, internal_user_id):
        return []

    async def list_warm_topics(self, internal_user_id, min_confidence, phases, idle_since, limit):
        if self.topic_error:
            raise self.topic_error
        matches = [
            topic
            for topic in self.topics
            if topic.user_id == internal_user_id
            and topic.confidence >= min_confidence
            and topic.phase in phases
            and topic.last_signal_at is not None
            and topic.last_signal_at <= idle_since
        ]
        return sorted(matches, key=lambda t: t.confidence, reverse=True)[:limit]

    async def get_topic(self, topic_id):
        return next((topic for topic in self.topics if topic.id == topic_id), None)


class FakeChannelSender:
    def __init__(self):
        self.sent = []
        self.deliver = True
        self.error: Exception | None = None

    async def send(self, chat_id, text, choices=None):
        if self.error:
            raise self.error
        self.sent.append((chat_id, text, list(choices or [])))
        return self.deliver


def make_topic(
    topic_id="t1",
    user_id="u1",
    topic="biryani in indiranagar",
    category="food",
    confidence=80,
    phase=TopicPhase.SHIFTING,
    last_signal_at=NOW - timedelta(hours=6),
) -> TopicIntent:
    return TopicIntent(
        id=topic_id,
        user_id=user_id,
        topic=topic,
        category=category,
        confidence=confidence,
        phase=phase,
        last_signal_at=last_signal_at,
    )


@dataclass
class Harness:
    clock: ManualClock
    timers: ManualTimerScheduler
    funnels: InMemoryFunnelStore
    events: InMemoryEventStore
    context: InMemoryContextStore
    sender: FakeChannelSender
    selector: IntentSelector
    orchestrator: FunnelOrchestrator


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def pulse_store():
    return InMemoryPulseStore()


@pytest.fixture
def harness(clock):
    """Orchestrator over in-memory stores; user tg-1 maps to u1 (ENGAGED) with one warm topic."""
    timers = ManualTimerScheduler()
    funnels = InMemoryFunnelStore()
    events = InMemoryEventStore(clock)
    context = InMemoryContextStore()
    context.users["tg-1"] = "u1"
    context.pulse["u1"] = EngagementState.ENGAGED
    context.topics.append(make_topic())
    sender = FakeChannelSender()

    selector = IntentSelector(context_store=context, event_store=events, clock=clock)
    orchestrator = FunnelOrchestrator(
        sender=sender,
        funnels=funnels,
        analytics=FunnelAnalytics(events),
        selector=selector,
        context_store=context,
        timers=timers,
        clock=clock,
        idle_timeout_seconds=900,
    )
    return Harness(clock, timers, funnels, events, context, sender, selector, orchestrator)
