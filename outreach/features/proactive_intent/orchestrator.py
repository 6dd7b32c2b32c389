"""
Funnel orchestrator - lifecycle controller for proactive funnel instances.

    (none) -> ACTIVE -> COMPLETED | ABANDONED | EXPIRED

ACTIVE instances may also move between steps. Start, reply and callback
for one platform user run under a per-user lock; expiry relies on the
conditional UPDATE in the repository instead, so the idle timer and the
periodic sweep share one operation (expire_if_idle) and can never move a
terminal row.
"""

from dataclasses import asdict
from datetime import timedelta
from enum import Enum
from typing import Any

from outreach.config import settings
from outreach.db.helpers import DatabaseError
from outreach.features.proactive_intent.analytics import FunnelAnalytics
from outreach.features.proactive_intent.channel import (
    ChannelSender,
    format_step_text,
    parse_callback_token,
    step_choices_with_tokens,
)
from outreach.features.proactive_intent.domain import (
    DecisionKind,
    FunnelCallbackResult,
    FunnelChoice,
    FunnelDefinition,
    FunnelEventType,
    FunnelInstance,
    FunnelReplyResult,
    FunnelStartResult,
    FunnelStatus,
    StepDecision,
    TopicIntent,
    TopicPhase,
)
from outreach.features.proactive_intent.funnel_generator import (
    generate_funnel_from_topic,
    topic_id_from_funnel_key,
)
from outreach.features.proactive_intent.intent_selector import IntentSelector
from outreach.features.proactive_intent.repository import (
    ActiveFunnelExistsError,
    FunnelRepository,
    FunnelStore,
    IntentContextRepository,
    IntentContextStore,
)
from outreach.features.proactive_intent.step_evaluator import evaluate_callback, evaluate_reply
from outreach.infrastructure.observability.logging import get_logger
from outreach.utils.clock import Clock, utc_now
from outreach.utils.keyed_lock import KeyedLock
from outreach.utils.timers import AsyncioTimerScheduler, TimerScheduler

logger = get_logger(__name__)

CONTROL_PREFIX = "[callback]"

REPLY_ABANDONED_TEXT = "No stress. I will pause this flow. Ping me whenever you want to continue."
REPLY_STAY_TEXT = 'Got it. If you want, say "go ahead" and I will continue this quick flow.'
COMPLETED_TEXT = "Done. Flow completed."

CALLBACK_NO_ACTIVE_TEXT = "This funnel has already ended. Send me a fresh message and I will start again."
CALLBACK_OUTDATED_TEXT = "This step is outdated. Use the latest prompt and I will continue."
CALLBACK_ABANDONED_TEXT = "All good, I paused this flow."
CALLBACK_HANDOFF_TEXT = "Perfect. Send one message with your requirement and I will execute it now."
CALLBACK_STAY_TEXT = "Understood. If you want to continue, choose an option or send a quick reply."


class _Outcome(str, Enum):
    ABANDONED = "abandoned"
    PASSED_THROUGH = "passed_through"
    COMPLETED = "completed"
    ADVANCED = "advanced"
    STAYED = "stayed"
    LOST = "lost"  # instance stopped being ACTIVE underneath us


class FunnelOrchestrator:
    def __init__(
        self,
        sender: ChannelSender,
        funnels: FunnelStore | None = None,
        analytics: FunnelAnalytics | None = None,
        selector: IntentSelector | None = None,
        context_store: IntentContextStore | None = None,
        timers: TimerScheduler | None = None,
        clock: Clock = utc_now,
        idle_timeout_seconds: float | None = None,
        locks: KeyedLock | None = None,
    ):
        self.sender = sender
        self.funnels = funnels or FunnelRepository()
        self.analytics = analytics or FunnelAnalytics()
        self.context_store = context_store or IntentContextRepository()
        self.selector = selector or IntentSelector(context_store=self.context_store, clock=clock)
        self.timers = timers or AsyncioTimerScheduler()
        self.clock = clock
        self.idle_timeout_seconds = idle_timeout_seconds or settings.funnel_idle_timeout_seconds()
        self.locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def try_start(self, platform_user_id: str, chat_id: str) -> FunnelStartResult:
        async with self.locks.acquire(platform_user_id):
            active = await self.funnels.get_active(platform_user_id)
            if active:
                return FunnelStartResult(
                    started=False, reason=f"active funnel already exists ({active.funnel_key})"
                )

            context = await self.selector.load_context(platform_user_id, chat_id)
            if context is None:
                return FunnelStartResult(started=False, reason="user context unavailable")

            selection = await self.selector.select(context)
            if selection is None:
                return FunnelStartResult(
                    started=False,
                    reason=f"no eligible funnel for pulse={context.pulse_state.value}",
                )

            funnel = selection.funnel
            instance_context = {
                "selector_reason": selection.reason,
                "pulse_state": context.pulse_state.value,
                "source_topic": _topic_snapshot(selection.topic),
                "tool_name": funnel.tool_name,
            }

            try:
                instance = await self.funnels.insert_active(
                    platform_user_id,
                    context.internal_user_id,
                    chat_id,
                    funnel.key,
                    instance_context,
                    self.clock(),
                )
            except ActiveFunnelExistsError:
                return FunnelStartResult(started=False, reason="active funnel already exists")

            await self._event(instance, FunnelEventType.FUNNEL_STARTED, 0, {
                "funnel_key": funnel.key,
                "reason": selection.reason,
            })

            if not await self._deliver_step(funnel, instance, 0):
                try:
                    await self.funnels.update_state(instance.id, FunnelStatus.ABANDONED, 0, self.clock())
                except DatabaseError as e:
                    # Left ACTIVE; the idle timer closes it
                    logger.error(
                        "Failed to abandon undelivered funnel",
                        funnel_id=instance.id,
                        platform_user_id=platform_user_id,
                        error=str(e),
                    )
                    self._arm_timer(instance.id)
                await self._event(instance, FunnelEventType.SEND_FAILED, 0, {"funnel_key": funnel.key})
                logger.warning(
                    "Funnel abandoned after failed send",
                    funnel_id=instance.id,
                    platform_user_id=platform_user_id,
                    funnel_key=funnel.key,
                )
                return FunnelStartResult(started=False, reason="failed_to_send_funnel_message")

            self._arm_timer(instance.id)
            await self._event(instance, FunnelEventType.STEP_SENT, 0, {"funnel_key": funnel.key})

            logger.info(
                "Funnel started",
                funnel_id=instance.id,
                platform_user_id=platform_user_id,
                funnel_key=funnel.key,
                pulse_state=context.pulse_state.value,
                score=selection.score,
            )
            return FunnelStartResult(
                started=True,
                reason=selection.reason,
                funnel_key=funnel.key,
                category=funnel.category,
                hashtag=funnel.hashtag,
            )

    async def _deliver_step(self, funnel: FunnelDefinition, instance: FunnelInstance, index: int) -> bool:
        step = funnel.step(index)
        if step is None:
            return False

        choices = step_choices_with_tokens(funnel, step)
        try:
            return bool(await self.sender.send(instance.chat_id, format_step_text(step.text, choices), choices))
        except Exception as e:
            logger.warning(
                "Funnel step delivery failed",
                funnel_id=instance.id,
                step_index=index,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    # ------------------------------------------------------------------
    # Reply / callback
    # ------------------------------------------------------------------

    async def handle_reply(self, platform_user_id: str, text: str) -> FunnelReplyResult:
        if text.startswith(CONTROL_PREFIX):
            return FunnelReplyResult(handled=False)

        async with self.locks.acquire(platform_user_id):
            active = await self.funnels.get_active(platform_user_id)
            if not active:
                return FunnelReplyResult(handled=False)

            funnel = await self.resolve_definition(active)
            step = funnel.step(active.current_step_index) if funnel else None
            if step is None:
                return FunnelReplyResult(handled=False)

            await self._event(active, FunnelEventType.STEP_REPLIED, active.current_step_index, {
                "message_preview": text[:120],
            })

            decision = evaluate_reply(step, text)
            outcome, next_text, choices = await self._apply(active, funnel, decision)

        if outcome is _Outcome.ABANDONED:
            return FunnelReplyResult(handled=True, response_text=REPLY_ABANDONED_TEXT)
        if outcome is _Outcome.PASSED_THROUGH:
            return FunnelReplyResult(handled=False, pass_through=True)
        if outcome in (_Outcome.ADVANCED, _Outcome.COMPLETED):
            return FunnelReplyResult(handled=True, response_text=next_text, choices=choices)
        if outcome is _Outcome.LOST:
            return FunnelReplyResult(handled=False)
        return FunnelReplyResult(handled=True, response_text=REPLY_STAY_TEXT)

    async def handle_callback(self, platform_user_id: str, action_token: str) -> FunnelCallbackResult | None:
        """Returns None when the token is not a funnel token or names an unknown funnel."""
        token = parse_callback_token(action_token)
        if token is None:
            return None

        async with self.locks.acquire(platform_user_id):
            active = await self.funnels.get_active(platform_user_id)
            if not active:
                return FunnelCallbackResult(text=CALLBACK_NO_ACTIVE_TEXT)
            if active.funnel_key != token.funnel_key:
                return FunnelCallbackResult(text=CALLBACK_OUTDATED_TEXT)

            funnel = await self.resolve_definition(active)
            step = funnel.step(active.current_step_index) if funnel else None
            if step is None:
                return None

            decision = evaluate_callback(step, token.action)
            outcome, next_text, choices = await self._apply(active, funnel, decision)

        if outcome is _Outcome.ABANDONED:
            return FunnelCallbackResult(text=CALLBACK_ABANDONED_TEXT)
        if outcome is _Outcome.PASSED_THROUGH:
            return FunnelCallbackResult(text=CALLBACK_HANDOFF_TEXT)
        if outcome in (_Outcome.ADVANCED, _Outcome.COMPLETED):
            return FunnelCallbackResult(text=next_text, choices=choices)
        if outcome is _Outcome.LOST:
            return FunnelCallbackResult(text=CALLBACK_NO_ACTIVE_TEXT)
        return FunnelCallbackResult(text=CALLBACK_STAY_TEXT)

    async def _apply(
        self, instance: FunnelInstance, funnel: FunnelDefinition, decision: StepDecision
    ) -> tuple[_Outcome, str | None, list[FunnelChoice]]:
        index = instance.current_step_index

        if decision.kind is DecisionKind.ABANDON:
            if not await self._finish(instance, FunnelStatus.ABANDONED, index):
                return _Outcome.LOST, None, []
            await self._event(instance, FunnelEventType.FUNNEL_ABANDONED, index, {"reason": decision.reason})
            return _Outcome.ABANDONED, None, []

        if decision.kind is DecisionKind.PASS_THROUGH:
            if not await self._finish(instance, FunnelStatus.COMPLETED, index):
                return _Outcome.LOST, None, []
            await self._event(instance, FunnelEventType.HANDOFF_MAIN_PIPELINE, index, {
                "reason": decision.reason,
                "tool_name": funnel.tool_name,
            })
            await self._event(instance, FunnelEventType.FUNNEL_COMPLETED, index, {"reason": "handoff"})
            return _Outcome.PASSED_THROUGH, None, []

        if decision.kind is DecisionKind.ADVANCE:
            next_index = decision.next_step_index
            next_step = funnel.step(next_index) if next_index is not None else None

            if next_step is None:
                if not await self._finish(instance, FunnelStatus.COMPLETED, index):
                    return _Outcome.LOST, None, []
                await self._event(instance, FunnelEventType.FUNNEL_COMPLETED, index, {"reason": "terminal"})
                return _Outcome.COMPLETED, COMPLETED_TEXT, []

            choices = step_choices_with_tokens(funnel, next_step)
            response = format_step_text(next_step.text, choices)

            if next_step.is_closing:
                if not await self._finish(instance, FunnelStatus.COMPLETED, next_index):
                    return _Outcome.LOST, None, []
                await self._event(instance, FunnelEventType.STEP_ADVANCED, next_index, {"reason": decision.reason})
                await self._event(instance, FunnelEventType.STEP_SENT, next_index)
                await self._event(instance, FunnelEventType.FUNNEL_COMPLETED, next_index, {"reason": "closing_step"})
                return _Outcome.COMPLETED, response, choices

            moved = await self.funnels.update_state(instance.id, FunnelStatus.ACTIVE, next_index, self.clock())
            if moved is None:
                self.timers.cancel(instance.id)
                return _Outcome.LOST, None, []
            self._arm_timer(instance.id)
            await self._event(instance, FunnelEventType.STEP_ADVANCED, next_index, {"reason": decision.reason})
            await self._event(instance, FunnelEventType.STEP_SENT, next_index)
            return _Outcome.ADVANCED, response, choices

        # a reply that moves nothing still counts as activity
        touched = await self.funnels.update_state(instance.id, FunnelStatus.ACTIVE, index, self.clock())
        if touched is None:
            self.timers.cancel(instance.id)
            return _Outcome.LOST, None, []
        self._arm_timer(instance.id)
        return _Outcome.STAYED, None, []

    async def _finish(self, instance: FunnelInstance, status: FunnelStatus, step_index: int) -> bool:
        self.timers.cancel(instance.id)
        updated = await self.funnels.update_state(instance.id, status, step_index, self.clock())
        if updated is None:
            return False

        logger.info(
            "Funnel finished",
            funnel_id=instance.id,
            platform_user_id=instance.platform_user_id,
            funnel_key=instance.funnel_key,
            status=status.value,
            step_index=step_index,
        )
        return True

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _arm_timer(self, funnel_id: str) -> None:
        idle = timedelta(seconds=self.idle_timeout_seconds)

        async def _expire() -> None:
            await self.expire_if_idle(funnel_id, idle, source="idle_timer")

        self.timers.schedule(funnel_id, self.idle_timeout_seconds, _expire)

    async def expire_if_idle(self, funnel_id: str, max_idle: timedelta, source: str) -> bool:
        """
        Expire one instance if it is still ACTIVE and idle for at least max_idle.

        Shared by the per-instance idle timer and the periodic sweep.
        """
        now = self.clock()
        expired = await self.funnels.expire_if_idle(funnel_id, now - max_idle, now)
        if expired is None:
            return False

        self.timers.cancel(funnel_id)

        await self._event(expired, FunnelEventType.FUNNEL_EXPIRED, expired.current_step_index, {
            "source": source,
        })
        logger.info(
            "Funnel expired",
            funnel_id=funnel_id,
            platform_user_id=expired.platform_user_id,
            funnel_key=expired.funnel_key,
            step_index=expired.current_step_index,
            source=source,
        )
        return True

    async def sweep_expired(self, max_idle_minutes: int | None = None) -> int:
        minutes = max_idle_minutes if max_idle_minutes is not None else settings.FUNNEL_SWEEP_MAX_IDLE_MINUTES
        max_idle = timedelta(minutes=minutes)

        candidates = await self.funnels.list_idle_active(self.clock() - max_idle)
        expired = 0
        for funnel_id in candidates:
            if await self.expire_if_idle(funnel_id, max_idle, source="sweep"):
                expired += 1

        if expired:
            logger.info("Funnel sweep expired idle instances", expired=expired, max_idle_minutes=minutes)
        return expired

    def shutdown(self) -> None:
        self.timers.cancel_all()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def resolve_definition(self, instance: FunnelInstance) -> FunnelDefinition | None:
        """
        Rebuild the definition for a running instance from its funnel key.

        Uses the topic snapshot taken at start, falling back to the topic
        store. Unknown keys resolve to None.
        """
        topic = _topic_from_snapshot(instance.context.get("source_topic"))
        if topic is None:
            topic_id = topic_id_from_funnel_key(instance.funnel_key)
            if topic_id is None:
                return None
            try:
                topic = await self.context_store.get_topic(topic_id)
            except Exception as e:
                logger.warning("Topic lookup failed", funnel_key=instance.funnel_key, error=str(e))
                return None
            if topic is None:
                return None

        funnel = generate_funnel_from_topic(topic)
        if funnel is None or funnel.key != instance.funnel_key:
            return None
        return funnel

    async def _event(
        self,
        instance: FunnelInstance,
        event_type: FunnelEventType,
        step_index: int,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await self.analytics.record(instance.id, instance.platform_user_id, event_type, step_index, payload)


def _topic_snapshot(topic: TopicIntent) -> dict[str, Any]:
    snapshot = asdict(topic)
    snapshot["phase"] = topic.phase.value if topic.phase else None
    snapshot["last_signal_at"] = topic.last_signal_at.isoformat() if topic.last_signal_at else None
    return snapshot


def _topic_from_snapshot(snapshot: Any) -> TopicIntent | None:
    if not isinstance(snapshot, dict) or not snapshot.get("id") or not snapshot.get("topic"):
        return None
    return TopicIntent(
        id=str(snapshot["id"]),
        user_id=str(snapshot.get("user_id") or ""),
        topic=str(snapshot["topic"]),
        category=snapshot.get("category"),
        confidence=int(snapshot.get("confidence") or 0),
        phase=TopicPhase.parse(snapshot.get("phase")),
    )
