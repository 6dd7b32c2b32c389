import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import make_topic

from outreach.features.proactive_intent.domain import FunnelEventType, FunnelStatus, TopicPhase
from outreach.features.proactive_intent.orchestrator import (
    CALLBACK_ABANDONED_TEXT,
    CALLBACK_HANDOFF_TEXT,
    CALLBACK_NO_ACTIVE_TEXT,
    CALLBACK_OUTDATED_TEXT,
    COMPLETED_TEXT,
    REPLY_ABANDONED_TEXT,
    REPLY_STAY_TEXT,
)
from outreach.features.proactive_intent.repository import FunnelRepositoryError
from outreach.features.pulse.domain import EngagementState


async def _start(harness):
    result = await harness.orchestrator.try_start("tg-1", "chat-1")
    assert result.started, result.reason
    return await harness.funnels.get_active("tg-1")


# ----------------------------------------------------------------------
# start
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_delivers_hook_and_arms_timer(harness):
    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is True
    assert result.funnel_key == "topic_t1"
    assert result.category == "food"
    assert result.hashtag == "bangalorefood"

    chat_id, text, choices = harness.sender.sent[0]
    assert chat_id == "chat-1"
    assert "biryani in indiranagar" in text
    assert [c.action for c in choices] == ["funnel:topic_t1:advance", "funnel:topic_t1:abandon"]

    instance = await harness.funnels.get_active("tg-1")
    assert instance.context["source_topic"]["id"] == "t1"
    assert harness.timers.pending() == [instance.id]
    assert harness.events.types() == [FunnelEventType.FUNNEL_STARTED, FunnelEventType.STEP_SENT]


@pytest.mark.asyncio
async def test_second_start_is_refused_while_active(harness):
    await _start(harness)

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is False
    assert result.reason == "active funnel already exists (topic_t1)"
    assert len(harness.sender.sent) == 1


@pytest.mark.asyncio
async def test_passive_user_is_refused(harness):
    harness.context.pulse["u1"] = EngagementState.PASSIVE
    harness.context.topics[:] = [make_topic(confidence=100)]

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is False
    assert "PASSIVE" in result.reason
    assert harness.funnels.rows == {}


@pytest.mark.asyncio
async def test_unknown_user_is_refused(harness):
    result = await harness.orchestrator.try_start("tg-404", "chat-1")

    assert result.started is False
    assert result.reason == "user context unavailable"


@pytest.mark.asyncio
async def test_undelivered_hook_abandons_instance(harness):
    harness.sender.deliver = False

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is False
    assert result.reason == "failed_to_send_funnel_message"
    (instance,) = harness.funnels.rows.values()
    assert instance.status is FunnelStatus.ABANDONED
    assert FunnelEventType.SEND_FAILED in harness.events.types()
    assert harness.timers.pending() == []


@pytest.mark.asyncio
async def test_sender_exception_is_treated_as_undelivered(harness):
    harness.sender.error = ConnectionError("channel down")

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is False
    assert await harness.funnels.get_active("tg-1") is None


@pytest.mark.asyncio
async def test_failed_abandon_write_leaves_idle_timer_to_close_instance(harness):
    harness.sender.deliver = False

    async def _update_fails(*args):
        raise FunnelRepositoryError("connection reset", operation="update_funnel")

    harness.funnels.update_state = _update_fails

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is False
    (instance,) = harness.funnels.rows.values()
    assert instance.status is FunnelStatus.ACTIVE
    assert harness.timers.pending() == [instance.id]

    harness.clock.advance(minutes=15)
    await harness.timers.fire(instance.id)

    assert harness.funnels.rows[instance.id].status is FunnelStatus.EXPIRED


@pytest.mark.asyncio
async def test_analytics_outage_does_not_block_start(harness):
    harness.events.fail = True

    result = await harness.orchestrator.try_start("tg-1", "chat-1")

    assert result.started is True
    assert harness.events.events == []


# ----------------------------------------------------------------------
# replies
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_yes_then_request_hands_off_to_main_pipeline(harness):
    instance = await _start(harness)

    first = await harness.orchestrator.handle_reply("tg-1", "yeah go ahead")

    assert first.handled is True
    assert first.response_text == "on it, scouting spots for you..."
    assert (await harness.funnels.get(instance.id)).current_step_index == 1
    assert harness.timers.pending() == [instance.id]

    second = await harness.orchestrator.handle_reply("tg-1", "find me something under 500")

    assert second.handled is False
    assert second.pass_through is True
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.COMPLETED
    assert harness.timers.pending() == []
    assert harness.events.types(instance.id)[-2:] == [
        FunnelEventType.HANDOFF_MAIN_PIPELINE,
        FunnelEventType.FUNNEL_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_decline_abandons_and_cancels_timer(harness):
    instance = await _start(harness)

    result = await harness.orchestrator.handle_reply("tg-1", "nah not rn")

    assert result.handled is True
    assert result.response_text == REPLY_ABANDONED_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.ABANDONED
    assert harness.timers.pending() == []
    assert FunnelEventType.FUNNEL_ABANDONED in harness.events.types(instance.id)


@pytest.mark.asyncio
async def test_unrelated_reply_nudges_and_keeps_funnel(harness):
    instance = await _start(harness)

    result = await harness.orchestrator.handle_reply("tg-1", "I know a place near Indiranagar")

    assert result.handled is True
    assert result.response_text == REPLY_STAY_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.ACTIVE
    assert FunnelEventType.STEP_REPLIED in harness.events.types(instance.id)


@pytest.mark.asyncio
async def test_closing_step_completes_funnel(harness):
    harness.context.topics[:] = [
        make_topic(topic="learning guitar", category=None, phase=TopicPhase.PROBING)
    ]
    instance = await _start(harness)

    result = await harness.orchestrator.handle_reply("tg-1", "sure, tell me")

    assert result.handled is True
    assert result.response_text.startswith("got it, I'll keep learning guitar on my radar")
    final = await harness.funnels.get(instance.id)
    assert final.status is FunnelStatus.COMPLETED
    assert final.current_step_index == 1
    assert harness.timers.pending() == []


@pytest.mark.asyncio
async def test_control_messages_and_idle_users_are_not_handled(harness):
    assert (await harness.orchestrator.handle_reply("tg-1", "hello")).handled is False

    await _start(harness)
    assert (await harness.orchestrator.handle_reply("tg-1", "[callback] funnel:topic_t1:advance")).handled is False


# ----------------------------------------------------------------------
# callbacks
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_callback_advance_then_handoff(harness):
    instance = await _start(harness)

    advanced = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:advance")
    assert advanced.text == "on it, scouting spots for you..."

    handed_off = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:go")
    assert handed_off.text == CALLBACK_HANDOFF_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.COMPLETED


@pytest.mark.asyncio
async def test_callback_abandon_choice(harness):
    instance = await _start(harness)

    result = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:abandon")

    assert result.text == CALLBACK_ABANDONED_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.ABANDONED


@pytest.mark.asyncio
async def test_stale_button_gets_explanation(harness):
    instance = await _start(harness)

    result = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_old:advance")

    assert result.text == CALLBACK_OUTDATED_TEXT
    assert (await harness.funnels.get(instance.id)).current_step_index == 0


@pytest.mark.asyncio
async def test_callback_without_active_funnel(harness):
    result = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:advance")

    assert result.text == CALLBACK_NO_ACTIVE_TEXT


@pytest.mark.asyncio
async def test_malformed_token_is_no_match(harness):
    await _start(harness)

    assert await harness.orchestrator.handle_callback("tg-1", "menu:settings") is None


@pytest.mark.asyncio
async def test_advancing_past_last_step_completes(harness):
    instance = await _start(harness)
    await harness.funnels.update_state(instance.id, FunnelStatus.ACTIVE, 1, harness.clock())
    harness.orchestrator.resolve_definition = _with_extra_choice(harness.orchestrator.resolve_definition)

    result = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:finish")

    assert result.text == COMPLETED_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.COMPLETED


def _with_extra_choice(resolve):
    """Give the handoff step a choice that points past the end."""

    async def _resolve(instance):
        funnel = await resolve(instance)
        hook, handoff = funnel.steps
        handoff = replace(handoff, next_on_choice={"finish": 5}, pass_through_on_any_reply=False)
        return replace(funnel, steps=(hook, handoff))

    return _resolve


# ----------------------------------------------------------------------
# expiry
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_idle_timer_expires_instance(harness):
    instance = await _start(harness)
    harness.clock.advance(minutes=15)

    await harness.timers.fire(instance.id)

    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.EXPIRED
    assert harness.events.events[-1][1].payload == {"source": "idle_timer"}
    assert (await harness.orchestrator.handle_reply("tg-1", "yeah")).handled is False


@pytest.mark.asyncio
async def test_any_reply_refreshes_idle_window(harness):
    instance = await _start(harness)
    harness.clock.advance(minutes=10)
    await harness.orchestrator.handle_reply("tg-1", "hmm")
    harness.clock.advance(minutes=10)

    expired = await harness.orchestrator.expire_if_idle(instance.id, timedelta(minutes=15), "idle_timer")

    assert expired is False
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.ACTIVE


@pytest.mark.asyncio
async def test_stale_timer_keeps_timer_rearmed_by_concurrent_reply(harness):
    instance = await _start(harness)
    harness.clock.advance(minutes=15)

    release = asyncio.Event()
    expire_if_idle = harness.funnels.expire_if_idle

    async def _slow_expire(funnel_id, cutoff, now):
        await release.wait()
        return await expire_if_idle(funnel_id, cutoff, now)

    harness.funnels.expire_if_idle = _slow_expire

    timer_run = asyncio.create_task(harness.timers.fire(instance.id))
    await asyncio.sleep(0)
    reply = await harness.orchestrator.handle_reply("tg-1", "hmm")
    release.set()
    await timer_run

    assert reply.response_text == REPLY_STAY_TEXT
    assert harness.funnels.rows[instance.id].status is FunnelStatus.ACTIVE
    assert instance.id in harness.timers.pending()


@pytest.mark.asyncio
async def test_sweep_expires_only_idle_active_instances(harness):
    harness.context.users["tg-2"] = "u2"
    harness.context.pulse["u2"] = EngagementState.PROACTIVE
    harness.context.topics.append(make_topic(topic_id="t9", user_id="u2"))

    idle = await _start(harness)
    harness.clock.advance(minutes=40)
    fresh = await harness.orchestrator.try_start("tg-2", "chat-2")
    assert fresh.started
    harness.clock.advance(minutes=10)

    assert await harness.orchestrator.sweep_expired(45) == 1
    assert await harness.orchestrator.sweep_expired(45) == 0

    assert (await harness.funnels.get(idle.id)).status is FunnelStatus.EXPIRED
    assert (await harness.funnels.get_active("tg-2")) is not None
    assert idle.id not in harness.timers.pending()


@pytest.mark.asyncio
async def test_expired_funnel_is_never_revived_by_late_reply(harness):
    instance = await _start(harness)
    harness.clock.advance(hours=1)
    await harness.orchestrator.sweep_expired(45)

    result = await harness.orchestrator.handle_callback("tg-1", "funnel:topic_t1:advance")

    assert result.text == CALLBACK_NO_ACTIVE_TEXT
    assert (await harness.funnels.get(instance.id)).status is FunnelStatus.EXPIRED


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_timers(harness):
    await _start(harness)

    harness.orchestrator.shutdown()

    assert harness.timers.pending() == []


# ----------------------------------------------------------------------
# definition lookup
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_definition_falls_back_to_topic_store(harness):
    instance = await _start(harness)
    instance.context.pop("source_topic")

    funnel = await harness.orchestrator.resolve_definition(instance)

    assert funnel.key == "topic_t1"


@pytest.mark.asyncio
async def test_unknown_funnel_key_resolves_to_nothing(harness):
    instance = await _start(harness)
    instance.context.pop("source_topic")
    instance.funnel_key = "legacy_food_deals"

    assert await harness.orchestrator.resolve_definition(instance) is None
