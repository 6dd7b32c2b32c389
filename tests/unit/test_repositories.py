import json
from unittest.mock import AsyncMock

import pytest
from conftest import NOW
from psycopg import errors as pg_errors

from outreach.db.helpers import DatabaseError
from outreach.features.proactive_intent.domain import FunnelEvent, FunnelEventType, FunnelStatus, TopicPhase
from outreach.features.proactive_intent.repository import (
    ActiveFunnelExistsError,
    FunnelEventRepository,
    FunnelRepository,
    FunnelRepositoryError,
    IntentContextRepository,
)
from outreach.features.pulse.domain import EngagementState, PulseRecord
from outreach.features.pulse.repository import PulseRepository, PulseRepositoryError

FUNNEL_MODULE = "outreach.features.proactive_intent.repository.funnel_repository"
CONTEXT_MODULE = "outreach.features.proactive_intent.repository.context_repository"
PULSE_MODULE = "outreach.features.pulse.repository"


def _funnel_row(**overrides):
    row = {
        "id": "5f0c",
        "platform_user_id": "tg-1",
        "internal_user_id": "u1",
        "chat_id": "chat-1",
        "funnel_key": "topic_t1",
        "status": "ACTIVE",
        "current_step_index": 0,
        "context": {"tool_name": "search_dineout"},
        "last_event_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_insert_active_maps_row(monkeypatch):
    fetch_mock = AsyncMock(return_value=_funnel_row())
    monkeypatch.setattr(f"{FUNNEL_MODULE}.fetch_one", fetch_mock)

    instance = await FunnelRepository().insert_active("tg-1", "u1", "chat-1", "topic_t1", {"a": 1}, NOW)

    assert instance.status is FunnelStatus.ACTIVE
    assert instance.context == {"tool_name": "search_dineout"}
    args, _ = fetch_mock.await_args
    assert json.loads(args[1][4]) == {"a": 1}


@pytest.mark.asyncio
async def test_insert_active_unique_violation_means_already_active(monkeypatch):
    async def fetch_one(query, params=()):
        try:
            raise pg_errors.UniqueViolation("duplicate key value")
        except pg_errors.UniqueViolation as e:
            raise DatabaseError("Query failed", operation="fetch_one", recoverable=False) from e

    monkeypatch.setattr(f"{FUNNEL_MODULE}.fetch_one", fetch_one)

    with pytest.raises(ActiveFunnelExistsError):
        await FunnelRepository().insert_active("tg-1", "u1", "chat-1", "topic_t1", {}, NOW)


@pytest.mark.asyncio
async def test_insert_active_other_failures_are_repository_errors(monkeypatch):
    monkeypatch.setattr(
        f"{FUNNEL_MODULE}.fetch_one", AsyncMock(side_effect=DatabaseError("timeout", operation="fetch_one"))
    )

    with pytest.raises(FunnelRepositoryError) as exc_info:
        await FunnelRepository().insert_active("tg-1", "u1", "chat-1", "topic_t1", {}, NOW)

    assert not isinstance(exc_info.value, ActiveFunnelExistsError)


@pytest.mark.asyncio
async def test_update_state_is_conditional_on_active(monkeypatch):
    fetch_mock = AsyncMock(return_value=None)
    monkeypatch.setattr(f"{FUNNEL_MODULE}.fetch_one", fetch_mock)

    assert await FunnelRepository().update_state("5f0c", FunnelStatus.COMPLETED, 1, NOW) is None

    query, params = fetch_mock.await_args.args
    assert "status = 'ACTIVE'" in query
    assert params == ("COMPLETED", 1, NOW, NOW, "5f0c")


@pytest.mark.asyncio
async def test_expire_if_idle_decodes_json_context(monkeypatch):
    row = _funnel_row(status="EXPIRED", context='{"selector_reason": "x"}')
    monkeypatch.setattr(f"{FUNNEL_MODULE}.fetch_one", AsyncMock(return_value=row))

    expired = await FunnelRepository().expire_if_idle("5f0c", NOW, NOW)

    assert expired.status is FunnelStatus.EXPIRED
    assert expired.context == {"selector_reason": "x"}


@pytest.mark.asyncio
async def test_recent_started_reads_funnel_key_from_payload(monkeypatch):
    rows = [
        {"payload": {"funnel_key": "topic_t1"}, "created_at": NOW},
        {"payload": '{"funnel_key": "topic_t2"}', "created_at": NOW.isoformat()},
        {"payload": {}, "created_at": NOW},
    ]
    monkeypatch.setattr(f"{FUNNEL_MODULE}.fetch_all", AsyncMock(return_value=rows))

    recent = await FunnelEventRepository().recent_started("tg-1", NOW)

    assert [entry.key for entry in recent] == ["topic_t1", "topic_t2"]


@pytest.mark.asyncio
async def test_event_insert_serializes_payload(monkeypatch):
    execute_mock = AsyncMock(return_value=1)
    monkeypatch.setattr(f"{FUNNEL_MODULE}.execute_query", execute_mock)

    await FunnelEventRepository().insert(
        FunnelEvent("5f0c", "tg-1", FunnelEventType.STEP_SENT, 0, {"funnel_key": "topic_t1"})
    )

    params = execute_mock.await_args.args[1]
    assert params[2] == "step_sent"
    assert json.loads(params[4]) == {"funnel_key": "topic_t1"}


@pytest.mark.asyncio
async def test_warm_topics_query_passes_phase_values(monkeypatch):
    rows = [
        {
            "id": 7,
            "user_id": "u1",
            "session_id": None,
            "topic": "goa trip",
            "category": "travel",
            "confidence": 72,
            "phase": "SHIFTING",
            "last_signal_at": NOW,
        }
    ]
    fetch_mock = AsyncMock(return_value=rows)
    monkeypatch.setattr(f"{CONTEXT_MODULE}.fetch_all", fetch_mock)

    topics = await IntentContextRepository(platform="telegram").list_warm_topics(
        "u1", 40, (TopicPhase.PROBING, TopicPhase.SHIFTING), NOW, 5
    )

    assert topics[0].id == "7"
    assert topics[0].phase is TopicPhase.SHIFTING
    assert fetch_mock.await_args.args[1][2] == ["probing", "shifting"]
    assert "last_signal_at <= %s" in fetch_mock.await_args.args[0]


@pytest.mark.asyncio
async def test_internal_user_resolution_is_scoped_to_platform(monkeypatch):
    fetch_mock = AsyncMock(return_value={"user_id": "u1"})
    monkeypatch.setattr(f"{CONTEXT_MODULE}.fetch_one", fetch_mock)

    assert await IntentContextRepository(platform="telegram").resolve_internal_user_id("tg-1") == "u1"
    assert fetch_mock.await_args.args[1] == ("telegram", "tg-1")


@pytest.mark.asyncio
async def test_pulse_upsert_failure_is_wrapped(monkeypatch):
    monkeypatch.setattr(
        f"{PULSE_MODULE}.execute_query", AsyncMock(side_effect=DatabaseError("down", operation="execute_query"))
    )
    record = PulseRecord(
        user_id="u1", score=50, state=EngagementState.ENGAGED, last_message_at=NOW, updated_at=NOW
    )

    with pytest.raises(PulseRepositoryError):
        await PulseRepository().upsert(record)
