"""
outreach.py
-----------
Purpose:
    Internal trigger endpoints for the proactive outreach engine.
    Called by the messaging adapters and the scheduler, never by end users.

Usage:
    1. POST /internal/outreach/start - Try to start a funnel for a user
    2. POST /internal/outreach/reply - Route a user message through the active funnel
    3. POST /internal/outreach/callback - Apply a tapped funnel choice
    4. POST /internal/outreach/sweep - Expire idle funnels now
    5. POST /internal/outreach/pulse/engagement - Score one user message
    6. GET /internal/outreach/pulse/{user_id}/state - Read the pulse record
"""

from fastapi import APIRouter, Depends, HTTPException, status

from outreach.auth.internal import internal_auth_dependency
from outreach.config import settings
from outreach.db.helpers import DatabaseError
from outreach.engine import OutreachEngine, get_engine
from outreach.features.proactive_intent.domain import FunnelChoice
from outreach.features.pulse.domain import EngagementState
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.api.outreach_request import (
    FunnelCallbackRequest,
    FunnelReplyRequest,
    RecordEngagementRequest,
    StartFunnelRequest,
    SweepRequest,
)
from outreach.models.api.outreach_response import (
    ChoiceResponse,
    FunnelCallbackResponse,
    FunnelReplyResponse,
    PulseStateResponse,
    StartFunnelResponse,
    SweepResponse,
)

router = APIRouter(
    prefix="/internal/outreach",
    tags=["outreach"],
    dependencies=[Depends(internal_auth_dependency)],
)
logger = get_logger(__name__)


def _store_unavailable(operation: str, error: DatabaseError) -> HTTPException:
    logger.error(
        "Outreach request failed on durable store",
        operation=operation,
        db_operation=error.operation,
        error=str(error),
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Durable store unavailable",
    )


def _choices(choices: list[FunnelChoice]) -> list[ChoiceResponse]:
    return [ChoiceResponse(label=choice.label, action=choice.action) for choice in choices]


@router.post("/start", response_model=StartFunnelResponse)
async def start_funnel(body: StartFunnelRequest, engine: OutreachEngine = Depends(get_engine)):
    try:
        result = await engine.orchestrator.try_start(body.platform_user_id, body.chat_id)
    except DatabaseError as e:
        raise _store_unavailable("start", e) from e

    return StartFunnelResponse(
        started=result.started,
        reason=result.reason,
        funnel_key=result.funnel_key,
        category=result.category,
        hashtag=result.hashtag,
    )


@router.post("/reply", response_model=FunnelReplyResponse)
async def funnel_reply(body: FunnelReplyRequest, engine: OutreachEngine = Depends(get_engine)):
    try:
        result = await engine.orchestrator.handle_reply(body.platform_user_id, body.text)
    except DatabaseError as e:
        raise _store_unavailable("reply", e) from e

    return FunnelReplyResponse(
        handled=result.handled,
        response_text=result.response_text,
        pass_through=result.pass_through,
        choices=_choices(result.choices),
    )


@router.post("/callback", response_model=FunnelCallbackResponse)
async def funnel_callback(body: FunnelCallbackRequest, engine: OutreachEngine = Depends(get_engine)):
    try:
        result = await engine.orchestrator.handle_callback(body.platform_user_id, body.action_token)
    except DatabaseError as e:
        raise _store_unavailable("callback", e) from e

    if result is None:
        return FunnelCallbackResponse(matched=False)
    return FunnelCallbackResponse(matched=True, text=result.text, choices=_choices(result.choices))


@router.post("/sweep", response_model=SweepResponse)
async def sweep(body: SweepRequest, engine: OutreachEngine = Depends(get_engine)):
    minutes = body.max_idle_minutes or settings.FUNNEL_SWEEP_MAX_IDLE_MINUTES
    try:
        expired = await engine.orchestrator.sweep_expired(minutes)
    except DatabaseError as e:
        raise _store_unavailable("sweep", e) from e

    return SweepResponse(expired=expired, max_idle_minutes=minutes)


@router.post("/pulse/engagement", response_model=PulseStateResponse)
async def record_engagement(body: RecordEngagementRequest, engine: OutreachEngine = Depends(get_engine)):
    try:
        record = await engine.pulse.record_engagement(
            body.user_id,
            body.message,
            previous_message_at=body.previous_message_at,
            previous_user_message=body.previous_user_message,
            classifier_signal=body.classifier_signal,
        )
    except DatabaseError as e:
        raise _store_unavailable("pulse_engagement", e) from e

    return PulseStateResponse(
        user_id=record.user_id,
        state=record.state.value,
        score=record.score,
        message_count=record.message_count,
        last_topic=record.last_topic,
        updated_at=record.updated_at,
    )


@router.get("/pulse/{user_id}/state", response_model=PulseStateResponse)
async def pulse_state(user_id: str, engine: OutreachEngine = Depends(get_engine)):
    try:
        record = await engine.pulse.get_record(user_id)
    except DatabaseError as e:
        raise _store_unavailable("pulse_state", e) from e

    if record is None:
        return PulseStateResponse(user_id=user_id, state=EngagementState.PASSIVE.value, score=0)

    return PulseStateResponse(
        user_id=record.user_id,
        state=record.state.value,
        score=record.score,
        message_count=record.message_count,
        last_topic=record.last_topic,
        updated_at=record.updated_at,
    )
