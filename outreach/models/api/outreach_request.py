# outreach/models/api/outreach_request.py
"""
Internal outreach API request models.
Used by routes for input validation.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class StartFunnelRequest(BaseModel):
    """Ask the engine to try starting a proactive funnel."""

    platform_user_id: str = Field(..., min_length=1, description="Channel-side user id")
    chat_id: str = Field(..., min_length=1, description="Chat to deliver the first step to")


class FunnelReplyRequest(BaseModel):
    """Free-text user message routed through the active funnel, if any."""

    platform_user_id: str = Field(..., min_length=1)
    text: str = Field(..., max_length=4000)


class FunnelCallbackRequest(BaseModel):
    """Tapped choice; action_token is `funnel:<key>:<action>`."""

    platform_user_id: str = Field(..., min_length=1)
    action_token: str = Field(..., min_length=1, max_length=256)


class SweepRequest(BaseModel):
    max_idle_minutes: int | None = Field(
        default=None, ge=1, le=24 * 60, description="Idle threshold (default from settings)"
    )


class RecordEngagementRequest(BaseModel):
    """One user message for pulse scoring."""

    user_id: str = Field(..., min_length=1, description="Internal user id")
    message: str = Field(..., max_length=4000)
    previous_message_at: datetime | None = None
    previous_user_message: str | None = Field(default=None, max_length=4000)
    classifier_signal: str | None = Field(
        default=None, description="DRY, STRESSED, ROASTING or NORMAL"
    )
