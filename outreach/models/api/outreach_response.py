# outreach/models/api/outreach_response.py
"""
Internal outreach API response models.
"""

from datetime import datetime

from pydantic import BaseModel


class ChoiceResponse(BaseModel):
    label: str
    action: str


class StartFunnelResponse(BaseModel):
    started: bool
    reason: str
    funnel_key: str | None = None
    category: str | None = None
    hashtag: str | None = None


class FunnelReplyResponse(BaseModel):
    handled: bool
    response_text: str | None = None
    pass_through: bool = False
    choices: list[ChoiceResponse] = []


class FunnelCallbackResponse(BaseModel):
    matched: bool
    text: str | None = None
    choices: list[ChoiceResponse] = []


class SweepResponse(BaseModel):
    expired: int
    max_idle_minutes: int


class PulseStateResponse(BaseModel):
    user_id: str
    state: str
    score: int
    message_count: int = 0
    last_topic: str | None = None
    updated_at: datetime | None = None
