"""
Domain models for topic-driven proactive funnels.

Funnel definitions are generated value objects (never persisted); they are
frozen so identical topics produce equal, identically serialized
definitions. Funnel instances mirror proactive_funnels rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from outreach.features.pulse.domain import EngagementState


class TopicPhase(str, Enum):
    NOTICED = "noticed"
    PROBING = "probing"
    SHIFTING = "shifting"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @classmethod
    def parse(cls, value: str | None) -> "TopicPhase | None":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


FUNNEL_ELIGIBLE_PHASES = (TopicPhase.PROBING, TopicPhase.SHIFTING)


class FunnelStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"
    EXPIRED = "EXPIRED"


class FunnelEventType(str, Enum):
    FUNNEL_STARTED = "funnel_started"
    STEP_SENT = "step_sent"
    STEP_ADVANCED = "step_advanced"
    STEP_REPLIED = "step_replied"
    FUNNEL_COMPLETED = "funnel_completed"
    FUNNEL_ABANDONED = "funnel_abandoned"
    FUNNEL_EXPIRED = "funnel_expired"
    HANDOFF_MAIN_PIPELINE = "handoff_main_pipeline"
    SEND_FAILED = "send_failed"


@dataclass(frozen=True, slots=True)
class TopicIntent:
    """Read-only view of a topic_intents row owned by the topic tracker."""

    id: str
    user_id: str
    topic: str
    category: str | None
    confidence: int
    phase: TopicPhase | None
    last_signal_at: datetime | None = None
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class FunnelChoice:
    label: str
    action: str


@dataclass(frozen=True, slots=True)
class FunnelStep:
    id: str
    text: str
    choices: tuple[FunnelChoice, ...] = ()
    next_on_choice: dict[str, int] = field(default_factory=dict)
    intent_keywords: tuple[str, ...] = ()
    next_on_intent: int | None = None
    next_on_any_reply: int | None = None
    pass_through_on_any_reply: bool = False
    abandon_keywords: tuple[str, ...] = ()

    @property
    def is_closing(self) -> bool:
        """A step nothing can follow: delivering it finishes the funnel."""
        return (
            not self.choices
            and not self.next_on_choice
            and self.next_on_intent is None
            and self.next_on_any_reply is None
            and not self.pass_through_on_any_reply
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "choices": [{"label": c.label, "action": c.action} for c in self.choices],
            "next_on_choice": dict(self.next_on_choice),
            "intent_keywords": list(self.intent_keywords),
            "next_on_intent": self.next_on_intent,
            "next_on_any_reply": self.next_on_any_reply,
            "pass_through_on_any_reply": self.pass_through_on_any_reply,
            "abandon_keywords": list(self.abandon_keywords),
        }


@dataclass(frozen=True, slots=True)
class FunnelDefinition:
    key: str
    category: str
    hashtag: str
    min_pulse_state: EngagementState
    cooldown_minutes: int
    preference_keywords: tuple[str, ...]
    goal_keywords: tuple[str, ...]
    steps: tuple[FunnelStep, ...]
    tool_name: str | None = None

    def step(self, index: int) -> FunnelStep | None:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "category": self.category,
            "hashtag": self.hashtag,
            "min_pulse_state": self.min_pulse_state.value,
            "cooldown_minutes": self.cooldown_minutes,
            "preference_keywords": list(self.preference_keywords),
            "goal_keywords": list(self.goal_keywords),
            "steps": [step.to_dict() for step in self.steps],
            "tool_name": self.tool_name,
        }


@dataclass(slots=True)
class RecentFunnel:
    key: str
    started_at: datetime


@dataclass(slots=True)
class IntentContext:
    platform_user_id: str
    internal_user_id: str
    chat_id: str
    pulse_state: EngagementState
    preferences: list[str]
    active_goals: list[str]
    recent_funnels: list[RecentFunnel]
    now: datetime
    pulse_degraded: bool = False


@dataclass(slots=True)
class SelectedFunnel:
    funnel: FunnelDefinition
    score: float
    reason: str
    topic: TopicIntent


@dataclass(slots=True)
class FunnelInstance:
    """Represents a proactive_funnels row."""

    id: str
    platform_user_id: str
    internal_user_id: str
    chat_id: str
    funnel_key: str
    status: FunnelStatus
    current_step_index: int
    context: dict[str, Any]
    last_event_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class FunnelEvent:
    funnel_id: str
    platform_user_id: str
    event_type: FunnelEventType
    step_index: int
    payload: dict[str, Any] = field(default_factory=dict)


class DecisionKind(str, Enum):
    ABANDON = "abandon"
    ADVANCE = "advance"
    PASS_THROUGH = "pass_through"
    STAY = "stay"


@dataclass(frozen=True, slots=True)
class StepDecision:
    kind: DecisionKind
    reason: str
    next_step_index: int | None = None


@dataclass(slots=True)
class FunnelStartResult:
    started: bool
    reason: str
    funnel_key: str | None = None
    category: str | None = None
    hashtag: str | None = None


@dataclass(slots=True)
class FunnelReplyResult:
    handled: bool
    response_text: str | None = None
    pass_through: bool = False
    choices: list[FunnelChoice] = field(default_factory=list)


@dataclass(slots=True)
class FunnelCallbackResult:
    text: str
    choices: list[FunnelChoice] = field(default_factory=list)
