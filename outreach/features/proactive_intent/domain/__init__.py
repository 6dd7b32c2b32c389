"""
Domain subpackage for proactive funnels.
"""

from .models import (
    FUNNEL_ELIGIBLE_PHASES,
    DecisionKind,
    FunnelCallbackResult,
    FunnelChoice,
    FunnelDefinition,
    FunnelEvent,
    FunnelEventType,
    FunnelInstance,
    FunnelReplyResult,
    FunnelStartResult,
    FunnelStatus,
    FunnelStep,
    IntentContext,
    RecentFunnel,
    SelectedFunnel,
    StepDecision,
    TopicIntent,
    TopicPhase,
)

__all__ = [
    "FUNNEL_ELIGIBLE_PHASES",
    "DecisionKind",
    "FunnelCallbackResult",
    "FunnelChoice",
    "FunnelDefinition",
    "FunnelEvent",
    "FunnelEventType",
    "FunnelInstance",
    "FunnelReplyResult",
    "FunnelStartResult",
    "FunnelStatus",
    "FunnelStep",
    "IntentContext",
    "RecentFunnel",
    "SelectedFunnel",
    "StepDecision",
    "TopicIntent",
    "TopicPhase",
]
