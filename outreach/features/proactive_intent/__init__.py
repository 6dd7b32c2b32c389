"""
Topic-driven proactive funnels.

Warm topics become short scripted funnels (hook, then handoff or close).
The selector picks at most one per user, the orchestrator runs its
lifecycle and records every transition.
"""

from .funnel_generator import generate_funnel_from_topic  # noqa: F401
from .intent_selector import IntentSelector  # noqa: F401
from .orchestrator import FunnelOrchestrator  # noqa: F401
