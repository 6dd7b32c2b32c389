"""
Persistence layer for proactive funnels.
"""

from .context_repository import IntentContextRepository, IntentContextStore, SessionSnapshot
from .funnel_repository import (
    ActiveFunnelExistsError,
    FunnelEventRepository,
    FunnelEventStore,
    FunnelRepository,
    FunnelRepositoryError,
    FunnelStore,
)

__all__ = [
    "ActiveFunnelExistsError",
    "FunnelEventRepository",
    "FunnelEventStore",
    "FunnelRepository",
    "FunnelRepositoryError",
    "FunnelStore",
    "IntentContextRepository",
    "IntentContextStore",
    "SessionSnapshot",
]
