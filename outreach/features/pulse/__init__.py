"""
Pulse engagement scoring feature.

Signal extraction and the state ladder are pure; PulseService adds
load/persist, caching and per-user serialization on top.
"""

from .domain.models import ClassifierSignal, EngagementState, PulseRecord  # noqa: F401
from .service import PulseService  # noqa: F401
