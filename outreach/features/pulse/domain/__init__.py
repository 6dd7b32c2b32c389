from .models import (
    ClassifierSignal,
    EngagementSignals,
    EngagementState,
    PulseRecord,
    SignalBreakdown,
    SignalHistoryEntry,
)

__all__ = [
    "ClassifierSignal",
    "EngagementSignals",
    "EngagementState",
    "PulseRecord",
    "SignalBreakdown",
    "SignalHistoryEntry",
]
