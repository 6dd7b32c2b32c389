"""
Domain models for the pulse engagement feature.

Plain dataclasses shared by the extractor, the state machine, the
repository and the cache. Serialization helpers live here so the
repository and the redis cache agree on one shape.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from outreach.utils.clock import parse_timestamp


class EngagementState(str, Enum):
    PASSIVE = "PASSIVE"
    CURIOUS = "CURIOUS"
    ENGAGED = "ENGAGED"
    PROACTIVE = "PROACTIVE"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def at_least(self, minimum: "EngagementState") -> bool:
        return self.rank >= minimum.rank

    @classmethod
    def parse(cls, value: str | None) -> "EngagementState":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.PASSIVE


_STATE_RANK = {
    EngagementState.PASSIVE: 0,
    EngagementState.CURIOUS: 1,
    EngagementState.ENGAGED: 2,
    EngagementState.PROACTIVE: 3,
}


class ClassifierSignal(str, Enum):
    """Coarse mood tag supplied by the external classifier."""

    DRY = "dry"
    STRESSED = "stressed"
    ROASTING = "roasting"
    NORMAL = "normal"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "str | ClassifierSignal | None") -> "ClassifierSignal":
        if isinstance(value, ClassifierSignal):
            return value
        if value is None:
            return cls.NORMAL
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(slots=True)
class SignalBreakdown:
    urgency: int = 0
    desire: int = 0
    rejection: int = 0
    fast_reply: int = 0
    topic_persistence: int = 0
    classifier_signal: int = 0

    def total(self) -> int:
        return (
            self.urgency
            + self.desire
            + self.rejection
            + self.fast_reply
            + self.topic_persistence
            + self.classifier_signal
        )


@dataclass(slots=True)
class EngagementSignals:
    """Per-message signal vector. Never persisted on its own."""

    score_delta: int
    matched_signals: list[str]
    topic_key: str | None
    breakdown: SignalBreakdown


@dataclass(slots=True)
class SignalHistoryEntry:
    at: datetime
    score: int
    delta: int
    state: EngagementState
    matched_signals: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "score": self.score,
            "delta": self.delta,
            "state": self.state.value,
            "matched_signals": list(self.matched_signals),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignalHistoryEntry | None":
        at = parse_timestamp(data.get("at"))
        if at is None:
            return None
        return cls(
            at=at,
            score=int(data.get("score") or 0),
            delta=int(data.get("delta") or 0),
            state=EngagementState.parse(data.get("state")),
            matched_signals=[str(name) for name in data.get("matched_signals") or []],
        )


@dataclass(slots=True)
class PulseRecord:
    """One engagement record per user."""

    user_id: str
    score: int
    state: EngagementState
    last_message_at: datetime
    updated_at: datetime
    message_count: int = 0
    last_topic: str | None = None
    signal_history: list[SignalHistoryEntry] = field(default_factory=list)

    @classmethod
    def default(cls, user_id: str, now: datetime) -> "PulseRecord":
        return cls(
            user_id=user_id,
            score=0,
            state=EngagementState.PASSIVE,
            last_message_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "score": self.score,
            "state": self.state.value,
            "last_message_at": self.last_message_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "message_count": self.message_count,
            "last_topic": self.last_topic,
            "signal_history": [entry.to_dict() for entry in self.signal_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PulseRecord":
        epoch = parse_timestamp("1970-01-01T00:00:00+00:00")
        history = [
            entry
            for entry in (
                SignalHistoryEntry.from_dict(item)
                for item in data.get("signal_history") or []
                if isinstance(item, dict)
            )
            if entry is not None
        ]
        return cls(
            user_id=str(data["user_id"]),
            score=int(data.get("score") or 0),
            state=EngagementState.parse(data.get("state")),
            last_message_at=parse_timestamp(data.get("last_message_at")) or epoch,
            updated_at=parse_timestamp(data.get("updated_at")) or epoch,
            message_count=int(data.get("message_count") or 0),
            last_topic=data.get("last_topic"),
            signal_history=history,
        )
