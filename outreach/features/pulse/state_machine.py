"""
Pulse score arithmetic and the hysteretic state ladder.

PASSIVE -> CURIOUS -> ENGAGED -> PROACTIVE at 25/50/80. Moving up needs the
next threshold; moving down needs a drop of HYSTERESIS_BUFFER below the
current state's entry threshold. One rung per call.
"""

import math
from datetime import datetime, timedelta

from outreach.features.pulse.constants import (
    HYSTERESIS_BUFFER,
    SCORE_DECAY_HALF_LIFE_HOURS,
    SCORE_MAX,
    SCORE_MIN,
    STALE_RECORD_DAYS,
    STATE_THRESHOLDS,
)
from outreach.features.pulse.domain import EngagementState

_LADDER = (
    EngagementState.PASSIVE,
    EngagementState.CURIOUS,
    EngagementState.ENGAGED,
    EngagementState.PROACTIVE,
)


def clamp_score(score: float) -> int:
    if not math.isfinite(score):
        return SCORE_MIN
    # floor(x + 0.5) rounds halves up, unlike round()'s banker's rounding
    return max(SCORE_MIN, min(SCORE_MAX, math.floor(score + 0.5)))


def _age(last_updated_at: datetime, now: datetime) -> timedelta:
    return max(timedelta(0), now - last_updated_at)


def apply_decay(score: float, last_updated_at: datetime, now: datetime) -> float:
    age_hours = _age(last_updated_at, now).total_seconds() / 3600
    return score * math.pow(0.5, age_hours / SCORE_DECAY_HALF_LIFE_HOURS)


def is_stale(last_updated_at: datetime, now: datetime) -> bool:
    return _age(last_updated_at, now) >= timedelta(days=STALE_RECORD_DAYS)


def transition_state(previous: EngagementState, score: float) -> EngagementState:
    s = clamp_score(score)
    index = _LADDER.index(previous)

    if index + 1 < len(_LADDER):
        upper = _LADDER[index + 1]
        if s >= STATE_THRESHOLDS[upper]:
            return upper

    if index > 0 and s < STATE_THRESHOLDS[previous] - HYSTERESIS_BUFFER:
        return _LADDER[index - 1]

    return previous


def state_for_score(score: float) -> EngagementState:
    """Non-hysteretic state for a score, for display."""
    s = clamp_score(score)
    for state in reversed(_LADDER[1:]):
        if s >= STATE_THRESHOLDS[state]:
            return state
    return EngagementState.PASSIVE
