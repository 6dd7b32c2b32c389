"""Tuning constants for engagement scoring."""

import re

from outreach.features.pulse.domain import ClassifierSignal, EngagementState

SCORE_MIN = 0
SCORE_MAX = 100

MAX_SIGNAL_HISTORY = 10
FAST_REPLY_WINDOW_SECONDS = 90
TOPIC_MATCH_THRESHOLD = 2
TOPIC_KEY_TOKENS = 4

SCORE_DECAY_HALF_LIFE_HOURS = 24
STALE_RECORD_DAYS = 30

# Entry threshold for each state above PASSIVE
STATE_THRESHOLDS = {
    EngagementState.CURIOUS: 25,
    EngagementState.ENGAGED: 50,
    EngagementState.PROACTIVE: 80,
}

HYSTERESIS_BUFFER = 5

SIGNAL_WEIGHTS = {
    "urgency": 14,
    "desire": 10,
    "rejection": -18,
    "fast_reply": 8,
    "topic_persistence": 7,
}

# UNKNOWN is listed explicitly so unrecognized tags weigh zero by table entry
CLASSIFIER_SIGNAL_WEIGHTS = {
    ClassifierSignal.DRY: -4,
    ClassifierSignal.STRESSED: 6,
    ClassifierSignal.ROASTING: 4,
    ClassifierSignal.NORMAL: 0,
    ClassifierSignal.UNKNOWN: 0,
}


def _patterns(*phrases: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(rf"\b{phrase}\b", re.IGNORECASE) for phrase in phrases)


URGENCY_PATTERNS = _patterns(
    "urgent",
    "asap",
    "right now",
    "immediately",
    "quick(ly)?",
    "soon",
    "hurry",
    "stuck",
    "emergency",
    "need help",
)

DESIRE_PATTERNS = _patterns(
    "i want",
    "i need",
    "i'd like",
    "can you",
    "please",
    "book",
    "compare",
    "show me",
    "find me",
    "let's do",
)

REJECTION_PATTERNS = _patterns(
    "no",
    "not now",
    "stop",
    "don't",
    "do not",
    "skip",
    "maybe later",
    "not interested",
    "leave it",
)

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "at", "be", "can", "do", "for", "from", "get", "go",
        "i", "if", "in", "is", "it", "its", "let", "me", "my", "of", "on", "or",
        "please", "show", "that", "the", "this", "to", "we", "with", "you", "your",
    }
)
