"""
Engagement signal extraction.

Pure and deterministic: message text plus timing in, signal vector out.
Signal families are an ordered, data-driven rule table; adding a family
means appending a SignalRule, not adding a branch.
"""

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from outreach.features.pulse.constants import (
    CLASSIFIER_SIGNAL_WEIGHTS,
    DESIRE_PATTERNS,
    FAST_REPLY_WINDOW_SECONDS,
    REJECTION_PATTERNS,
    SIGNAL_WEIGHTS,
    STOP_WORDS,
    TOPIC_KEY_TOKENS,
    TOPIC_MATCH_THRESHOLD,
    URGENCY_PATTERNS,
)
from outreach.features.pulse.domain import ClassifierSignal, EngagementSignals, SignalBreakdown
from outreach.utils.clock import ensure_aware, parse_timestamp, utc_now

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True, slots=True)
class SignalInput:
    message: str
    now: datetime
    previous_message_at: datetime | None = None
    previous_user_message: str | None = None
    classifier_signal: ClassifierSignal = ClassifierSignal.NORMAL


@dataclass(frozen=True, slots=True)
class SignalRule:
    name: str  # matched-signal name, also the SignalBreakdown field
    weight: int
    predicate: Callable[[SignalInput], bool]


def tokenize_for_topic(message: str) -> list[str]:
    """Case-folded, punctuation-stripped, deduplicated non-stopword tokens in order."""
    words = _NON_ALNUM.sub(" ", message.lower()).split()
    return list(dict.fromkeys(word for word in words if word not in STOP_WORDS))


def topic_overlap(current: Sequence[str], previous: Sequence[str]) -> int:
    if not current or not previous:
        return 0
    previous_set = set(previous)
    return sum(1 for token in current if token in previous_set)


def topic_key_from_tokens(tokens: Sequence[str]) -> str | None:
    if not tokens:
        return None
    return ":".join(tokens[:TOPIC_KEY_TOKENS])


def _matches_any(patterns: Sequence[re.Pattern]) -> Callable[[SignalInput], bool]:
    def predicate(signal_input: SignalInput) -> bool:
        return any(pattern.search(signal_input.message) for pattern in patterns)

    return predicate


def _is_fast_reply(signal_input: SignalInput) -> bool:
    if signal_input.previous_message_at is None:
        return False
    gap = (signal_input.now - signal_input.previous_message_at).total_seconds()
    return 0 < gap <= FAST_REPLY_WINDOW_SECONDS


def _is_topic_persistent(signal_input: SignalInput) -> bool:
    overlap = topic_overlap(
        tokenize_for_topic(signal_input.message),
        tokenize_for_topic(signal_input.previous_user_message or ""),
    )
    return overlap >= TOPIC_MATCH_THRESHOLD


SIGNAL_RULES: tuple[SignalRule, ...] = (
    SignalRule("urgency", SIGNAL_WEIGHTS["urgency"], _matches_any(URGENCY_PATTERNS)),
    SignalRule("desire", SIGNAL_WEIGHTS["desire"], _matches_any(DESIRE_PATTERNS)),
    SignalRule("rejection", SIGNAL_WEIGHTS["rejection"], _matches_any(REJECTION_PATTERNS)),
    SignalRule("fast_reply", SIGNAL_WEIGHTS["fast_reply"], _is_fast_reply),
    SignalRule("topic_persistence", SIGNAL_WEIGHTS["topic_persistence"], _is_topic_persistent),
)


def extract_engagement_signals(
    message: str,
    now: datetime | None = None,
    previous_message_at: str | datetime | None = None,
    previous_user_message: str | None = None,
    classifier_signal: str | ClassifierSignal | None = None,
) -> EngagementSignals:
    """
    Score a single user message.

    Args:
        message: Current message text
        now: Time the message arrived (defaults to current UTC time)
        previous_message_at: Arrival time of the user's previous message
        previous_user_message: Text of the user's previous message
        classifier_signal: Mood tag from the external classifier; unknown tags weigh zero

    Returns:
        EngagementSignals with per-family breakdown and summed delta
    """
    signal_input = SignalInput(
        message=message.strip(),
        now=ensure_aware(now) if now else utc_now(),
        previous_message_at=parse_timestamp(previous_message_at),
        previous_user_message=previous_user_message,
        classifier_signal=ClassifierSignal.parse(classifier_signal),
    )

    breakdown = SignalBreakdown()
    matched: list[str] = []
    for rule in SIGNAL_RULES:
        if rule.predicate(signal_input):
            setattr(breakdown, rule.name, rule.weight)
            matched.append(rule.name)

    classifier_weight = CLASSIFIER_SIGNAL_WEIGHTS[signal_input.classifier_signal]
    breakdown.classifier_signal = classifier_weight
    if classifier_weight != 0:
        matched.append(f"classifier_{signal_input.classifier_signal.value}")

    return EngagementSignals(
        score_delta=breakdown.total(),
        matched_signals=matched,
        topic_key=topic_key_from_tokens(tokenize_for_topic(signal_input.message)),
        breakdown=breakdown,
    )
