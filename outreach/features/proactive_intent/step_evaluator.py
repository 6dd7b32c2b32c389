"""
Pure decisions over a funnel step: what a free-text reply or a button tap
does to the running funnel.

Keyword matching is token-boundary based, so "no" matches "no thanks" but
not "I know a place".
"""

import re
from collections.abc import Iterable
from functools import lru_cache

from outreach.features.proactive_intent.domain import DecisionKind, FunnelStep, StepDecision

GLOBAL_ABANDON_PHRASES = ("no thanks", "not now", "later", "stop", "leave it", "skip", "nah")
DECLINE_CALLBACK_ACTIONS = frozenset({"later", "skip", "dismiss"})


@lru_cache(maxsize=256)
def _phrase_pattern(phrase: str) -> re.Pattern:
    words = [re.escape(word) for word in phrase.lower().split()]
    return re.compile(r"(?<![\w'])" + r"\s+".join(words) + r"(?![\w'])")


def contains_phrase(text: str, phrases: Iterable[str]) -> bool:
    normalized = text.strip().lower()
    return any(phrase.strip() and _phrase_pattern(phrase.strip()).search(normalized) for phrase in phrases)


def should_abandon_for_message(step: FunnelStep, message: str) -> bool:
    return contains_phrase(message, GLOBAL_ABANDON_PHRASES) or contains_phrase(
        message, step.abandon_keywords
    )


def evaluate_reply(step: FunnelStep, message: str) -> StepDecision:
    if not message.strip():
        return StepDecision(DecisionKind.STAY, "empty_reply")

    if should_abandon_for_message(step, message):
        return StepDecision(DecisionKind.ABANDON, "user_declined")

    if step.pass_through_on_any_reply:
        return StepDecision(DecisionKind.PASS_THROUGH, "handoff_to_main_pipeline")

    if step.next_on_intent is not None and contains_phrase(message, step.intent_keywords):
        return StepDecision(DecisionKind.ADVANCE, "intent_keyword", step.next_on_intent)

    if step.next_on_any_reply is not None:
        return StepDecision(DecisionKind.ADVANCE, "any_reply_advance", step.next_on_any_reply)

    return StepDecision(DecisionKind.STAY, "no_transition_rule")


def evaluate_callback(step: FunnelStep, action: str) -> StepDecision:
    normalized = action.strip().lower()

    if normalized in DECLINE_CALLBACK_ACTIONS:
        return StepDecision(DecisionKind.ABANDON, "callback_decline")

    next_index = step.next_on_choice.get(normalized)
    if next_index is not None:
        if next_index < 0:
            return StepDecision(DecisionKind.ABANDON, "callback_choice_abandon")
        return StepDecision(DecisionKind.ADVANCE, "callback_choice_advance", next_index)

    if step.pass_through_on_any_reply:
        return StepDecision(DecisionKind.PASS_THROUGH, "callback_handoff")

    if step.next_on_any_reply is not None:
        return StepDecision(DecisionKind.ADVANCE, "callback_any_reply_advance", step.next_on_any_reply)

    return StepDecision(DecisionKind.STAY, "callback_no_transition")
