"""
Deterministic funnel generation from a topic intent.

All text is template based; the only dynamic part is the topic text. The
same topic always yields an equal definition, which lets the orchestrator
rebuild a running funnel from its stored key instead of persisting it.
"""

from outreach.features.proactive_intent.domain import (
    FUNNEL_ELIGIBLE_PHASES,
    FunnelChoice,
    FunnelDefinition,
    FunnelStep,
    TopicIntent,
    TopicPhase,
)
from outreach.features.proactive_intent.tool_map import normalize_category, resolve_tool_from_topic
from outreach.features.pulse.domain import EngagementState

FUNNEL_KEY_PREFIX = "topic_"

# category -> phase -> hook text; {topic} is substituted
HOOK_TEMPLATES: dict[str, dict[TopicPhase, str]] = {
    "food": {
        TopicPhase.PROBING: "btw you mentioned {topic}, have you actually gone? I've been hearing things 👀",
        TopicPhase.SHIFTING: "yo that {topic} plan, want me to check what's good? I've got the intel",
    },
    "travel": {
        TopicPhase.PROBING: 'that {topic} idea still floating? or is it one of those "someday" things 😏',
        TopicPhase.SHIFTING: "alright {topic} sounds real, want me to check flights/stays? say the word",
    },
    "nightlife": {
        TopicPhase.PROBING: "so {topic} huh, you more of a chill pub or full send club type?",
        TopicPhase.SHIFTING: "{topic} this weekend? I can scout what's popping if you're serious",
    },
    "activity": {
        TopicPhase.PROBING: "{topic} has been on your mind huh? what's the vibe you're going for?",
        TopicPhase.SHIFTING: "ready to make {topic} happen? I can find options rn",
    },
    "other": {
        TopicPhase.PROBING: "you mentioned {topic} earlier, still thinking about it?",
        TopicPhase.SHIFTING: "want me to help figure out {topic}? I can look into it",
    },
}

PROBING_CHOICES = (
    FunnelChoice(label="yeah tell me more", action="advance"),
    FunnelChoice(label="nah not rn", action="abandon"),
)

SHIFTING_CHOICES = (
    FunnelChoice(label="yeah check it", action="advance"),
    FunnelChoice(label="maybe later", action="abandon"),
)

HOOK_ABANDON_KEYWORDS = ("no", "nah", "not now", "later", "pass", "skip")
HOOK_INTENT_KEYWORDS = ("yes", "yeah", "sure", "tell me", "check it", "go ahead", "do it")

CATEGORY_HASHTAGS = {
    "food": "bangalorefood",
    "travel": "bangaloretravel",
    "nightlife": "bangalorenightlife",
    "activity": "bangaloreweekend",
    "other": "bangalore",
}

TOOL_ACTION_LABELS = {
    "compare_food_prices": "comparing Swiggy vs Zomato prices",
    "compare_grocery_prices": "checking grocery prices across apps",
    "search_flights": "searching flights",
    "search_hotels": "looking up stays",
    "compare_rides": "checking cab fares",
    "search_dineout": "scouting spots",
    "search_places": "finding places",
}

COOLDOWN_MINUTES = {
    TopicPhase.SHIFTING: 180,
    TopicPhase.PROBING: 360,
}


def funnel_key_for_topic(topic_id: str) -> str:
    return f"{FUNNEL_KEY_PREFIX}{topic_id}"


def topic_id_from_funnel_key(funnel_key: str) -> str | None:
    if not funnel_key.startswith(FUNNEL_KEY_PREFIX):
        return None
    return funnel_key[len(FUNNEL_KEY_PREFIX):] or None


def _topic_keywords(topic_text: str) -> tuple[str, ...]:
    return tuple(word for word in topic_text.lower().split() if len(word) > 3)


def _hook_step(topic_text: str, category: str, phase: TopicPhase) -> FunnelStep:
    templates = HOOK_TEMPLATES.get(category, HOOK_TEMPLATES["other"])
    hook_text = templates[phase].replace("{topic}", topic_text)

    return FunnelStep(
        id="hook",
        text=hook_text,
        choices=SHIFTING_CHOICES if phase is TopicPhase.SHIFTING else PROBING_CHOICES,
        next_on_choice={"advance": 1, "abandon": -1},
        intent_keywords=HOOK_INTENT_KEYWORDS,
        next_on_intent=1,
        abandon_keywords=HOOK_ABANDON_KEYWORDS,
    )


def generate_funnel_from_topic(topic: TopicIntent) -> FunnelDefinition | None:
    """
    Build a two-step funnel (hook, then handoff or close) for a warm topic.

    Returns None unless the topic is in the probing or shifting phase.
    """
    phase = topic.phase
    if phase not in FUNNEL_ELIGIBLE_PHASES:
        return None

    topic_text = topic.topic.strip()
    category = normalize_category(topic.category, topic_text)
    tool = resolve_tool_from_topic(topic)

    if tool:
        action_label = TOOL_ACTION_LABELS.get(tool.tool_name, f"looking into {topic_text}")
        closing = FunnelStep(
            id="handoff",
            text=f"on it, {action_label} for you...",
            pass_through_on_any_reply=True,
        )
    else:
        closing = FunnelStep(
            id="handoff",
            text=f"got it, I'll keep {topic_text} on my radar and ping you if I find something good 🎯",
        )

    keywords = _topic_keywords(topic_text)
    return FunnelDefinition(
        key=funnel_key_for_topic(topic.id),
        category=category,
        hashtag=CATEGORY_HASHTAGS.get(category, CATEGORY_HASHTAGS["other"]),
        min_pulse_state=EngagementState.ENGAGED,
        cooldown_minutes=COOLDOWN_MINUTES[phase],
        preference_keywords=keywords,
        goal_keywords=keywords,
        steps=(_hook_step(topic_text, category, phase), closing),
        tool_name=tool.tool_name if tool else None,
    )
