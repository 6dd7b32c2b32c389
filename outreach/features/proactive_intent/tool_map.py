"""
Topic -> downstream tool resolution and category inference.

Pure keyword matching: specific keyword overrides first, then a category
fallback. No model calls.
"""

import re
from dataclasses import dataclass

from outreach.features.proactive_intent.domain import TopicIntent

TOPIC_CATEGORIES = ("food", "travel", "nightlife", "activity", "other")

# Most specific first
KEYWORD_TOOL_MAP: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b(grocery|grocer|blinkit|instamart|zepto|bigbasket)\b", re.I), "compare_grocery_prices"),
    (re.compile(r"\b(swiggy|zomato|delivery|order\s*food)\b", re.I), "compare_food_prices"),
    (re.compile(r"\b(flight|fly|airport|airline)\b", re.I), "search_flights"),
    (re.compile(r"\b(hotel|stay|resort|accommodation|hostel)\b", re.I), "search_hotels"),
    (re.compile(r"\b(ride|cab|uber|ola|rapido|auto)\b", re.I), "compare_rides"),
    (re.compile(r"\b(restaurant|cafe|dine|dining|eat\s*out|brunch|dinner|lunch|rooftop)\b", re.I), "search_dineout"),
    (re.compile(r"\b(bar|pub|brewery|cocktail|nightclub|lounge)\b", re.I), "search_dineout"),
)

CATEGORY_TOOL_MAP = {
    "food": "search_dineout",
    "travel": "search_flights",
    "nightlife": "search_dineout",
    "activity": "search_places",
}

CATEGORY_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (
        re.compile(
            r"\b(food|eat|restaurant|cafe|biryani|pizza|burger|brunch|dinner|lunch|swiggy|zomato|dine"
            r"|cuisine|dish|meal|cook|recipe|bakery|dessert|ice\s*cream|coffee|tea|chai)\b",
            re.I,
        ),
        "food",
    ),
    (
        re.compile(
            r"\b(travel|trip|flight|hotel|stay|resort|airport|destination|vacation|holiday|explore"
            r"|trek|hike|beach|mountain|goa|manali|ooty|coorg)\b",
            re.I,
        ),
        "travel",
    ),
    (
        re.compile(
            r"\b(bar|pub|brewery|cocktail|nightclub|lounge|drinks?|beer|wine|whiskey|party|clubbing"
            r"|nightlife)\b",
            re.I,
        ),
        "nightlife",
    ),
    (
        re.compile(
            r"\b(activity|movie|concert|event|show|game|sport|gym|yoga|fitness|park|museum|adventure"
            r"|cycling|running|swimming)\b",
            re.I,
        ),
        "activity",
    ),
)


@dataclass(frozen=True, slots=True)
class ToolMapping:
    tool_name: str
    query: str


def infer_category(topic_text: str) -> str:
    for pattern, category in CATEGORY_PATTERNS:
        if pattern.search(topic_text):
            return category
    return "other"


def normalize_category(category: str | None, topic_text: str) -> str:
    """Known category as-is, otherwise inferred from the topic text."""
    value = (category or "").strip().lower()
    if value in TOPIC_CATEGORIES:
        return value
    return infer_category(topic_text)


def resolve_tool_from_topic(topic: TopicIntent) -> ToolMapping | None:
    for pattern, tool_name in KEYWORD_TOOL_MAP:
        if pattern.search(topic.topic):
            return ToolMapping(tool_name=tool_name, query=topic.topic)

    category = normalize_category(topic.category, topic.topic)
    fallback = CATEGORY_TOOL_MAP.get(category)
    if fallback:
        return ToolMapping(tool_name=fallback, query=topic.topic)

    return None
