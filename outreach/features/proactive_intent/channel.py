"""
Channel sender contract and callback-token helpers.

Delivery itself belongs to the messaging adapters; the engine only needs
something that can put text plus tappable choices in front of a chat.
"""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from outreach.features.proactive_intent.domain import FunnelChoice, FunnelDefinition, FunnelStep
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CALLBACK_PREFIX = "funnel"
OUTBOX_KEY_PREFIX = "outreach:outbox:"
_CALLBACK_PATTERN = re.compile(r"^funnel:([^:]+):([^:]+)$")


class ChannelSender(Protocol):
    async def send(
        self, chat_id: str, text: str, choices: Sequence[FunnelChoice] | None = None
    ) -> bool:
        """Deliver text with optional (label, action token) choices. True when delivered."""


@dataclass(frozen=True, slots=True)
class CallbackToken:
    funnel_key: str
    action: str


def build_callback_token(funnel_key: str, action: str) -> str:
    return f"{CALLBACK_PREFIX}:{funnel_key}:{action}"


def parse_callback_token(data: str) -> CallbackToken | None:
    match = _CALLBACK_PATTERN.match(data.strip())
    if not match:
        return None
    return CallbackToken(funnel_key=match.group(1), action=match.group(2).lower())


def format_step_text(text: str, choices: Sequence[FunnelChoice] | None = None) -> str:
    if not choices:
        return text
    options = "\n".join(f"• {choice.label}" for choice in choices)
    return f"{text}\n\n{options}"


def step_choices_with_tokens(funnel: FunnelDefinition, step: FunnelStep) -> list[FunnelChoice]:
    return [
        FunnelChoice(label=choice.label, action=build_callback_token(funnel.key, choice.action))
        for choice in step.choices
    ]


class RedisOutboxSender:
    """
    Queues outbound messages on a redis list for the channel adapter.

    Delivered means accepted by the outbox; a missing or failing redis
    reports undelivered.
    """

    def __init__(self, client, platform: str):
        self.client = client
        self.key = f"{OUTBOX_KEY_PREFIX}{platform}"

    async def send(
        self, chat_id: str, text: str, choices: Sequence[FunnelChoice] | None = None
    ) -> bool:
        message = {
            "chat_id": chat_id,
            "text": text,
            "choices": [{"label": c.label, "action": c.action} for c in choices or ()],
        }
        queued = await self.client.push(self.key, json.dumps(message))
        if not queued:
            logger.warning("Outbound message not queued", chat_id=chat_id, outbox=self.key)
        return queued
