"""
Read-only queries against stores owned by other parts of the assistant:
user identity, pulse state, sessions, preferences, goals and topic intents.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from outreach.config import settings
from outreach.db.helpers import fetch_all, fetch_one
from outreach.features.proactive_intent.domain import TopicIntent, TopicPhase
from outreach.features.pulse.domain import EngagementState
from outreach.infrastructure.observability.logging import get_logger
from outreach.utils.clock import parse_timestamp

logger = get_logger(__name__)


@dataclass(slots=True)
class SessionSnapshot:
    message_count: int
    last_active: datetime | None


class IntentContextStore(Protocol):
    async def resolve_internal_user_id(self, platform_user_id: str) -> str | None: ...

    async def get_pulse_state(self, internal_user_id: str) -> EngagementState | None: ...

    async def latest_session_snapshot(self, internal_user_id: str) -> SessionSnapshot | None: ...

    async def list_preferences(self, internal_user_id: str) -> list[str]: ...

    async def list_active_goals(self, internal_user_id: str) -> list[str]: ...

    async def list_warm_topics(
        self,
        internal_user_id: str,
        min_confidence: int,
        phases: Sequence[TopicPhase],
        idle_since: datetime,
        limit: int,
    ) -> list[TopicIntent]: ...

    async def get_topic(self, topic_id: str) -> TopicIntent | None: ...


def row_to_topic(row: dict[str, Any]) -> TopicIntent:
    return TopicIntent(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        topic=row["topic"],
        category=row.get("category"),
        confidence=int(row.get("confidence") or 0),
        phase=TopicPhase.parse(row.get("phase")),
        last_signal_at=parse_timestamp(row.get("last_signal_at")),
        session_id=str(row["session_id"]) if row.get("session_id") else None,
    )


class IntentContextRepository:
    TOPIC_COLUMNS = "id, user_id, session_id, topic, category, confidence, phase, last_signal_at"

    def __init__(self, platform: str | None = None):
        self.platform = platform or settings.CHANNEL_PLATFORM

    async def resolve_internal_user_id(self, platform_user_id: str) -> str | None:
        row = await fetch_one(
            """
            SELECT user_id
            FROM users
            WHERE channel = %s AND channel_user_id = %s
            LIMIT 1
            """,
            (self.platform, platform_user_id),
        )
        return str(row["user_id"]) if row else None

    async def get_pulse_state(self, internal_user_id: str) -> EngagementState | None:
        row = await fetch_one(
            "SELECT current_state FROM pulse_engagement_scores WHERE user_id = %s LIMIT 1",
            (internal_user_id,),
        )
        return EngagementState.parse(row["current_state"]) if row else None

    async def latest_session_snapshot(self, internal_user_id: str) -> SessionSnapshot | None:
        row = await fetch_one(
            """
            SELECT jsonb_array_length(messages) AS message_count, last_active
            FROM sessions
            WHERE user_id = %s
            ORDER BY last_active DESC
            LIMIT 1
            """,
            (internal_user_id,),
        )
        if not row:
            return None
        return SessionSnapshot(
            message_count=int(row.get("message_count") or 0),
            last_active=parse_timestamp(row.get("last_active")),
        )

    async def list_preferences(self, internal_user_id: str) -> list[str]:
        rows = await fetch_all(
            """
            SELECT category, value
            FROM user_preferences
            WHERE user_id = %s
            ORDER BY confidence DESC, mention_count DESC
            LIMIT 20
            """,
            (internal_user_id,),
        )
        return [f"{row['category']}:{row['value']}" for row in rows]

    async def list_active_goals(self, internal_user_id: str) -> list[str]:
        rows = await fetch_all(
            """
            SELECT goal
            FROM conversation_goals
            WHERE user_id = %s AND status = 'active'
            ORDER BY updated_at DESC
            LIMIT 5
            """,
            (internal_user_id,),
        )
        return [row["goal"] for row in rows]

    async def list_warm_topics(
        self,
        internal_user_id: str,
        min_confidence: int,
        phases: Sequence[TopicPhase],
        idle_since: datetime,
        limit: int,
    ) -> list[TopicIntent]:
        rows = await fetch_all(
            f"""
            SELECT {self.TOPIC_COLUMNS}
            FROM topic_intents
            WHERE user_id = %s
              AND confidence >= %s
              AND phase = ANY(%s)
              AND last_signal_at <= %s
            ORDER BY confidence DESC
            LIMIT %s
            """,
            (
                internal_user_id,
                min_confidence,
                [phase.value for phase in phases],
                idle_since,
                limit,
            ),
        )
        return [row_to_topic(row) for row in rows]

    async def get_topic(self, topic_id: str) -> TopicIntent | None:
        row = await fetch_one(
            f"SELECT {self.TOPIC_COLUMNS} FROM topic_intents WHERE id = %s",
            (topic_id,),
        )
        return row_to_topic(row) if row else None
