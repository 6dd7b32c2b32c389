"""
Persistence for pulse engagement records (pulse_engagement_scores).
"""

import json
from typing import Any, Protocol

from outreach.db.helpers import DatabaseError, execute_query, fetch_one
from outreach.features.pulse.constants import MAX_SIGNAL_HISTORY
from outreach.features.pulse.domain import EngagementState, PulseRecord
from outreach.features.pulse.state_machine import clamp_score
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PulseRepositoryError(DatabaseError):
    """More specific exception for pulse persistence failures."""


class PulseStore(Protocol):
    async def load(self, user_id: str) -> PulseRecord | None: ...

    async def upsert(self, record: PulseRecord) -> None: ...


class PulseRepository:
    """Postgres-backed PulseStore."""

    SELECT_COLUMNS = """
        user_id, engagement_score, current_state, last_message_at, updated_at,
        message_count, last_topic, signal_history
    """

    @staticmethod
    def _row_to_record(row: dict[str, Any] | None) -> PulseRecord | None:
        if not row:
            return None

        history = row.get("signal_history") or []
        if isinstance(history, str):
            history = json.loads(history)

        record = PulseRecord.from_dict(
            {
                "user_id": str(row["user_id"]),
                "score": clamp_score(float(row.get("engagement_score") or 0)),
                "state": row.get("current_state") or EngagementState.PASSIVE.value,
                "last_message_at": row.get("last_message_at"),
                "updated_at": row.get("updated_at"),
                "message_count": row.get("message_count") or 0,
                "last_topic": row.get("last_topic"),
                "signal_history": history if isinstance(history, list) else [],
            }
        )
        record.signal_history = record.signal_history[-MAX_SIGNAL_HISTORY:]
        return record

    async def load(self, user_id: str) -> PulseRecord | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM pulse_engagement_scores WHERE user_id = %s"
        row = await fetch_one(query, (user_id,))
        return self._row_to_record(row)

    async def upsert(self, record: PulseRecord) -> None:
        query = """
            INSERT INTO pulse_engagement_scores (
                user_id, engagement_score, current_state, last_message_at, updated_at,
                message_count, last_topic, signal_history
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT (user_id) DO UPDATE SET
                engagement_score = EXCLUDED.engagement_score,
                current_state = EXCLUDED.current_state,
                last_message_at = EXCLUDED.last_message_at,
                updated_at = EXCLUDED.updated_at,
                message_count = EXCLUDED.message_count,
                last_topic = EXCLUDED.last_topic,
                signal_history = EXCLUDED.signal_history
        """
        history = json.dumps([entry.to_dict() for entry in record.signal_history])

        try:
            await execute_query(
                query,
                (
                    record.user_id,
                    record.score,
                    record.state.value,
                    record.last_message_at,
                    record.updated_at,
                    record.message_count,
                    record.last_topic,
                    history,
                ),
            )
        except DatabaseError as e:
            raise PulseRepositoryError(str(e), operation="upsert_pulse", recoverable=e.recoverable) from e
