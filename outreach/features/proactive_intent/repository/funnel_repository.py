"""
Persistence for funnel instances (proactive_funnels) and their lifecycle
events (proactive_funnel_events).

Every status write is conditional on status = 'ACTIVE', so a terminal row
is never moved again no matter which path (reply, timer, sweep) gets there
second.
"""

import json
from datetime import datetime
from typing import Any, Protocol

from psycopg import errors as pg_errors

from outreach.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from outreach.features.proactive_intent.domain import (
    FunnelEvent,
    FunnelEventType,
    FunnelInstance,
    FunnelStatus,
    RecentFunnel,
)
from outreach.infrastructure.observability.logging import get_logger
from outreach.utils.clock import parse_timestamp

logger = get_logger(__name__)


class FunnelRepositoryError(DatabaseError):
    """More specific exception for funnel persistence failures."""


class ActiveFunnelExistsError(FunnelRepositoryError):
    """Insert lost the race against another ACTIVE instance for the same user."""


class FunnelStore(Protocol):
    async def get_active(self, platform_user_id: str) -> FunnelInstance | None: ...

    async def insert_active(
        self,
        platform_user_id: str,
        internal_user_id: str,
        chat_id: str,
        funnel_key: str,
        context: dict[str, Any],
        now: datetime,
    ) -> FunnelInstance: ...

    async def update_state(
        self, funnel_id: str, status: FunnelStatus, step_index: int, now: datetime
    ) -> FunnelInstance | None: ...

    async def expire_if_idle(
        self, funnel_id: str, cutoff: datetime, now: datetime
    ) -> FunnelInstance | None: ...

    async def list_idle_active(self, cutoff: datetime) -> list[str]: ...


class FunnelEventStore(Protocol):
    async def insert(self, event: FunnelEvent) -> None: ...

    async def recent_started(self, platform_user_id: str, since: datetime) -> list[RecentFunnel]: ...


class FunnelRepository:
    SELECT_COLUMNS = """
        id, platform_user_id, internal_user_id, chat_id, funnel_key, status,
        current_step_index, context, last_event_at, created_at, updated_at
    """

    @staticmethod
    def _row_to_instance(row: dict[str, Any] | None) -> FunnelInstance | None:
        if not row:
            return None

        context = row.get("context") or {}
        if isinstance(context, str):
            context = json.loads(context)

        return FunnelInstance(
            id=str(row["id"]),
            platform_user_id=str(row["platform_user_id"]),
            internal_user_id=str(row["internal_user_id"]),
            chat_id=str(row["chat_id"]),
            funnel_key=row["funnel_key"],
            status=FunnelStatus(row["status"]),
            current_step_index=int(row["current_step_index"]),
            context=context,
            last_event_at=parse_timestamp(row["last_event_at"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    async def get_active(self, platform_user_id: str) -> FunnelInstance | None:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM proactive_funnels
            WHERE platform_user_id = %s AND status = 'ACTIVE'
            ORDER BY updated_at DESC
            LIMIT 1
        """
        return self._row_to_instance(await fetch_one(query, (platform_user_id,)))

    async def insert_active(
        self,
        platform_user_id: str,
        internal_user_id: str,
        chat_id: str,
        funnel_key: str,
        context: dict[str, Any],
        now: datetime,
    ) -> FunnelInstance:
        query = f"""
            INSERT INTO proactive_funnels (
                platform_user_id, internal_user_id, chat_id, funnel_key, status,
                current_step_index, context, last_event_at, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, 'ACTIVE', 0, %s::jsonb, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        try:
            row = await fetch_one(
                query,
                (platform_user_id, internal_user_id, chat_id, funnel_key, json.dumps(context), now, now, now),
            )
        except DatabaseError as e:
            # one-ACTIVE-per-user partial unique index
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise ActiveFunnelExistsError(
                    "Active funnel already exists", operation="insert_funnel", recoverable=False
                ) from e
            raise FunnelRepositoryError(str(e), operation="insert_funnel") from e

        if not row:
            raise FunnelRepositoryError("Failed to create funnel instance", operation="insert_funnel")
        return self._row_to_instance(row)

    async def update_state(
        self, funnel_id: str, status: FunnelStatus, step_index: int, now: datetime
    ) -> FunnelInstance | None:
        """Move an ACTIVE instance. Returns None if it was already terminal."""
        query = f"""
            UPDATE proactive_funnels
            SET status = %s,
                current_step_index = %s,
                updated_at = %s,
                last_event_at = %s
            WHERE id = %s AND status = 'ACTIVE'
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(query, (status.value, step_index, now, now, funnel_id))
        return self._row_to_instance(row)

    async def expire_if_idle(
        self, funnel_id: str, cutoff: datetime, now: datetime
    ) -> FunnelInstance | None:
        query = f"""
            UPDATE proactive_funnels
            SET status = 'EXPIRED',
                updated_at = %s,
                last_event_at = %s
            WHERE id = %s
              AND status = 'ACTIVE'
              AND last_event_at <= %s
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(query, (now, now, funnel_id, cutoff))
        return self._row_to_instance(row)

    async def list_idle_active(self, cutoff: datetime) -> list[str]:
        query = """
            SELECT id
            FROM proactive_funnels
            WHERE status = 'ACTIVE' AND last_event_at <= %s
            ORDER BY last_event_at ASC
        """
        rows = await fetch_all(query, (cutoff,))
        return [str(row["id"]) for row in rows]


class FunnelEventRepository:
    async def insert(self, event: FunnelEvent) -> None:
        query = """
            INSERT INTO proactive_funnel_events (
                funnel_id, platform_user_id, event_type, step_index, payload
            )
            VALUES (%s, %s, %s, %s, %s::jsonb)
        """
        await execute_query(
            query,
            (
                event.funnel_id,
                event.platform_user_id,
                event.event_type.value,
                event.step_index,
                json.dumps(event.payload, default=str),
            ),
        )

    async def recent_started(self, platform_user_id: str, since: datetime) -> list[RecentFunnel]:
        query = """
            SELECT payload, created_at
            FROM proactive_funnel_events
            WHERE platform_user_id = %s
              AND event_type = %s
              AND created_at > %s
            ORDER BY created_at DESC
            LIMIT 20
        """
        rows = await fetch_all(
            query, (platform_user_id, FunnelEventType.FUNNEL_STARTED.value, since)
        )

        recent = []
        for row in rows:
            payload = row.get("payload") or {}
            if isinstance(payload, str):
                payload = json.loads(payload)
            key = payload.get("funnel_key") or ""
            started_at = parse_timestamp(row.get("created_at"))
            if key and started_at:
                recent.append(RecentFunnel(key=key, started_at=started_at))
        return recent
