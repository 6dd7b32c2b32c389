"""
Read-through cache for pulse records.

The cache is an optimization only. The service writes to it after a
successful upsert and never before, so it cannot hold unpersisted state.
"""

import json
from typing import Protocol

from outreach.features.pulse.domain import PulseRecord
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PulseCache(Protocol):
    async def get(self, user_id: str) -> PulseRecord | None: ...

    async def set(self, record: PulseRecord) -> None: ...

    async def delete(self, user_id: str) -> None: ...


class InMemoryPulseCache:
    def __init__(self):
        self._records: dict[str, PulseRecord] = {}

    async def get(self, user_id: str) -> PulseRecord | None:
        return self._records.get(user_id)

    async def set(self, record: PulseRecord) -> None:
        self._records[record.user_id] = record

    async def delete(self, user_id: str) -> None:
        self._records.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._records)


class RedisPulseCache:
    """
    Shared cache across workers.

    `client` is anything exposing get / set_with_ttl / delete with the
    FastRedisClient signatures.
    """

    KEY_PREFIX = "pulse:record:"

    def __init__(self, client, ttl_seconds: int = 3600):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def get(self, user_id: str) -> PulseRecord | None:
        raw = await self.client.get(self._key(user_id))
        if not raw:
            return None
        try:
            return PulseRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cached pulse record", user_id=user_id, error=str(e))
            await self.client.delete(self._key(user_id))
            return None

    async def set(self, record: PulseRecord) -> None:
        stored = await self.client.set_with_ttl(
            self._key(record.user_id), json.dumps(record.to_dict()), self.ttl_seconds
        )
        if not stored:
            # drop the old entry so reads fall through to the store
            await self.client.delete(self._key(record.user_id))

    async def delete(self, user_id: str) -> None:
        await self.client.delete(self._key(user_id))
