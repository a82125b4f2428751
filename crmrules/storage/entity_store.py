"""Entity snapshot storage and conversion links."""

import json
from typing import Any

from redis.asyncio import Redis

from crmrules.models.entity import EntityType
from crmrules.models.workflow import ConversionResult
from crmrules.storage.redis_client import RedisKeys, get_redis

# Fields written by the engine itself; stored values win over caller snapshots.
ENGINE_FIELDS = ("current_step_id", "converted_to_entity_type", "converted_to_entity_id")


class EntityStore:
    """Field snapshots of CRM entities as the engine sees them."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(
        self,
        entity_type: EntityType,
        entity_id: str,
        snapshot: dict[str, Any],
    ) -> dict[str, Any]:
        """Store a full snapshot, replacing any previous one."""
        snapshot = {**snapshot, "id": entity_id}
        await self.redis.set(
            RedisKeys.entity(entity_type.value, entity_id),
            json.dumps(snapshot, default=str),
        )
        await self.redis.sadd(RedisKeys.entity_all(entity_type.value), entity_id)
        return snapshot

    async def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        data = await self.redis.get(RedisKeys.entity(entity_type.value, entity_id))
        if not data:
            return None
        return json.loads(data)

    async def update_fields(
        self,
        entity_type: EntityType,
        entity_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Merge fields into a stored snapshot.

        Returns:
            Updated snapshot, None if the entity is unknown
        """
        snapshot = await self.get(entity_type, entity_id)
        if snapshot is None:
            return None
        snapshot.update(fields)
        return await self.save(entity_type, entity_id, snapshot)

    async def list_ids(self, entity_type: EntityType) -> list[str]:
        ids = await self.redis.smembers(RedisKeys.entity_all(entity_type.value))
        return sorted(ids)

    async def record_conversion(self, result: ConversionResult) -> None:
        """Append a conversion to the history of both entities involved."""
        data = result.model_dump_json()
        await self.redis.rpush(RedisKeys.conversions(result.source_entity_id), data)
        if result.target_entity_id:
            await self.redis.rpush(RedisKeys.conversions(result.target_entity_id), data)

    async def list_conversions(self, entity_id: str) -> list[ConversionResult]:
        entries = await self.redis.lrange(RedisKeys.conversions(entity_id), 0, -1)
        return [ConversionResult.model_validate_json(entry) for entry in entries]
