"""Business rule storage operations."""

import json
from datetime import datetime, timezone

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from crmrules.core.logging import get_logger
from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleExecution, RuleStats
from crmrules.models.rule import SCHEDULED_EVENT, BusinessRule, RuleStatus
from crmrules.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class RuleStoreError(RuntimeError):
    """Raised when rules cannot be read from the backing store."""


def _index_keys(rule: BusinessRule) -> set[str]:
    return {RedisKeys.rule_index(rule.entity_type.value, event) for event in rule.index_events}


class RuleStore:
    """Rule storage operations using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create(self, rule: BusinessRule) -> BusinessRule:
        """Create a new rule.

        Args:
            rule: Rule to create

        Returns:
            Created rule
        """
        await self._write(rule)
        await self.redis.sadd(RedisKeys.RULE_ALL, rule.id)
        for key in _index_keys(rule):
            await self.redis.sadd(key, rule.id)

        await self._publish_update("create", rule.id)
        return rule

    async def get(self, rule_id: str) -> BusinessRule | None:
        """Get a rule by ID.

        Args:
            rule_id: Rule ID

        Returns:
            Rule if found, None otherwise
        """
        data = await self.redis.hget(RedisKeys.rule_detail(rule_id), "config")
        if not data:
            return None
        return BusinessRule.model_validate_json(data)

    async def update(self, rule_id: str, rule: BusinessRule) -> BusinessRule | None:
        """Update an existing rule.

        Args:
            rule_id: Rule ID to update
            rule: Updated rule data

        Returns:
            Updated rule if found, None otherwise
        """
        existing = await self.get(rule_id)
        if not existing:
            return None

        rule.metadata.updated_at = datetime.now(timezone.utc)
        rule.metadata.version = existing.metadata.version + 1

        old_keys = _index_keys(existing)
        new_keys = _index_keys(rule)
        for removed in old_keys - new_keys:
            await self.redis.srem(removed, rule_id)
        for added in new_keys - old_keys:
            await self.redis.sadd(added, rule_id)

        await self._write(rule)
        await self._publish_update("update", rule_id)
        return rule

    async def delete(self, rule_id: str) -> bool:
        """Delete a rule definition.

        Execution history is kept.

        Args:
            rule_id: Rule ID to delete

        Returns:
            True if deleted, False if not found
        """
        existing = await self.get(rule_id)
        if not existing:
            return False

        for key in _index_keys(existing):
            await self.redis.srem(key, rule_id)
        await self.redis.srem(RedisKeys.RULE_ALL, rule_id)
        await self.redis.delete(RedisKeys.rule_detail(rule_id))

        await self._publish_update("delete", rule_id)
        return True

    async def set_status(self, rule_id: str, status: RuleStatus) -> BusinessRule | None:
        """Activate or deactivate a rule.

        Args:
            rule_id: Rule ID
            status: New status

        Returns:
            Updated rule, None if not found
        """
        rule = await self.get(rule_id)
        if not rule:
            return None

        rule.status = status
        rule.metadata.updated_at = datetime.now(timezone.utc)
        await self._write(rule)

        await self._publish_update("status", rule_id)
        return rule

    async def list_all(self) -> list[BusinessRule]:
        """List all rules ordered by priority then id."""
        rule_ids = await self.redis.smembers(RedisKeys.RULE_ALL)
        return _ordered(await self._load(rule_ids))

    async def list_by_event(
        self,
        entity_type: EntityType,
        trigger_event: str,
        include_inactive: bool = False,
    ) -> list[BusinessRule]:
        """List rules indexed under an entity type and event.

        Args:
            entity_type: Entity type
            trigger_event: Event name
            include_inactive: Whether INACTIVE rules are returned too

        Returns:
            Rules ordered by priority ascending, ties broken by id
        """
        rule_ids = await self.redis.smembers(RedisKeys.rule_index(entity_type.value, trigger_event))
        rules = [
            rule
            for rule in await self._load(rule_ids)
            if rule.matches_event(entity_type, trigger_event)
            and (include_inactive or rule.is_active)
        ]
        return _ordered(rules)

    async def get_applicable_rules(
        self,
        entity_type: EntityType,
        trigger_event: str,
    ) -> list[BusinessRule]:
        """Get ACTIVE rules for an entity type and trigger event.

        Raises:
            RuleStoreError: If the store cannot be read
        """
        try:
            return await self.list_by_event(entity_type, trigger_event)
        except RedisError as e:
            raise RuleStoreError(f"Rule store unavailable: {e}") from e

    async def list_scheduled(self, entity_type: EntityType) -> list[BusinessRule]:
        """Get ACTIVE schedule-triggered rules for an entity type."""
        return await self.get_applicable_rules(entity_type, SCHEDULED_EVENT)

    async def record_execution(self, record: RuleExecution) -> None:
        """Fold one execution into the rule's running statistics.

        ``last_error`` keeps the latest failure until another one replaces
        it. Stats of deleted rules are not recreated.

        Args:
            record: Execution just appended to the audit log
        """
        key = RedisKeys.rule_detail(record.rule_id)
        if not await self.redis.hexists(key, "config"):
            return

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "execution_count", 1)
            pipe.hset(key, "last_execution", record.executed_at.isoformat())
            if record.errors:
                pipe.hset(key, "last_error", "; ".join(record.errors))
            await pipe.execute()

    async def get_stats(self, rule_id: str) -> RuleStats | None:
        """Get a rule's execution statistics, None if the rule does not exist."""
        data = await self.redis.hgetall(RedisKeys.rule_detail(rule_id))
        if not data or "config" not in data:
            return None
        return RuleStats(
            rule_id=rule_id,
            execution_count=int(data.get("execution_count", 0)),
            last_execution=data.get("last_execution"),
            last_error=data.get("last_error"),
        )

    async def get_version(self) -> int:
        """Get global rules version number."""
        version = await self.redis.get(RedisKeys.RULE_VERSION)
        return int(version) if version else 0

    async def _load(self, rule_ids: set[str]) -> list[BusinessRule]:
        rules = []
        for rule_id in rule_ids:
            try:
                rule = await self.get(rule_id)
            except ValidationError as e:
                logger.warning("Skipping unreadable rule", rule_id=rule_id, error=str(e))
                continue
            if rule:
                rules.append(rule)
        return rules

    async def _write(self, rule: BusinessRule) -> None:
        await self.redis.hset(
            RedisKeys.rule_detail(rule.id),
            mapping={
                "config": rule.model_dump_json(),
                "status": rule.status.value,
                "version": str(rule.metadata.version),
                "updated_at": str(int(rule.metadata.updated_at.timestamp() * 1000)),
            },
        )

    async def _publish_update(self, action: str, rule_id: str) -> None:
        """Bump the rules version and publish a change message.

        Args:
            action: Action type (create/update/status/delete)
            rule_id: Affected rule ID
        """
        await self.redis.incr(RedisKeys.RULE_VERSION)

        message = json.dumps({
            "action": action,
            "rule_id": rule_id,
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
        })
        await self.redis.publish(RedisKeys.RULE_UPDATE_CHANNEL, message)


def _ordered(rules: list[BusinessRule]) -> list[BusinessRule]:
    return sorted(rules, key=lambda r: (r.priority, r.id))
