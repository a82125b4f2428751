"""Auxiliary storage operations (audit log, notifications, role directory)."""

from datetime import datetime, timezone

from redis.asyncio import Redis

from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleExecution
from crmrules.models.notification import Notification
from crmrules.storage.redis_client import RedisKeys, get_redis


class ExecutionStore:
    """Append-only RuleExecution audit log.

    Records are pushed to two lists, one per rule and one per entity, so both
    histories replay in write order.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def append(self, record: RuleExecution) -> None:
        """Append an execution record.

        Args:
            record: Record to persist
        """
        data = record.model_dump_json()
        await self.redis.rpush(RedisKeys.executions_by_rule(record.rule_id), data)
        entity_key = RedisKeys.executions_by_entity(record.entity_type.value, record.entity_id)
        await self.redis.rpush(entity_key, data)

    async def list_by_rule(self, rule_id: str) -> list[RuleExecution]:
        """List a rule's executions in write order."""
        entries = await self.redis.lrange(RedisKeys.executions_by_rule(rule_id), 0, -1)
        return [RuleExecution.model_validate_json(entry) for entry in entries]

    async def list_by_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
    ) -> list[RuleExecution]:
        """List an entity's executions in write order."""
        key = RedisKeys.executions_by_entity(entity_type.value, entity_id)
        entries = await self.redis.lrange(key, 0, -1)
        return [RuleExecution.model_validate_json(entry) for entry in entries]

    async def last_executed_at(self, entity_type: EntityType, entity_id: str) -> datetime | None:
        """Timestamp of the latest execution recorded for an entity."""
        entry = await self.redis.lindex(
            RedisKeys.executions_by_entity(entity_type.value, entity_id), -1
        )
        if not entry:
            return None
        return RuleExecution.model_validate_json(entry).executed_at


class NotificationStore:
    """Notification persistence."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create(self, notification: Notification) -> Notification:
        """Persist a notification and index it for its recipient.

        Args:
            notification: Notification to store

        Returns:
            Stored notification
        """
        key = RedisKeys.notification_detail(notification.id)
        await self.redis.set(key, notification.model_dump_json())
        if notification.expires_at is not None:
            await self.redis.expireat(key, notification.expires_at)

        await self.redis.zadd(
            RedisKeys.notifications_by_user(notification.user_id),
            {notification.id: notification.created_at.timestamp()},
        )
        return notification

    async def get(self, notification_id: str) -> Notification | None:
        """Get a notification by ID."""
        data = await self.redis.get(RedisKeys.notification_detail(notification_id))
        if not data:
            return None
        return Notification.model_validate_json(data)

    async def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
    ) -> list[Notification]:
        """List a user's live notifications, newest first.

        Args:
            user_id: Recipient
            unread_only: Skip notifications already read

        Returns:
            Notifications that have not expired
        """
        index_key = RedisKeys.notifications_by_user(user_id)
        notification_ids = await self.redis.zrevrange(index_key, 0, -1)

        now = datetime.now(timezone.utc)
        notifications = []
        for notification_id in notification_ids:
            notification = await self.get(notification_id)
            if notification is None or notification.is_expired(now):
                await self.redis.zrem(index_key, notification_id)
                continue
            if unread_only and notification.is_read:
                continue
            notifications.append(notification)
        return notifications

    async def mark_read(self, notification_id: str) -> Notification | None:
        """Mark a notification as read.

        Returns:
            Updated notification, None if not found
        """
        notification = await self.get(notification_id)
        if not notification:
            return None

        notification.is_read = True
        await self.redis.set(
            RedisKeys.notification_detail(notification_id),
            notification.model_dump_json(),
            keepttl=True,
        )
        return notification


class UserDirectory:
    """Role membership used to resolve role-based notification recipients."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def add_to_role(self, role: str, user_id: str) -> None:
        await self.redis.sadd(RedisKeys.role_members(role), user_id)

    async def remove_from_role(self, role: str, user_id: str) -> None:
        await self.redis.srem(RedisKeys.role_members(role), user_id)

    async def users_with_role(self, role: str) -> list[str]:
        """Get users holding a role, sorted for deterministic fan-out."""
        members = await self.redis.smembers(RedisKeys.role_members(role))
        return sorted(members)
