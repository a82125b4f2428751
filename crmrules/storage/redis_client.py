"""Redis client management."""

import redis.asyncio as redis
from redis.asyncio import Redis

from crmrules.core.config import get_settings

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=20,
        )


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Get Redis client from pool.

    Returns:
        Redis client instance

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


class RedisKeys:
    """Redis key patterns.

    Each group stands in for one logical table: business_rules,
    rule_executions, business_rule_notifications, workflow_steps,
    wfm_step_mappings, wfm_outcome_rules, plus entity snapshots.
    """

    # business_rules
    RULE_DETAIL = "crm:rules:detail:{rule_id}"
    RULE_INDEX = "crm:rules:index:{entity_type}:{event}"
    RULE_ALL = "crm:rules:all"
    RULE_VERSION = "crm:rules:version"
    RULE_UPDATE_CHANNEL = "crm:rules:update"

    # rule_executions
    EXECUTION_BY_RULE = "crm:executions:rule:{rule_id}"
    EXECUTION_BY_ENTITY = "crm:executions:entity:{entity_type}:{entity_id}"

    # business_rule_notifications
    NOTIFICATION_DETAIL = "crm:notifications:detail:{notification_id}"
    NOTIFICATION_BY_USER = "crm:notifications:user:{user_id}"

    # workflow reference data
    WORKFLOW_STEP = "crm:wfm:steps:{step_id}"
    WORKFLOW_STEPS = "crm:wfm:workflow:{workflow_id}:steps"
    STEP_MAPPINGS = "crm:wfm:mappings:{workflow_id}:{outcome}"
    OUTCOME_RULES = "crm:wfm:outcome_rules"
    ENTITY_STATE = "crm:wfm:state:{entity_type}:{entity_id}"

    # entities
    ENTITY = "crm:entities:{entity_type}:{entity_id}"
    ENTITY_ALL = "crm:entities:{entity_type}:all"
    CONVERSIONS = "crm:conversions:{entity_id}"

    # users
    ROLE_MEMBERS = "crm:roles:{role}"

    @classmethod
    def rule_detail(cls, rule_id: str) -> str:
        return cls.RULE_DETAIL.format(rule_id=rule_id)

    @classmethod
    def rule_index(cls, entity_type: str, event: str) -> str:
        return cls.RULE_INDEX.format(entity_type=entity_type, event=event)

    @classmethod
    def executions_by_rule(cls, rule_id: str) -> str:
        return cls.EXECUTION_BY_RULE.format(rule_id=rule_id)

    @classmethod
    def executions_by_entity(cls, entity_type: str, entity_id: str) -> str:
        return cls.EXECUTION_BY_ENTITY.format(entity_type=entity_type, entity_id=entity_id)

    @classmethod
    def notification_detail(cls, notification_id: str) -> str:
        return cls.NOTIFICATION_DETAIL.format(notification_id=notification_id)

    @classmethod
    def notifications_by_user(cls, user_id: str) -> str:
        return cls.NOTIFICATION_BY_USER.format(user_id=user_id)

    @classmethod
    def workflow_step(cls, step_id: str) -> str:
        return cls.WORKFLOW_STEP.format(step_id=step_id)

    @classmethod
    def workflow_steps(cls, workflow_id: str) -> str:
        return cls.WORKFLOW_STEPS.format(workflow_id=workflow_id)

    @classmethod
    def step_mappings(cls, workflow_id: str, outcome: str) -> str:
        return cls.STEP_MAPPINGS.format(workflow_id=workflow_id, outcome=outcome)

    @classmethod
    def entity_state(cls, entity_type: str, entity_id: str) -> str:
        return cls.ENTITY_STATE.format(entity_type=entity_type, entity_id=entity_id)

    @classmethod
    def entity(cls, entity_type: str, entity_id: str) -> str:
        return cls.ENTITY.format(entity_type=entity_type, entity_id=entity_id)

    @classmethod
    def entity_all(cls, entity_type: str) -> str:
        return cls.ENTITY_ALL.format(entity_type=entity_type)

    @classmethod
    def conversions(cls, entity_id: str) -> str:
        return cls.CONVERSIONS.format(entity_id=entity_id)

    @classmethod
    def role_members(cls, role: str) -> str:
        return cls.ROLE_MEMBERS.format(role=role)
