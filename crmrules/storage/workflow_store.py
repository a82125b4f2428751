"""Workflow reference data and entity workflow state storage."""

from datetime import datetime, timezone

from redis.asyncio import Redis
from redis.exceptions import WatchError

from crmrules.models.entity import EntityType
from crmrules.models.workflow import (
    EntityWorkflowState,
    OutcomeRule,
    OutcomeType,
    StepMapping,
    WorkflowStep,
)
from crmrules.storage.redis_client import RedisKeys, get_redis


class WorkflowStateConflict(RuntimeError):
    """Raised when an entity's workflow state is not what the caller expected."""


class WorkflowStore:
    """Workflow steps, outcome step mappings, outcome rules and entity state."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def save_workflow(self, workflow_id: str, steps: list[WorkflowStep]) -> None:
        """Store the steps of a workflow.

        Raises:
            ValueError: If the steps do not form a valid workflow
        """
        if any(step.workflow_id != workflow_id for step in steps):
            raise ValueError(f"All steps must belong to workflow {workflow_id}")
        initial = [step for step in steps if step.is_initial_step]
        if len(initial) != 1:
            raise ValueError(
                f"Workflow {workflow_id} must have exactly one initial step, found {len(initial)}"
            )

        steps_key = RedisKeys.workflow_steps(workflow_id)
        await self.redis.delete(steps_key)
        for step in steps:
            await self.redis.set(RedisKeys.workflow_step(step.id), step.model_dump_json())
            await self.redis.zadd(steps_key, {step.id: step.step_order})

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        data = await self.redis.get(RedisKeys.workflow_step(step_id))
        if not data:
            return None
        return WorkflowStep.model_validate_json(data)

    async def list_steps(self, workflow_id: str) -> list[WorkflowStep]:
        """List a workflow's steps in step order."""
        step_ids = await self.redis.zrange(RedisKeys.workflow_steps(workflow_id), 0, -1)
        steps = []
        for step_id in step_ids:
            step = await self.get_step(step_id)
            if step:
                steps.append(step)
        return steps

    async def get_initial_step(self, workflow_id: str) -> WorkflowStep | None:
        for step in await self.list_steps(workflow_id):
            if step.is_initial_step:
                return step
        return None

    # ------------------------------------------------------------------
    # Outcome mappings and rules
    # ------------------------------------------------------------------

    async def save_step_mapping(self, mapping: StepMapping) -> StepMapping:
        await self.redis.hset(
            RedisKeys.step_mappings(mapping.workflow_id, mapping.outcome_type.value),
            mapping.id,
            mapping.model_dump_json(),
        )
        return mapping

    async def list_step_mappings(
        self,
        workflow_id: str,
        outcome: OutcomeType,
        active_only: bool = True,
    ) -> list[StepMapping]:
        """List mappings for a workflow outcome, highest priority first."""
        entries = await self.redis.hvals(RedisKeys.step_mappings(workflow_id, outcome.value))
        mappings = [StepMapping.model_validate_json(entry) for entry in entries]
        if active_only:
            mappings = [m for m in mappings if m.is_active]
        return sorted(mappings, key=lambda m: (-m.priority, m.id))

    async def find_step_mapping(
        self,
        workflow_id: str,
        outcome: OutcomeType,
        current_step_id: str,
    ) -> StepMapping | None:
        """Find the active mapping that applies from the current step."""
        for mapping in await self.list_step_mappings(workflow_id, outcome):
            if mapping.applies_from(current_step_id):
                return mapping
        return None

    async def save_outcome_rule(self, rule: OutcomeRule) -> OutcomeRule:
        await self.redis.hset(RedisKeys.OUTCOME_RULES, rule.id, rule.model_dump_json())
        return rule

    async def list_outcome_rules(
        self,
        entity_type: EntityType,
        outcome: OutcomeType,
    ) -> list[OutcomeRule]:
        """Active outcome rules for an entity type and outcome, highest priority first."""
        entries = await self.redis.hvals(RedisKeys.OUTCOME_RULES)
        rules = [
            rule
            for rule in (OutcomeRule.model_validate_json(entry) for entry in entries)
            if rule.is_active
            and rule.outcome_type == outcome
            and rule.entity_type in (None, entity_type)
        ]
        return sorted(rules, key=lambda r: (-r.priority, r.id))

    # ------------------------------------------------------------------
    # Entity state
    # ------------------------------------------------------------------

    async def get_entity_state(
        self,
        entity_type: EntityType,
        entity_id: str,
    ) -> EntityWorkflowState | None:
        data = await self.redis.get(RedisKeys.entity_state(entity_type.value, entity_id))
        if not data:
            return None
        return EntityWorkflowState.model_validate_json(data)

    async def place_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
        workflow_id: str,
        step_id: str | None = None,
    ) -> EntityWorkflowState:
        """Put an entity on a workflow, at its initial step unless given.

        Raises:
            ValueError: If the workflow has no initial step
        """
        if step_id is None:
            initial = await self.get_initial_step(workflow_id)
            if initial is None:
                raise ValueError(f"Workflow {workflow_id} has no initial step")
            step_id = initial.id

        state = EntityWorkflowState(
            entity_type=entity_type,
            entity_id=entity_id,
            workflow_id=workflow_id,
            current_step_id=step_id,
        )
        await self.redis.set(
            RedisKeys.entity_state(entity_type.value, entity_id),
            state.model_dump_json(),
        )
        return state

    async def transition(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_step_id: str,
        target_step_id: str,
    ) -> EntityWorkflowState:
        """Compare-and-set the entity's current step.

        The write only happens if the entity is still on ``expected_step_id``
        and nobody touched the state key between read and write.

        Raises:
            WorkflowStateConflict: If the state is missing or changed
        """
        key = RedisKeys.entity_state(entity_type.value, entity_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                data = await pipe.get(key)
                if not data:
                    raise WorkflowStateConflict("entity workflow state not found")

                state = EntityWorkflowState.model_validate_json(data)
                if state.current_step_id != expected_step_id:
                    raise WorkflowStateConflict("entity workflow state changed concurrently")

                state.current_step_id = target_step_id
                state.version += 1
                state.updated_at = datetime.now(timezone.utc)

                pipe.multi()
                pipe.set(key, state.model_dump_json())
                await pipe.execute()
            except WatchError as e:
                raise WorkflowStateConflict("entity workflow state changed concurrently") from e

        return state
