"""Pytest configuration and fixtures."""

from dataclasses import dataclass
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from crmrules.engine.conversion import EntityConverter
from crmrules.engine.dispatcher import ActionDispatcher
from crmrules.engine.outcome import OutcomeExecutor
from crmrules.engine.processor import RulesProcessor
from crmrules.engine.template import TemplateEngine
from crmrules.models.entity import EntityType
from crmrules.models.rule import BusinessRule
from crmrules.models.workflow import OutcomeType, StepMapping, WorkflowStep
from crmrules.storage.auxiliary import ExecutionStore, NotificationStore, UserDirectory
from crmrules.storage.entity_store import EntityStore
from crmrules.storage.rule_store import RuleStore
from crmrules.storage.workflow_store import WorkflowStore


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[FakeAsyncRedis]:
    """In-memory Redis for storage-backed tests."""
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@dataclass
class Engine:
    """All engine components wired to one Redis client."""

    redis: FakeAsyncRedis
    rules: RuleStore
    executions: ExecutionStore
    notifications: NotificationStore
    workflows: WorkflowStore
    entities: EntityStore
    directory: UserDirectory
    converter: EntityConverter
    dispatcher: ActionDispatcher
    processor: RulesProcessor
    outcomes: OutcomeExecutor


def build_engine(redis: FakeAsyncRedis, rule_timeout: float = 5.0) -> Engine:
    rules = RuleStore(redis)
    executions = ExecutionStore(redis)
    notifications = NotificationStore(redis)
    workflows = WorkflowStore(redis)
    entities = EntityStore(redis)
    directory = UserDirectory(redis)
    converter = EntityConverter(entities, workflows)
    dispatcher = ActionDispatcher(
        notification_store=notifications,
        workflow_store=workflows,
        entity_store=entities,
        converter=converter,
        directory=directory,
        template_engine=TemplateEngine(default_currency=""),
    )
    processor = RulesProcessor(
        rule_store=rules,
        execution_store=executions,
        entity_store=entities,
        dispatcher=dispatcher,
        rule_timeout=rule_timeout,
    )
    outcomes = OutcomeExecutor(
        workflow_store=workflows,
        entity_store=entities,
        converter=converter,
        processor=processor,
    )
    return Engine(
        redis=redis,
        rules=rules,
        executions=executions,
        notifications=notifications,
        workflows=workflows,
        entities=entities,
        directory=directory,
        converter=converter,
        dispatcher=dispatcher,
        processor=processor,
        outcomes=outcomes,
    )


@pytest_asyncio.fixture
async def engine(redis: FakeAsyncRedis) -> Engine:
    """Engine components backed by fake Redis."""
    return build_engine(redis)


async def dump_redis(redis: FakeAsyncRedis) -> dict[str, Any]:
    """Snapshot every key and value, for asserting that nothing was written."""
    state: dict[str, Any] = {}
    for key in sorted(await redis.keys("*")):
        key_type = await redis.type(key)
        if key_type == "string":
            state[key] = await redis.get(key)
        elif key_type == "list":
            state[key] = await redis.lrange(key, 0, -1)
        elif key_type == "hash":
            state[key] = await redis.hgetall(key)
        elif key_type == "set":
            state[key] = sorted(await redis.smembers(key))
        elif key_type == "zset":
            state[key] = await redis.zrange(key, 0, -1, withscores=True)
    return state


@pytest.fixture
def high_value_rule() -> BusinessRule:
    """Rule notifying the owner of deals worth 90k or more."""
    return BusinessRule.model_validate({
        "id": "rule-high-value",
        "name": "High value deal",
        "entity_type": "DEAL",
        "trigger_events": ["DEAL_UPDATED"],
        "conditions": [{"field": "amount", "op": ">=", "value": 90000}],
        "actions": [{"kind": "notify", "title": "High value deal: {{deal_name}}"}],
    })


@pytest.fixture
def deal_snapshot() -> dict[str, Any]:
    """Sample deal snapshot."""
    return {
        "id": "d1",
        "name": "Acme Deal",
        "amount": 95000,
        "currency": "EUR",
        "probability": 60,
        "assigned_to_user_id": "user-1",
    }


async def setup_deal_workflow(engine: Engine, step_id: str = "s-open") -> None:
    """Store a deal workflow and place deal d1 on ``step_id``.

    Steps: s-open (initial), s-negotiation, s-won, s-lost, s-converted
    (the last three final). WON and CONVERTED are mapped; LOST is not.
    """
    steps = [
        WorkflowStep(id="s-open", workflow_id="wf-deal", status_id="open",
                     step_order=0, is_initial_step=True),
        WorkflowStep(id="s-negotiation", workflow_id="wf-deal", status_id="negotiation",
                     step_order=1),
        WorkflowStep(id="s-won", workflow_id="wf-deal", status_id="won",
                     step_order=2, is_final_step=True),
        WorkflowStep(id="s-lost", workflow_id="wf-deal", status_id="lost",
                     step_order=3, is_final_step=True),
        WorkflowStep(id="s-converted", workflow_id="wf-deal", status_id="converted",
                     step_order=4, is_final_step=True),
    ]
    await engine.workflows.save_workflow("wf-deal", steps)
    await engine.workflows.save_step_mapping(
        StepMapping(
            id="map-won",
            workflow_id="wf-deal",
            outcome_type=OutcomeType.WON,
            target_step_id="s-won",
        )
    )
    await engine.workflows.save_step_mapping(
        StepMapping(
            id="map-converted",
            workflow_id="wf-deal",
            outcome_type=OutcomeType.CONVERTED,
            target_step_id="s-converted",
            side_effects={"entity_conversion": {"target_entity_type": "LEAD"}},
        )
    )
    await engine.workflows.place_entity(EntityType.DEAL, "d1", "wf-deal", step_id)
