"""Tests for notification, workflow and entity storage."""

from datetime import datetime, timedelta, timezone

import pytest

from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleExecution
from crmrules.models.notification import Notification
from crmrules.models.workflow import OutcomeType, StepMapping, WorkflowStep
from crmrules.storage.auxiliary import ExecutionStore, NotificationStore, UserDirectory
from crmrules.storage.entity_store import EntityStore
from crmrules.storage.redis_client import RedisKeys
from crmrules.storage.workflow_store import WorkflowStore


def make_notification(notification_id: str, **overrides) -> Notification:
    data = {
        "id": notification_id,
        "rule_id": "rule-1",
        "title": f"Title {notification_id}",
        "user_id": "user-1",
        "entity_type": EntityType.DEAL,
        "entity_id": "d1",
    }
    data.update(overrides)
    return Notification(**data)


@pytest.mark.asyncio
async def test_notifications_list_newest_first(redis) -> None:
    store = NotificationStore(redis)
    now = datetime.now(timezone.utc)
    await store.create(make_notification("n-old", created_at=now - timedelta(minutes=5)))
    await store.create(make_notification("n-new", created_at=now))
    await store.create(make_notification("n-other", user_id="user-2"))

    assert [n.id for n in await store.list_for_user("user-1")] == ["n-new", "n-old"]


@pytest.mark.asyncio
async def test_expired_notifications_are_hidden_and_unindexed(redis) -> None:
    store = NotificationStore(redis)
    now = datetime.now(timezone.utc)
    await store.create(make_notification("n-live", expires_at=now + timedelta(hours=1)))
    await store.create(make_notification(
        "n-expired",
        created_at=now - timedelta(hours=2),
        expires_at=now - timedelta(hours=1),
    ))

    assert [n.id for n in await store.list_for_user("user-1")] == ["n-live"]
    assert await redis.zrange(RedisKeys.notifications_by_user("user-1"), 0, -1) == ["n-live"]
    assert await redis.ttl(RedisKeys.notification_detail("n-live")) > 0


@pytest.mark.asyncio
async def test_mark_read_keeps_expiry(redis) -> None:
    store = NotificationStore(redis)
    expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    await store.create(make_notification("n1", expires_at=expires_at))
    await store.create(make_notification("n2"))

    updated = await store.mark_read("n1")

    assert updated is not None and updated.is_read is True
    assert await redis.ttl(RedisKeys.notification_detail("n1")) > 0
    assert [n.id for n in await store.list_for_user("user-1", unread_only=True)] == ["n2"]
    assert await store.mark_read("missing") is None


def test_notification_expiry_check() -> None:
    now = datetime.now(timezone.utc)

    assert make_notification("n1").is_expired(now) is False
    assert make_notification("n2", expires_at=now).is_expired(now) is True


@pytest.mark.asyncio
async def test_workflow_requires_exactly_one_initial_step(redis) -> None:
    store = WorkflowStore(redis)
    steps = [
        WorkflowStep(id="a", workflow_id="wf", status_id="a", is_initial_step=True),
        WorkflowStep(id="b", workflow_id="wf", status_id="b", step_order=1, is_initial_step=True),
    ]

    with pytest.raises(ValueError):
        await store.save_workflow("wf", steps)
    with pytest.raises(ValueError):
        await store.save_workflow("wf", [WorkflowStep(id="c", workflow_id="other", status_id="c",
                                                      is_initial_step=True)])


@pytest.mark.asyncio
async def test_place_entity_defaults_to_initial_step(redis) -> None:
    store = WorkflowStore(redis)
    await store.save_workflow("wf", [
        WorkflowStep(id="second", workflow_id="wf", status_id="b", step_order=1),
        WorkflowStep(id="first", workflow_id="wf", status_id="a", step_order=0, is_initial_step=True),
    ])

    state = await store.place_entity(EntityType.LEAD, "l1", "wf")

    assert state.current_step_id == "first"
    assert [step.id for step in await store.list_steps("wf")] == ["first", "second"]
    with pytest.raises(ValueError):
        await store.place_entity(EntityType.LEAD, "l2", "missing-workflow")


@pytest.mark.asyncio
async def test_step_mapping_respects_from_steps_and_priority(redis) -> None:
    store = WorkflowStore(redis)
    await store.save_step_mapping(StepMapping(
        id="m-any", workflow_id="wf", outcome_type=OutcomeType.LOST, target_step_id="lost",
    ))
    await store.save_step_mapping(StepMapping(
        id="m-late", workflow_id="wf", outcome_type=OutcomeType.LOST, target_step_id="lost-late",
        from_step_ids=["late"], priority=10,
    ))
    await store.save_step_mapping(StepMapping(
        id="m-off", workflow_id="wf", outcome_type=OutcomeType.LOST, target_step_id="nowhere",
        priority=100, is_active=False,
    ))

    assert (await store.find_step_mapping("wf", OutcomeType.LOST, "late")).id == "m-late"
    assert (await store.find_step_mapping("wf", OutcomeType.LOST, "early")).id == "m-any"
    assert await store.find_step_mapping("wf", OutcomeType.WON, "early") is None


@pytest.mark.asyncio
async def test_entity_store_merges_fields(redis) -> None:
    store = EntityStore(redis)
    await store.save(EntityType.DEAL, "d2", {"name": "Second"})
    await store.save(EntityType.DEAL, "d1", {"name": "First", "amount": 10})

    updated = await store.update_fields(EntityType.DEAL, "d1", {"amount": 20})

    assert updated == {"name": "First", "amount": 20, "id": "d1"}
    assert await store.update_fields(EntityType.DEAL, "missing", {"amount": 1}) is None
    assert await store.list_ids(EntityType.DEAL) == ["d1", "d2"]
    assert await store.list_ids(EntityType.LEAD) == []


@pytest.mark.asyncio
async def test_role_membership(redis) -> None:
    directory = UserDirectory(redis)
    await directory.add_to_role("manager", "u2")
    await directory.add_to_role("manager", "u1")
    await directory.remove_from_role("manager", "u2")

    assert await directory.users_with_role("manager") == ["u1"]
    assert await directory.users_with_role("nobody") == []


@pytest.mark.asyncio
async def test_execution_history_is_scoped_by_entity_type(redis) -> None:
    store = ExecutionStore(redis)
    later = datetime.now(timezone.utc) + timedelta(hours=1)
    await store.append(RuleExecution(
        id="exec-deal", rule_id="rule-1", entity_id="shared-1", entity_type=EntityType.DEAL,
        execution_trigger="DEAL_UPDATED", conditions_met=True, executed_at=later,
    ))
    await store.append(RuleExecution(
        id="exec-lead", rule_id="rule-1", entity_id="shared-1", entity_type=EntityType.LEAD,
        execution_trigger="LEAD_UPDATED", conditions_met=False,
    ))

    assert [r.id for r in await store.list_by_entity(EntityType.DEAL, "shared-1")] == ["exec-deal"]
    assert [r.id for r in await store.list_by_entity(EntityType.LEAD, "shared-1")] == ["exec-lead"]
    assert await store.last_executed_at(EntityType.DEAL, "shared-1") == later
    assert await store.last_executed_at(EntityType.LEAD, "shared-1") < later
    assert await store.last_executed_at(EntityType.PERSON, "shared-1") is None
    assert [r.id for r in await store.list_by_rule("rule-1")] == ["exec-deal", "exec-lead"]
