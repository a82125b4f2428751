"""Tests for rule management behaviors."""

from datetime import datetime, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from crmrules.api.routes import rules as rules_api
from crmrules.api.routes import test as test_api
from crmrules.engine.conditions import ConditionEvaluator
from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleDryRun, RuleStats
from crmrules.models.rule import BusinessRule, RuleMetadata, RuleStatus
from crmrules.schemas.common import PaginationParams
from crmrules.schemas.rule import RuleCreate, RuleStatusUpdate, RuleUpdate
from crmrules.schemas.test import RuleTestRequest, ValidateRequest


class FakeRuleStore:
    """In-memory rule store for API tests."""

    def __init__(self, rules: list[BusinessRule]):
        self._rules = {rule.id: rule for rule in rules}
        self.include_inactive: bool | None = None

    async def list_all(self) -> list[BusinessRule]:
        return sorted(self._rules.values(), key=lambda r: (r.priority, r.id))

    async def list_by_event(
        self,
        entity_type: EntityType,
        trigger_event: str,
        include_inactive: bool = False,
    ) -> list[BusinessRule]:
        self.include_inactive = include_inactive
        return [
            rule for rule in await self.list_all()
            if rule.matches_event(entity_type, trigger_event)
        ]

    async def get(self, rule_id: str) -> BusinessRule | None:
        return self._rules.get(rule_id)

    async def create(self, rule: BusinessRule) -> BusinessRule:
        self._rules[rule.id] = rule
        return rule

    async def update(self, rule_id: str, rule: BusinessRule) -> BusinessRule | None:
        self._rules[rule_id] = rule
        return rule

    async def set_status(self, rule_id: str, status: RuleStatus) -> BusinessRule | None:
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        rule.status = status
        return rule

    async def get_stats(self, rule_id: str) -> RuleStats | None:
        if rule_id not in self._rules:
            return None
        return RuleStats(rule_id=rule_id, execution_count=3, last_error="notify: boom")


class FakeProcessor:
    """Records dry runs instead of touching storage."""

    def __init__(self):
        self.events = []

    async def dry_run(self, rule, event):
        self.events.append(event)
        results = [
            ConditionEvaluator().evaluate_clause(clause, event.snapshot, event.change_delta)
            for clause in rule.conditions
        ]
        return RuleDryRun(rule_id=rule.id, conditions_met=all(results), clause_results=results)


def make_rule(
    rule_id: str,
    name: str,
    status: RuleStatus,
    priority: int,
    trigger_events: list[str],
    entity_type: str = "DEAL",
) -> BusinessRule:
    created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return BusinessRule.model_validate({
        "id": rule_id,
        "name": name,
        "entity_type": entity_type,
        "trigger_events": trigger_events,
        "status": status,
        "priority": priority,
        "conditions": [{"field": "amount", "op": ">=", "value": 1000}] if entity_type == "DEAL" else [],
        "actions": [{"kind": "notify", "title": "Rule {{entity_id}}"}],
        "metadata": RuleMetadata(created_at=created_at, updated_at=created_at).model_dump(),
    })


def test_rule_update_rejects_empty_name() -> None:
    with pytest.raises(ValidationError):
        RuleUpdate(name="")


def test_rule_create_requires_known_action_kind() -> None:
    with pytest.raises(ValidationError):
        RuleCreate(
            name="Broken",
            entity_type=EntityType.DEAL,
            trigger_events=["DEAL_UPDATED"],
            actions=[{"kind": "send_email", "to": "x"}],
        )


@pytest.mark.asyncio
async def test_list_rules_filters_event_status_and_name() -> None:
    rules = [
        make_rule("rule_a", "Alpha Rule", RuleStatus.ACTIVE, 100, ["DEAL_UPDATED"]),
        make_rule("rule_b", "Beta Rule", RuleStatus.INACTIVE, 50, ["DEAL_UPDATED"]),
        make_rule("rule_c", "Beta Other", RuleStatus.INACTIVE, 10, ["DEAL_CREATED"]),
        make_rule("rule_d", "Beta Lead", RuleStatus.INACTIVE, 10, ["LEAD_UPDATED"], "LEAD"),
    ]
    store = FakeRuleStore(rules)
    pagination = PaginationParams(page=1, page_size=20)

    response = await rules_api.list_rules(
        store=store,
        pagination=pagination,
        entity_type=EntityType.DEAL,
        trigger_event="DEAL_UPDATED",
        status=RuleStatus.INACTIVE,
        name_contains="beta",
    )

    assert store.include_inactive is True
    assert response.total == 1
    assert response.data[0].id == "rule_b"


@pytest.mark.asyncio
async def test_list_rules_paginates_in_evaluation_order() -> None:
    rules = [
        make_rule(f"rule_{i}", f"Rule {i}", RuleStatus.ACTIVE, 100 - i, ["DEAL_UPDATED"])
        for i in range(5)
    ]
    store = FakeRuleStore(rules)

    response = await rules_api.list_rules(
        store=store,
        pagination=PaginationParams(page=2, page_size=2),
        entity_type=None,
        trigger_event=None,
        status=None,
        name_contains=None,
    )

    assert response.total == 5
    assert [r.id for r in response.data] == ["rule_2", "rule_1"]


@pytest.mark.asyncio
async def test_create_rule_generates_id() -> None:
    store = FakeRuleStore([])

    response = await rules_api.create_rule(
        data=RuleCreate(
            name="New",
            entity_type=EntityType.DEAL,
            trigger_events=["DEAL_CREATED"],
            conditions=[{"field": "amount", "op": ">", "value": 0}],
            created_by="user-1",
        ),
        store=store,
    )

    assert response.data.id.startswith("rule_")
    stored = await store.get(response.data.id)
    assert stored.metadata.created_by == "user-1"


@pytest.mark.asyncio
async def test_create_rule_rejects_unknown_condition_field() -> None:
    store = FakeRuleStore([])

    with pytest.raises(HTTPException) as exc_info:
        await rules_api.create_rule(
            data=RuleCreate(
                name="Bad",
                entity_type=EntityType.DEAL,
                trigger_events=["DEAL_CREATED"],
                conditions=[{"field": "shoe_size", "op": ">", "value": 40}],
            ),
            store=store,
        )

    assert exc_info.value.status_code == 422
    assert await store.list_all() == []


@pytest.mark.asyncio
async def test_create_rule_rejects_duplicate_id() -> None:
    store = FakeRuleStore([make_rule("rule_a", "Alpha", RuleStatus.ACTIVE, 1, ["DEAL_UPDATED"])])

    with pytest.raises(HTTPException) as exc_info:
        await rules_api.create_rule(
            data=RuleCreate(
                id="rule_a",
                name="Again",
                entity_type=EntityType.DEAL,
                trigger_events=["DEAL_UPDATED"],
            ),
            store=store,
        )

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_patch_rule_updates_selected_fields_only() -> None:
    rule = make_rule("rule_patch", "Patch Rule", RuleStatus.ACTIVE, 100, ["DEAL_UPDATED"])
    store = FakeRuleStore([rule])

    response = await rules_api.update_rule(
        rule_id="rule_patch",
        data=RuleUpdate(description="Updated description", status=RuleStatus.INACTIVE),
        store=store,
    )

    assert response.data is not None
    assert response.data.description == "Updated description"
    assert response.data.status == RuleStatus.INACTIVE
    assert response.data.name == "Patch Rule"
    assert response.data.trigger_events == ["DEAL_UPDATED"]
    assert len(response.data.conditions) == 1


@pytest.mark.asyncio
async def test_replace_rule_overwrites_fields() -> None:
    rule = make_rule("rule_replace", "Replace Rule", RuleStatus.ACTIVE, 100, ["DEAL_UPDATED"])
    store = FakeRuleStore([rule])
    replacement = RuleCreate(
        name="Replacement",
        description="Replaced body",
        entity_type=EntityType.DEAL,
        trigger_events=["DEAL_CREATED"],
        status=RuleStatus.INACTIVE,
        priority=300,
        actions=[{"kind": "transition_step", "target_step_id": "s-negotiation"}],
    )

    response = await rules_api.replace_rule(
        rule_id="rule_replace",
        data=replacement,
        store=store,
    )

    assert response.data is not None
    assert response.data.name == "Replacement"
    assert response.data.description == "Replaced body"
    assert response.data.status == RuleStatus.INACTIVE
    assert response.data.priority == 300
    assert response.data.trigger_events == ["DEAL_CREATED"]
    assert response.data.conditions == []
    assert response.data.metadata.created_at == rule.metadata.created_at


@pytest.mark.asyncio
async def test_update_rule_status() -> None:
    store = FakeRuleStore([make_rule("rule_a", "Alpha", RuleStatus.ACTIVE, 1, ["DEAL_UPDATED"])])

    response = await rules_api.update_rule_status(
        rule_id="rule_a",
        data=RuleStatusUpdate(status=RuleStatus.INACTIVE),
        store=store,
    )

    assert response.data.status == RuleStatus.INACTIVE

    with pytest.raises(HTTPException) as exc_info:
        await rules_api.update_rule_status(
            rule_id="missing",
            data=RuleStatusUpdate(status=RuleStatus.ACTIVE),
            store=store,
        )
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_get_rule_stats() -> None:
    store = FakeRuleStore([make_rule("rule_a", "Alpha", RuleStatus.ACTIVE, 1, ["DEAL_UPDATED"])])

    response = await rules_api.get_rule_stats(rule_id="rule_a", store=store)

    assert response.data.execution_count == 3
    assert response.data.last_error == "notify: boom"

    with pytest.raises(HTTPException) as exc_info:
        await rules_api.get_rule_stats(rule_id="missing", store=store)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_validate_rule_reports_errors() -> None:
    valid = await test_api.validate_rule(ValidateRequest(rule={
        "entity_type": "LEAD",
        "trigger_events": ["LEAD_CREATED"],
        "conditions": [{"field": "lead_score", "op": ">=", "value": 80}],
    }))
    invalid = await test_api.validate_rule(ValidateRequest(rule={
        "entity_type": "LEAD",
        "trigger_events": [],
    }))

    assert valid.data.valid is True
    assert valid.data.errors == []
    assert invalid.data.valid is False
    assert any("trigger_events" in error for error in invalid.data.errors)


@pytest.mark.asyncio
async def test_dry_run_defaults_to_first_trigger_event() -> None:
    store = FakeRuleStore([make_rule("rule_a", "Alpha", RuleStatus.ACTIVE, 1, ["DEAL_UPDATED"])])
    processor = FakeProcessor()

    response = await test_api.test_rule(
        rule_id="rule_a",
        data=RuleTestRequest(entity_id="d9", snapshot={"amount": 500}),
        store=store,
        processor=processor,
    )

    assert response.data.conditions_met is False
    assert response.data.clause_results == [False]
    assert processor.events[0].trigger_event == "DEAL_UPDATED"
    assert processor.events[0].snapshot["id"] == "d9"
