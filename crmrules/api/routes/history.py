"""Execution history API routes."""

from datetime import datetime, timezone

from fastapi import APIRouter, Query

from crmrules.api.deps import ExecutionStoreDep, PaginationDep
from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleExecution
from crmrules.schemas.common import PaginatedResponse

router = APIRouter(tags=["history"])


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _filter(
    records: list[RuleExecution],
    conditions_met: bool | None,
    start_time: datetime | None,
    end_time: datetime | None,
) -> list[RuleExecution]:
    if conditions_met is not None:
        records = [r for r in records if r.conditions_met == conditions_met]
    if start_time:
        start_time = _aware(start_time)
        records = [r for r in records if r.executed_at >= start_time]
    if end_time:
        end_time = _aware(end_time)
        records = [r for r in records if r.executed_at <= end_time]
    # Newest first
    return list(reversed(records))


@router.get("/rules/{rule_id}/history", response_model=PaginatedResponse[RuleExecution])
async def get_rule_history(
    rule_id: str,
    store: ExecutionStoreDep,
    pagination: PaginationDep,
    conditions_met: bool | None = Query(default=None, description="Filter by match result"),
    start_time: datetime | None = Query(default=None, description="Filter by start time"),
    end_time: datetime | None = Query(default=None, description="Filter by end time"),
) -> PaginatedResponse[RuleExecution]:
    """Get execution history for a rule.

    History outlives the rule definition, so deleted rules still report
    their past executions.
    """
    records = _filter(await store.list_by_rule(rule_id), conditions_met, start_time, end_time)

    return PaginatedResponse(
        data=pagination.paginate(records),
        total=len(records),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get(
    "/entities/{entity_type}/{entity_id}/executions",
    response_model=PaginatedResponse[RuleExecution],
)
async def get_entity_executions(
    entity_type: EntityType,
    entity_id: str,
    store: ExecutionStoreDep,
    pagination: PaginationDep,
    conditions_met: bool | None = Query(default=None, description="Filter by match result"),
) -> PaginatedResponse[RuleExecution]:
    """Get the rule executions triggered by one entity."""
    records = _filter(await store.list_by_entity(entity_type, entity_id), conditions_met, None, None)

    return PaginatedResponse(
        data=pagination.paginate(records),
        total=len(records),
        page=pagination.page,
        page_size=pagination.page_size,
    )
